from __future__ import annotations

import numpy as np
import jax
import jax.numpy as jnp
import scipy.sparse as sp

from rmhd_jax.sparse import CSROperator, csr_matvec


def _dense_example(n: int = 6) -> np.ndarray:
    dense = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        dense[i, i] = 2.0 + 0.1 * i
        if i + 1 < n:
            dense[i, i + 1] = -0.3
        if i - 2 >= 0:
            dense[i, i - 2] = 0.2
    return dense


def test_csr_matvec_matches_dense() -> None:
    rng = np.random.default_rng(0)
    dense = _dense_example()
    a = sp.csr_matrix(dense)
    x = rng.normal(size=(dense.shape[0],))
    y = np.asarray(
        csr_matvec(
            data=jnp.asarray(a.data),
            indices=jnp.asarray(a.indices, dtype=jnp.int32),
            indptr=jnp.asarray(a.indptr, dtype=jnp.int32),
            x=jnp.asarray(x),
        )
    )
    np.testing.assert_allclose(y, dense @ x, rtol=0, atol=1e-13)


def test_csr_operator_roundtrip_and_linearize() -> None:
    rng = np.random.default_rng(1)
    dense = _dense_example(7)
    op = CSROperator.from_scipy(sp.coo_matrix(dense))
    assert op.shape == (7, 7)
    np.testing.assert_allclose(op.to_scipy().toarray(), dense, rtol=0, atol=0)

    x = rng.normal(size=(7,))
    v = rng.normal(size=(7,))
    np.testing.assert_allclose(np.asarray(op.matvec(x)), dense @ x, rtol=0, atol=1e-13)

    # A pytree argument of a jitted, linearised function.
    f = jax.jit(lambda o, xx: o.matvec(xx) ** 2)
    _y, jvp = jax.linearize(lambda xx: f(op, xx), jnp.asarray(x))
    np.testing.assert_allclose(np.asarray(jvp(jnp.asarray(v))), 2.0 * (dense @ x) * (dense @ v), rtol=1e-12, atol=1e-12)


def test_csr_operator_rejects_wrong_shape() -> None:
    op = CSROperator.from_scipy(sp.eye(4))
    try:
        op.matvec(np.ones(5))
    except ValueError as exc:
        assert "expects shape" in str(exc)
    else:
        raise AssertionError("expected ValueError")
