from __future__ import annotations

from dataclasses import dataclass

from jax import config as _jax_config

_jax_config.update("jax_enable_x64", True)

import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse as sp
from jax import tree_util as jtu


def csr_matvec(
    *,
    data: jnp.ndarray,  # (nnz,)
    indices: jnp.ndarray,  # (nnz,)
    indptr: jnp.ndarray,  # (n_rows+1,)
    x: jnp.ndarray,  # (n_cols,)
    n_rows: int | None = None,
) -> jnp.ndarray:
    """Sparse CSR matrix-vector product, differentiable in `data` and `x`.

    Parameters
    ----------
    data, indices, indptr:
      CSR arrays, as in SciPy.
    x:
      Dense vector.
    n_rows:
      Optional override for the number of rows (otherwise inferred from `indptr`).
    """
    data = jnp.asarray(data)
    indices = jnp.asarray(indices)
    indptr = jnp.asarray(indptr)
    x = jnp.asarray(x)

    if indptr.ndim != 1:
        raise ValueError("indptr must be 1D")
    if indices.ndim != 1 or data.ndim != 1:
        raise ValueError("data and indices must be 1D")

    if n_rows is None:
        n_rows = int(indptr.shape[0] - 1)
    if int(indptr.shape[0]) != n_rows + 1:
        raise ValueError("indptr has incompatible length")

    counts = indptr[1:] - indptr[:-1]
    # Under jit the output length of `jnp.repeat` must be static; for CSR it is nnz.
    nnz = int(data.shape[0])
    row_ids = jnp.repeat(
        jnp.arange(n_rows, dtype=indices.dtype),
        counts,
        total_repeat_length=nnz,
    )
    y_vals = data * x[indices]
    return jax.ops.segment_sum(y_vals, row_ids, n_rows)


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class CSROperator:
    """A fixed sparse matrix usable inside traced/linearised JAX code.

    The SciPy matrix it was built from stays the source of truth for host-side
    Krylov solves; this wrapper only exists so that residuals containing M, K
    or the diffusion operators can be pushed through `jax.linearize`.
    """

    data: jnp.ndarray
    indices: jnp.ndarray
    indptr: jnp.ndarray
    shape: tuple[int, int]

    def tree_flatten(self):
        children = (self.data, self.indices, self.indptr)
        aux = (int(self.shape[0]), int(self.shape[1]))
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        data, indices, indptr = children
        return cls(data=data, indices=indices, indptr=indptr, shape=aux)

    @classmethod
    def from_scipy(cls, a) -> "CSROperator":
        a = sp.csr_matrix(a)
        a.sum_duplicates()
        a.sort_indices()
        return cls(
            data=jnp.asarray(a.data, dtype=jnp.float64),
            indices=jnp.asarray(a.indices, dtype=jnp.int32),
            indptr=jnp.asarray(a.indptr, dtype=jnp.int32),
            shape=(int(a.shape[0]), int(a.shape[1])),
        )

    def matvec(self, x: jnp.ndarray) -> jnp.ndarray:
        return _csr_operator_matvec_jit(self, jnp.asarray(x, dtype=jnp.float64))

    def to_scipy(self) -> sp.csr_matrix:
        return sp.csr_matrix(
            (np.asarray(self.data), np.asarray(self.indices), np.asarray(self.indptr)),
            shape=self.shape,
        )


def _csr_operator_matvec(op: CSROperator, x: jnp.ndarray) -> jnp.ndarray:
    if x.shape != (op.shape[1],):
        raise ValueError(f"CSROperator.matvec expects shape {(op.shape[1],)}, got {x.shape}")
    return csr_matvec(data=op.data, indices=op.indices, indptr=op.indptr, x=x, n_rows=op.shape[0])


_csr_operator_matvec_jit = jax.jit(_csr_operator_matvec)
