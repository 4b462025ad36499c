from __future__ import annotations

import numpy as np
import jax.numpy as jnp

from rmhd_jax.convection import build_convection, convection_apply, convection_apply_jit
from rmhd_jax.fespace import H1Space
from rmhd_jax.mesh import rectangle_mesh


def _space() -> H1Space:
    return H1Space(rectangle_mesh(6, 5, x_min=0.0, x_max=2.0, y_min=-1.0, y_max=1.0))


def test_convection_matvec_matches_assembled_matrix() -> None:
    space = _space()
    rng = np.random.default_rng(0)
    s = rng.normal(size=(space.n_dofs,))
    u = rng.normal(size=(space.n_dofs,))
    nv = build_convection(space, s)
    np.testing.assert_allclose(np.asarray(nv.matvec(u)), nv.to_scipy() @ u, rtol=1e-12, atol=1e-12)


def test_uniform_flow_reproduces_load_vector() -> None:
    # s = y gives V = (1, 0) in mode 2, so N(s) x = int w_i.
    space = _space()
    s = space.project(lambda x, y: y)
    u = space.project(lambda x, y: x)
    out = np.asarray(build_convection(space, s, mode=2).matvec(u))
    np.testing.assert_allclose(out, space.linear_form(lambda x, y: 1.0), rtol=1e-12, atol=1e-14)
    out1 = np.asarray(build_convection(space, s, mode=1).matvec(u))
    np.testing.assert_allclose(out1, -out, rtol=1e-12, atol=1e-14)


def test_stream_function_does_not_advect_itself() -> None:
    space = _space()
    s = space.project(lambda x, y: np.sin(x) * np.cos(2.0 * y) + x * y)
    np.testing.assert_allclose(np.asarray(build_convection(space, s).matvec(s)), 0.0, atol=1e-13)


def test_convection_is_bilinear_and_rebuilt_per_snapshot() -> None:
    space = _space()
    geom = space.geometry
    rng = np.random.default_rng(3)
    s1, s2, u, v = (jnp.asarray(rng.normal(size=(space.n_dofs,))) for _ in range(4))

    lhs = convection_apply_jit(geom, 2.0 * s1 - s2, u, mode=2)
    rhs = 2.0 * convection_apply(geom, s1, u) - convection_apply(geom, s2, u)
    np.testing.assert_allclose(np.asarray(lhs), np.asarray(rhs), rtol=1e-12, atol=1e-12)
    lhs = convection_apply(geom, s1, 3.0 * u + v)
    rhs = 3.0 * convection_apply(geom, s1, u) + convection_apply(geom, s1, v)
    np.testing.assert_allclose(np.asarray(lhs), np.asarray(rhs), rtol=1e-12, atol=1e-12)

    a = build_convection(space, s1)
    b = build_convection(space, s2)
    c = build_convection(space, s1)
    assert a is not c
    np.testing.assert_allclose(np.asarray(c.matvec(u)), np.asarray(a.matvec(u)), rtol=0, atol=0)
    assert not np.allclose(np.asarray(b.matvec(u)), np.asarray(a.matvec(u)))


def test_build_convection_validates_input() -> None:
    space = _space()
    for bad in (dict(snapshot=np.zeros(3)), dict(snapshot=np.zeros(space.n_dofs), mode=3)):
        try:
            build_convection(space, **bad)
        except ValueError:
            continue
        raise AssertionError(f"expected ValueError for {bad}")
