from __future__ import annotations

import numpy as np
import pytest

from rmhd_jax.config import KrylovConfig
from rmhd_jax.current import CurrentRecovery
from rmhd_jax.fespace import EssentialElimination, H1Space
from rmhd_jax.mesh import rectangle_mesh
from rmhd_jax.solver import KrylovSolver


def _recovery(n: int, *, x_max: float = 1.0, y_max: float = 1.0) -> tuple[H1Space, CurrentRecovery]:
    space = H1Space(rectangle_mesh(n, n, x_max=x_max, y_max=y_max))
    ess = space.essential_true_dofs([1, 1, 1, 1])
    mass = EssentialElimination(space.mass(), ess)
    solver = KrylovSolver(mass.form_system_matrix(), KrylovConfig(rtol=1e-13, maxiter=2000), label="current")
    return space, CurrentRecovery(mass, space.boundary_stiffness(), solver)


def test_current_recovery_is_linear() -> None:
    space, rec = _recovery(8)
    rng = np.random.default_rng(0)
    psi1 = rng.normal(size=(space.n_dofs,))
    psi2 = rng.normal(size=(space.n_dofs,))
    zero = np.zeros(space.n_dofs)
    j1 = rec.recover(psi1, zero)
    j2 = rec.recover(psi2, zero)
    j12 = rec.recover(2.5 * psi1 - 0.75 * psi2, zero)
    scale = np.max(np.abs(j12))
    np.testing.assert_allclose(j12, 2.5 * j1 - 0.75 * j2, rtol=0, atol=1e-9 * scale)
    np.testing.assert_allclose(rec.recover_increment(psi1), j1, rtol=0, atol=1e-9 * scale)


def test_current_of_sin_sin_matches_laplacian() -> None:
    errors = []
    for n in (12, 24):
        space, rec = _recovery(n, x_max=np.pi, y_max=np.pi)
        psi = space.project(lambda x, y: np.sin(x) * np.sin(y))
        exact = space.project(lambda x, y: -2.0 * np.sin(x) * np.sin(y))
        j = rec.recover(psi, exact)
        errors.append(float(np.max(np.abs(j - exact))))
        assert rec.last_result is not None and rec.last_result.converged
    assert errors[1] < 0.05
    assert errors[1] < errors[0]


def test_current_keeps_dirichlet_values() -> None:
    space, rec = _recovery(6)
    psi = space.project(lambda x, y: x * x + y)
    jd = np.full(space.n_dofs, 0.37)
    j = rec.recover(psi, jd)
    np.testing.assert_array_equal(j[rec.ess_tdof_list], 0.37)


def test_current_recovery_validates_shapes() -> None:
    space, rec = _recovery(4)
    with pytest.raises(ValueError):
        rec.recover(np.zeros(space.n_dofs + 1), np.zeros(space.n_dofs))
