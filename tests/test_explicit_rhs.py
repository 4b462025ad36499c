from __future__ import annotations

import numpy as np
import pytest
from scipy.sparse.linalg import spsolve

from rmhd_jax.config import KrylovConfig
from rmhd_jax.driver import initial_state, integrate
from rmhd_jax.fespace import H1Space
from rmhd_jax.initial_conditions import wave
from rmhd_jax.mesh import rectangle_mesh
from rmhd_jax.resistive_mhd import ResistiveMHDOperator


def _operator(n: int = 8, *, viscosity: float = 0.0, resistivity: float = 0.0) -> ResistiveMHDOperator:
    space = H1Space(rectangle_mesh(n, n, x_min=0.0, x_max=2.0, y_min=0.0, y_max=1.0))
    return ResistiveMHDOperator(
        space,
        [1, 1, 1, 1],
        viscosity,
        resistivity,
        use_amg=False,
        mass_config=KrylovConfig(rtol=1e-12, maxiter=2000, preconditioner="jacobi"),
        stiffness_config=KrylovConfig(rtol=1e-12, maxiter=2000, preconditioner="chebyshev"),
    )


def _wave_state(op: ResistiveMHDOperator, alpha: float = 0.05) -> np.ndarray:
    vx = initial_state(op, wave(alpha=alpha, lx=2.0))
    # Add some vorticity so that Nv is non-trivial.
    n = op.sc
    vx[2 * n :] = op.space.project(lambda x, y: 0.3 * np.sin(np.pi * x) * np.sin(np.pi * y))
    return op.update_phi(vx)


def test_zero_state_has_zero_derivative() -> None:
    with _operator() as op:
        out = op.mult(np.zeros(op.height))
        np.testing.assert_array_equal(out, 0.0)


def test_derivative_vanishes_on_essential_dofs() -> None:
    with _operator(viscosity=1e-2, resistivity=1e-2) as op:
        vx = _wave_state(op)
        out = op.mult(vx)
        n = op.sc
        assert np.max(np.abs(out[n:])) > 0.0
        np.testing.assert_array_equal(out[:n], 0.0)
        for b in (1, 2):
            np.testing.assert_array_equal(out[b * n + op.ess_tdof_list], 0.0)


def test_repeated_evaluation_is_stable() -> None:
    with _operator(resistivity=1e-3) as op:
        vx = _wave_state(op)
        a = op.mult(vx)
        op.mult(2.0 * vx)
        b = op.mult(vx)
        np.testing.assert_allclose(b, a, rtol=0, atol=1e-8 * np.max(np.abs(a)))


def test_efield_source_enters_flux_equation() -> None:
    with _operator() as op:
        op.set_rhs_efield(lambda x, y: 0.5 + 0.0 * x)
        out = op.mult(np.zeros(op.height))
        mmat = op.arena.get("mass_system").form_system_matrix()
        z = -op.e0.copy()
        z[op.ess_tdof_list] = 0.0
        ref = spsolve(mmat.tocsc(), z)
        n = op.sc
        np.testing.assert_allclose(out[n : 2 * n], ref, rtol=0, atol=1e-9)
        np.testing.assert_array_equal(out[2 * n :], 0.0)


def test_update_phi_solves_potential_equation() -> None:
    with _operator() as op:
        vx = _wave_state(op)
        before = vx.copy()
        out = op.update_phi(vx)
        np.testing.assert_array_equal(vx, before)
        n = op.sc
        phi, w = out[:n], out[2 * n :]
        kmat = op.arena.get("stiffness_system").form_system_matrix()
        mmat = op.arena.get("mass_system").form_system_matrix()
        free = np.setdiff1d(np.arange(n), op.ess_tdof_list)
        np.testing.assert_allclose((kmat @ phi + mmat @ w)[free], 0.0, atol=1e-9)
        np.testing.assert_array_equal(phi[op.ess_tdof_list], 0.0)


def test_convection_operators_are_rebuilt() -> None:
    with _operator() as op:
        vx = _wave_state(op)
        n = op.sc
        a = op.assemble_nv(vx[:n])
        b = op.assemble_nv(vx[:n])
        assert a is not b
        assert op.assemble_nb(vx[n : 2 * n]) is not op.assemble_nb(vx[n : 2 * n])


def test_contract_violations_raise() -> None:
    space = H1Space(rectangle_mesh(4, 4))
    with pytest.raises(ValueError):
        ResistiveMHDOperator(space, [1, 1, 1], 0.0, 0.0)
    with pytest.raises(ValueError):
        ResistiveMHDOperator(space, [1, 1, 1, 1], -1.0, 0.0)
    with ResistiveMHDOperator(space, [1, 1, 1, 1], 0.0, 0.0) as op:
        with pytest.raises(ValueError):
            op.mult(np.zeros(2 * op.sc))
        with pytest.raises(ValueError):
            op.set_j_bdy(float("nan"))


def test_set_j_bdy_sets_boundary_current() -> None:
    with _operator(4) as op:
        op.set_initial_j(lambda x, y: x + y)
        op.set_j_bdy(-0.25)
        np.testing.assert_array_equal(op.j[op.ess_tdof_list], -0.25)
        free = np.setdiff1d(np.arange(op.sc), op.ess_tdof_list)
        nodes = op.space.mesh.nodes[free]
        np.testing.assert_allclose(op.j[free], nodes[:, 0] + nodes[:, 1])


def test_close_releases_preconditioners_before_solvers() -> None:
    op = _operator(4)
    op.preconditioner_factory()
    roles = op.arena.roles()
    assert {"mass_solver", "stiffness_solver", "reduced_system", "jacobian_preconditioner"} <= set(roles)
    op.close()
    assert op.arena.roles() == []
    log = op.arena.release_log
    assert log.index("jacobian_preconditioner") < log.index("stiffness_solver")
    assert log.index("stiffness_solver") < log.index("mass")
    assert log.index("mass_solver") < log.index("mass_system")
    op.close()


def test_rk4_energy_is_conserved_without_dissipation() -> None:
    with _operator(8) as op:
        vx = initial_state(op, wave(alpha=0.05, lx=2.0))
        res = integrate(op, vx, dt=1e-3, n_steps=5, scheme="rk4")
        total = res.total_energy
        assert res.kinetic_energy[-1] > res.kinetic_energy[0]
        np.testing.assert_allclose(total, total[0], rtol=1e-4)
