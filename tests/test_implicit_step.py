from __future__ import annotations

import numpy as np
import pytest

from rmhd_jax.config import KrylovConfig, NewtonConfig
from rmhd_jax.driver import initial_state, integrate
from rmhd_jax.fespace import H1Space
from rmhd_jax.initial_conditions import wave
from rmhd_jax.mesh import rectangle_mesh
from rmhd_jax.newton import NewtonConvergenceError
from rmhd_jax.resistive_mhd import ResistiveMHDOperator


def _operator(newton: NewtonConfig, *, n: int = 8, resistivity: float = 0.0) -> ResistiveMHDOperator:
    space = H1Space(rectangle_mesh(n, n, x_min=0.0, x_max=2.0, y_min=0.0, y_max=1.0))
    return ResistiveMHDOperator(
        space,
        [1, 1, 1, 1],
        0.0,
        resistivity,
        use_amg=False,
        mass_config=KrylovConfig(rtol=1e-13, maxiter=2000, preconditioner="jacobi"),
        stiffness_config=KrylovConfig(rtol=1e-13, maxiter=2000, preconditioner="chebyshev"),
        newton=newton,
    )


def test_implicit_step_converges_and_satisfies_backward_euler() -> None:
    with _operator(NewtonConfig(rtol=1e-9, atol=1e-14), resistivity=1e-2) as op:
        vx = initial_state(op, wave(alpha=0.05, lx=2.0))
        dt = 1e-2
        k = op.implicit_solve(dt, vx)
        res = op.last_newton_result
        assert res is not None and res.converged
        assert res.residual_norm <= 1e-9 * res.initial_residual_norm
        assert op.implicit_steps == 1

        n = op.sc
        for b in range(3):
            np.testing.assert_allclose(k[b * n + op.ess_tdof_list], 0.0, atol=1e-12)

        f = op.mult(vx + dt * k)
        scale = np.max(np.abs(f[n:]))
        assert scale > 0.0
        np.testing.assert_allclose(k[n:], f[n:], rtol=0, atol=1e-6 * scale)


def test_implicit_step_failure_raises_with_step_info() -> None:
    cfg = NewtonConfig(maxiter=1, rtol=1e-14, atol=0.0, gmres_maxiter=1, gmres_restart=1, preconditioner="none")
    with _operator(cfg, n=6) as op:
        vx = initial_state(op, wave(alpha=0.05, lx=2.0))
        op.t = 0.25
        with pytest.raises(NewtonConvergenceError) as info:
            op.implicit_solve(1e-2, vx)
        err = info.value
        assert err.step == 1
        assert err.time == pytest.approx(0.25)
        assert err.dt == pytest.approx(1e-2)
        assert err.n_newton == 1
        assert "implicit step 1" in str(err)


def test_implicit_step_rejects_bad_dt() -> None:
    with _operator(NewtonConfig(), n=4) as op:
        with pytest.raises(ValueError):
            op.implicit_solve(0.0, np.zeros(op.height))


def test_implicit_step_matches_rk4_for_small_dt() -> None:
    newton = NewtonConfig(rtol=1e-9, atol=1e-14)
    ic = wave(alpha=0.05, lx=2.0)
    with _operator(newton) as op:
        rk = integrate(op, initial_state(op, ic), dt=1e-3, n_steps=3, scheme="rk4")
    with _operator(newton) as op:
        be = integrate(op, initial_state(op, ic), dt=1e-3, n_steps=3, scheme="backward_euler")
        assert op.implicit_steps == 3
    np.testing.assert_allclose(be.times, rk.times)
    np.testing.assert_allclose(be.state, rk.state, rtol=0, atol=1e-5)
    np.testing.assert_allclose(be.total_energy, rk.total_energy, rtol=1e-6)
