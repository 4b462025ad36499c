from __future__ import annotations

import io

import numpy as np
import pytest
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from rmhd_jax.config import KrylovConfig
from rmhd_jax.fespace import H1Space, eliminate
from rmhd_jax.mesh import rectangle_mesh
from rmhd_jax.solver import (
    KrylovSolver,
    LinearSolverError,
    cg_solve,
    chebyshev_preconditioner,
    gmres_solve_with_history_scipy,
)
from rmhd_jax.verbose import make_emit


def _dirichlet_stiffness(n: int = 10) -> sp.csr_matrix:
    space = H1Space(rectangle_mesh(n, n))
    return eliminate(space.stiffness(), space.essential_true_dofs([1, 1, 1, 1]))


def test_cg_solve_reports_converged_result() -> None:
    a = _dirichlet_stiffness()
    rng = np.random.default_rng(0)
    b = rng.normal(size=(a.shape[0],))
    res = cg_solve(a, b, rtol=1e-12, maxiter=500)
    assert res.converged
    assert res.iterations > 0
    np.testing.assert_allclose(a @ res.x, b, atol=1e-9)
    assert res.relative_residual < 1e-10


@pytest.mark.parametrize("pc", ["none", "jacobi", "chebyshev"])
def test_krylov_solver_preconditioners_agree(pc: str) -> None:
    a = _dirichlet_stiffness()
    b = np.random.default_rng(1).normal(size=(a.shape[0],))
    ref = spsolve(a.tocsc(), b)
    solver = KrylovSolver(a, KrylovConfig(rtol=1e-12, maxiter=1000, preconditioner=pc), label=pc)
    np.testing.assert_allclose(solver.solve(b), ref, rtol=1e-8, atol=1e-9)


def test_chebyshev_preconditioner_is_symmetric_positive() -> None:
    a = _dirichlet_stiffness(8)
    p = chebyshev_preconditioner(a, order=3)
    rng = np.random.default_rng(2)
    v = rng.normal(size=(a.shape[0],))
    w = rng.normal(size=(a.shape[0],))
    np.testing.assert_allclose(v @ (p @ w), w @ (p @ v), rtol=1e-12)
    assert v @ (p @ v) > 0.0


def test_amg_preconditioned_solver_converges() -> None:
    a = _dirichlet_stiffness(16)
    b = np.random.default_rng(3).normal(size=(a.shape[0],))
    solver = KrylovSolver(a, KrylovConfig(rtol=1e-10, maxiter=200, preconditioner="amg", iterative_mode=False))
    res = solver.mult(b)
    assert res.converged
    assert solver.hierarchy is not None
    solver.release()
    assert solver.hierarchy is None


def test_non_convergence_raises_or_warns() -> None:
    a = _dirichlet_stiffness(12)
    b = np.ones(a.shape[0])
    solver = KrylovSolver(a, KrylovConfig(rtol=1e-14, maxiter=2, preconditioner="none"), label="tiny")
    with pytest.raises(LinearSolverError) as info:
        solver.mult(b)
    assert info.value.label == "tiny"
    assert not info.value.result.converged

    stream = io.StringIO()
    warn = KrylovSolver(
        a,
        KrylovConfig(rtol=1e-14, maxiter=2, preconditioner="none", on_failure="warn"),
        label="tiny",
        emit=make_emit(verbose=0, stream=stream),
    )
    res = warn.mult(b)
    assert not res.converged
    assert "WARNING" in stream.getvalue()


def test_iterative_mode_controls_warm_start() -> None:
    a = _dirichlet_stiffness(8)
    b = np.random.default_rng(4).normal(size=(a.shape[0],))
    exact = spsolve(a.tocsc(), b)
    warm = KrylovSolver(a, KrylovConfig(rtol=1e-10, preconditioner="jacobi", iterative_mode=True))
    cold = KrylovSolver(a, KrylovConfig(rtol=1e-10, preconditioner="jacobi", iterative_mode=False))
    assert warm.mult(b, exact).iterations == 0
    assert cold.mult(b, exact).iterations > 0


def test_released_solver_refuses_work() -> None:
    solver = KrylovSolver(sp.eye(3), KrylovConfig())
    solver.release()
    with pytest.raises(RuntimeError):
        solver.mult(np.ones(3))


def test_gmres_with_history_right_preconditioned() -> None:
    rng = np.random.default_rng(5)
    n = 30
    a = np.eye(n) * 4.0 + 0.5 * rng.normal(size=(n, n)) / np.sqrt(n)
    b = rng.normal(size=(n,))
    dinv = 1.0 / np.diag(a)
    x, rn, hist = gmres_solve_with_history_scipy(
        matvec=lambda v: a @ v,
        b=b,
        preconditioner=lambda v: dinv * v,
        tol=1e-12,
        restart=30,
        maxiter=50,
        precondition_side="right",
    )
    np.testing.assert_allclose(a @ x, b, atol=1e-9)
    assert rn < 1e-9
    assert len(hist) > 0
