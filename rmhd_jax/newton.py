from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from .config import NewtonConfig
from .solver import gmres_solve_with_history_scipy
from .verbose import EmitFn, Timer, null_emit


class NonlinearSystem(Protocol):
    def mult(self, k) -> np.ndarray: ...

    def get_gradient(self, k) -> Any: ...


class NewtonConvergenceError(RuntimeError):
    """The implicit step's Newton iteration failed to converge."""

    def __init__(self, *, step: int, time: float, dt: float, residual_norm: float, n_newton: int | None = None) -> None:
        self.step = int(step)
        self.time = float(time)
        self.dt = float(dt)
        self.residual_norm = float(residual_norm)
        self.n_newton = n_newton
        msg = f"Newton solver did not converge in implicit step {self.step} (t={self.time:.6e}, dt={self.dt:.3e}, residual_norm={self.residual_norm:.3e}"
        if n_newton is not None:
            msg += f", iterations={int(n_newton)}"
        super().__init__(msg + ")")


@dataclass(frozen=True)
class NewtonResult:
    x: np.ndarray
    converged: bool
    n_newton: int
    residual_norm: float
    initial_residual_norm: float
    last_linear_residual_norm: float
    history: list[float] = field(default_factory=list)


class NewtonSolver:
    """Newton–Krylov solver for ``F(x) = 0``.

    Each step solves ``J s = -F`` with right-preconditioned GMRES and applies
    a backtracking line search on ``||F||``. The system must expose
    ``mult(x)`` (residual) and ``get_gradient(x)`` (an object with ``matvec``).
    """

    def __init__(self, config: NewtonConfig | None = None, *, preconditioner_factory=None, emit: EmitFn | None = None) -> None:
        self.config = config if config is not None else NewtonConfig()
        self.preconditioner_factory = preconditioner_factory
        self.emit = emit if emit is not None else null_emit

    def solve(self, system: NonlinearSystem, x0) -> NewtonResult:
        cfg = self.config
        emit = self.emit
        x = np.array(x0, dtype=np.float64, copy=True).reshape((-1,))
        timer = Timer()

        r = np.asarray(system.mult(x), dtype=np.float64)
        rnorm = float(np.linalg.norm(r))
        rnorm0 = rnorm
        target = max(float(cfg.atol), float(cfg.rtol) * rnorm0)
        history = [rnorm]
        last_linear = float("inf")
        emit(1, f"newton_iter=0: residual_norm={rnorm:.6e}")

        n_newton = 0
        while np.isfinite(rnorm) and rnorm > target and n_newton < int(cfg.maxiter):
            jac = system.get_gradient(x)
            pc = None
            if self.preconditioner_factory is not None:
                pc = self.preconditioner_factory.new_preconditioner(jac)
            try:
                s, last_linear, lin_hist = gmres_solve_with_history_scipy(
                    matvec=jac.matvec,
                    b=-r,
                    preconditioner=pc,
                    tol=float(cfg.gmres_rtol),
                    atol=0.0,
                    restart=int(cfg.gmres_restart),
                    maxiter=int(cfg.gmres_maxiter),
                    precondition_side="right",
                )
            finally:
                if pc is not None:
                    pc.release()
            emit(2, f"newton_iter={n_newton + 1}: gmres_iters={len(lin_hist)} linear_residual={last_linear:.3e}")

            # Backtracking line search (Armijo on ||F||).
            step = 1.0
            accepted = False
            for _ in range(int(cfg.line_search_max)):
                x_try = x + step * s
                r_try = np.asarray(system.mult(x_try), dtype=np.float64)
                rnorm_try = float(np.linalg.norm(r_try))
                if np.isfinite(rnorm_try) and rnorm_try <= (1.0 - float(cfg.line_search_c1) * step) * rnorm:
                    accepted = True
                    break
                step *= 0.5
            if not accepted:
                emit(1, f"newton_iter={n_newton + 1}: line search failed, taking a damped step")
                x_try = x + (1.0 / 64.0) * s
                r_try = np.asarray(system.mult(x_try), dtype=np.float64)
                rnorm_try = float(np.linalg.norm(r_try))

            x, r, rnorm = x_try, r_try, rnorm_try
            n_newton += 1
            history.append(rnorm)
            emit(1, f"newton_iter={n_newton}: residual_norm={rnorm:.6e} step={step:.3g}")

        converged = bool(np.isfinite(rnorm) and rnorm <= target)
        emit(
            1,
            f"NewtonSolver: converged={converged} iterations={n_newton} "
            f"residual_norm={rnorm:.3e} (initial {rnorm0:.3e}) elapsed_s={timer.elapsed_s():.3f}",
        )
        return NewtonResult(
            x=x,
            converged=converged,
            n_newton=n_newton,
            residual_norm=rnorm,
            initial_residual_norm=rnorm0,
            last_linear_residual_norm=float(last_linear),
            history=history,
        )
