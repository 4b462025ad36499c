from __future__ import annotations

from dataclasses import dataclass
import os

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator as _LinearOperator
from scipy.sparse.linalg import cg as _scipy_cg
from scipy.sparse.linalg import gmres as _scipy_gmres

from .config import KrylovConfig
from .verbose import EmitFn, null_emit

__all__ = [
    "KrylovConfig",
    "KrylovResult",
    "KrylovSolver",
    "LinearSolverError",
    "amg_preconditioner",
    "cg_solve",
    "chebyshev_preconditioner",
    "gmres_solve_with_history_scipy",
    "jacobi_preconditioner",
]


@dataclass(frozen=True)
class KrylovResult:
    """Outcome of one Krylov solve; `x` is returned even when not converged."""

    x: np.ndarray
    converged: bool
    iterations: int
    residual_norm: float
    rhs_norm: float
    label: str = "cg"

    @property
    def relative_residual(self) -> float:
        if self.rhs_norm == 0.0:
            return self.residual_norm
        return self.residual_norm / self.rhs_norm


class LinearSolverError(RuntimeError):
    """A Krylov solve hit its iteration cap or produced a non-finite iterate."""

    def __init__(self, label: str, result: KrylovResult) -> None:
        self.label = str(label)
        self.result = result
        super().__init__(
            f"{self.label}: linear solve did not converge after {result.iterations} iterations "
            f"(residual_norm={result.residual_norm:.3e}, rhs_norm={result.rhs_norm:.3e})"
        )


def _maybe_limit_restart(n: int, restart: int) -> int:
    if n <= 0 or restart <= 1:
        return restart
    max_mb_env = os.environ.get("RMHD_JAX_GMRES_MAX_MB", "").strip()
    if max_mb_env:
        try:
            max_mb = float(max_mb_env)
        except ValueError:
            max_mb = 2048.0
    else:
        max_mb = 2048.0
    if max_mb <= 0:
        return restart
    # Krylov basis storage ~ (restart+1) * n * 8 bytes.
    max_restart = int(max_mb * 1e6 // (8 * n)) - 1
    return max(1, min(int(restart), max_restart))


def gmres_solve_with_history_scipy(
    *,
    matvec,
    b,
    preconditioner=None,
    x0=None,
    tol: float = 1e-10,
    atol: float = 0.0,
    restart: int = 50,
    maxiter: int | None = None,
    precondition_side: str = "right",
) -> tuple[np.ndarray, float, list[float]]:
    """Run SciPy GMRES and collect the preconditioned residual history.

    With ``precondition_side="right"`` the system ``A P^{-1} y = b`` is solved
    and ``x = P^{-1} y`` returned, so the history tracks the true residual.
    """
    b_np = np.asarray(b, dtype=np.float64).reshape((-1,))
    n = int(b_np.size)
    x0_np = np.asarray(x0, dtype=np.float64).reshape((-1,)) if x0 is not None else None
    restart_use = _maybe_limit_restart(n, int(restart))

    def _mv(x_np: np.ndarray) -> np.ndarray:
        return np.asarray(matvec(x_np), dtype=np.float64).reshape((-1,))

    def _prec(x_np: np.ndarray) -> np.ndarray:
        if preconditioner is None:
            return x_np
        return np.asarray(preconditioner(x_np), dtype=np.float64).reshape((-1,))

    side = str(precondition_side).strip().lower()
    if side not in {"left", "right", "none"}:
        side = "right"

    if side == "right" and preconditioner is not None:
        def _mv_right(y_np: np.ndarray) -> np.ndarray:
            return _mv(_prec(y_np))

        A = _LinearOperator((n, n), matvec=_mv_right, dtype=np.float64)
        M = None
        # A warm start for x does not translate to y without P; start from zero.
        x0_np = None
    else:
        A = _LinearOperator((n, n), matvec=_mv, dtype=np.float64)
        M = _LinearOperator((n, n), matvec=_prec, dtype=np.float64) if (preconditioner is not None and side == "left") else None

    history: list[float] = []

    def _cb(arg):
        # SciPy passes residual norm when callback_type='pr_norm'.
        if np.isscalar(arg):
            history.append(float(arg))
        else:
            history.append(float(np.linalg.norm(arg)))

    x_np, _info = _scipy_gmres(
        A,
        b_np,
        x0=x0_np,
        rtol=float(tol),
        atol=float(atol),
        restart=int(restart_use),
        maxiter=int(maxiter) if maxiter is not None else None,
        M=M,
        callback=_cb,
        callback_type="pr_norm",
    )

    if side == "right" and preconditioner is not None:
        x_np = _prec(x_np)

    res = b_np - _mv(x_np)
    rn = float(np.linalg.norm(res))
    return x_np, rn, history


def cg_solve(
    a,
    b,
    *,
    x0=None,
    rtol: float = 1e-12,
    atol: float = 0.0,
    maxiter: int = 2000,
    preconditioner=None,
    label: str = "cg",
) -> KrylovResult:
    """Preconditioned CG on a symmetric positive definite sparse matrix."""
    a = sp.csr_matrix(a)
    b_np = np.asarray(b, dtype=np.float64).reshape((-1,))
    n = int(b_np.size)
    if a.shape != (n, n):
        raise ValueError(f"{label}: matrix shape {a.shape} incompatible with rhs of length {n}")
    x0_np = None if x0 is None else np.asarray(x0, dtype=np.float64).reshape((-1,))

    iterations = 0

    def _count(_xk):
        nonlocal iterations
        iterations += 1

    x_np, info = _scipy_cg(
        a,
        b_np,
        x0=x0_np,
        rtol=float(rtol),
        atol=float(atol),
        maxiter=int(maxiter),
        M=preconditioner,
        callback=_count,
    )
    x_np = np.asarray(x_np, dtype=np.float64)
    rn = float(np.linalg.norm(b_np - a @ x_np))
    finite = bool(np.all(np.isfinite(x_np))) and np.isfinite(rn)
    return KrylovResult(
        x=x_np,
        converged=(int(info) == 0) and finite,
        iterations=int(iterations),
        residual_norm=rn,
        rhs_norm=float(np.linalg.norm(b_np)),
        label=str(label),
    )


def _safe_inverse_diagonal(a: sp.csr_matrix) -> np.ndarray:
    d = np.asarray(a.diagonal(), dtype=np.float64)
    if np.any(d <= 0.0) or not np.all(np.isfinite(d)):
        raise ValueError("Jacobi-type preconditioners need a positive diagonal")
    return 1.0 / d


def jacobi_preconditioner(a) -> _LinearOperator:
    a = sp.csr_matrix(a)
    dinv = _safe_inverse_diagonal(a)
    n = int(a.shape[0])

    def _apply(x):
        return dinv * np.asarray(x, dtype=np.float64).reshape((-1,))

    return _LinearOperator((n, n), matvec=_apply, rmatvec=_apply, dtype=np.float64)


def estimate_max_eigenvalue(a, dinv: np.ndarray, *, iterations: int = 20, seed: int = 0) -> float:
    """Power iteration for the largest eigenvalue of ``D^{-1} A``."""
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(dinv.size)
    v /= np.linalg.norm(v)
    lam = 1.0
    for _ in range(int(iterations)):
        w = dinv * (a @ v)
        lam = float(np.linalg.norm(w))
        if lam == 0.0:
            break
        v = w / lam
    return lam


def chebyshev_preconditioner(a, *, order: int = 3, lmax: float | None = None, lmin_ratio: float = 30.0) -> _LinearOperator:
    """Fixed-degree Chebyshev smoother around Jacobi, usable as a CG preconditioner.

    The polynomial targets ``[lmax/lmin_ratio, lmax]`` of ``D^{-1} A``; `lmax`
    is estimated by power iteration and padded by 10%.
    """
    a = sp.csr_matrix(a)
    dinv = _safe_inverse_diagonal(a)
    n = int(a.shape[0])
    if lmax is None:
        lmax = 1.1 * estimate_max_eigenvalue(a, dinv)
    lmin = lmax / float(lmin_ratio)
    theta = 0.5 * (lmax + lmin)
    delta = 0.5 * (lmax - lmin)
    sigma = theta / delta
    order = int(order)

    def _apply(b):
        r = dinv * np.asarray(b, dtype=np.float64).reshape((-1,))
        x = np.zeros_like(r)
        d = r / theta
        rho = 1.0 / sigma
        for k in range(order):
            x = x + d
            if k == order - 1:
                break
            r = r - dinv * (a @ d)
            rho_new = 1.0 / (2.0 * sigma - rho)
            d = rho_new * rho * d + (2.0 * rho_new / delta) * r
            rho = rho_new
        return x

    return _LinearOperator((n, n), matvec=_apply, rmatvec=_apply, dtype=np.float64)


def amg_preconditioner(a, *, cycle: str = "V"):
    """Smoothed-aggregation AMG hierarchy and its preconditioner view.

    Returns ``(M, hierarchy)``; callers keep the hierarchy so it can be
    released explicitly.
    """
    from pyamg import smoothed_aggregation_solver  # noqa: PLC0415

    a = sp.csr_matrix(a)
    ml = smoothed_aggregation_solver(
        a,
        symmetry="symmetric",
        presmoother=("gauss_seidel", {"sweep": "symmetric"}),
        postsmoother=("gauss_seidel", {"sweep": "symmetric"}),
        max_coarse=50,
        B=np.ones((a.shape[0], 1)),
    )
    return ml.aspreconditioner(cycle=str(cycle)), ml


class KrylovSolver:
    """CG solver bound to one sparse matrix, with a checked outcome.

    Mirrors a configured backend solver: rtol/atol/maxiter, preconditioner
    type and iterative (warm-start) mode come from a :class:`KrylovConfig`.
    """

    def __init__(self, a, config: KrylovConfig | None = None, *, label: str = "cg", emit: EmitFn | None = None) -> None:
        self.a = sp.csr_matrix(a)
        if self.a.shape[0] != self.a.shape[1]:
            raise ValueError(f"{label}: matrix must be square, got {self.a.shape}")
        self.config = config if config is not None else KrylovConfig()
        self.label = str(label)
        self.emit = emit if emit is not None else null_emit
        self.hierarchy = None
        self.last_result: KrylovResult | None = None
        self._released = False
        self._preconditioner = self._build_preconditioner()

    def _build_preconditioner(self):
        pc = self.config.preconditioner
        self.emit(2, f"{self.label}: building {pc} preconditioner (n={self.n})")
        if pc == "none":
            return None
        if pc == "jacobi":
            return jacobi_preconditioner(self.a)
        if pc == "chebyshev":
            return chebyshev_preconditioner(self.a, order=self.config.chebyshev_order)
        m, self.hierarchy = amg_preconditioner(self.a, cycle=self.config.amg_cycle)
        return m

    @property
    def n(self) -> int:
        return int(self.a.shape[0])

    def mult(self, b, x0=None) -> KrylovResult:
        """Solve ``A x = b``; `x0` is only used in iterative mode."""
        if self._released:
            raise RuntimeError(f"{self.label}: solver used after release()")
        cfg = self.config
        guess = x0 if (cfg.iterative_mode and x0 is not None) else None
        res = cg_solve(
            self.a,
            b,
            x0=guess,
            rtol=cfg.rtol,
            atol=cfg.atol,
            maxiter=cfg.maxiter,
            preconditioner=self._preconditioner,
            label=self.label,
        )
        self.last_result = res
        self.emit(2, f"{self.label}: iterations={res.iterations} residual_norm={res.residual_norm:.3e}")
        if not res.converged:
            if cfg.on_failure == "raise":
                raise LinearSolverError(self.label, res)
            self.emit(0, f"WARNING: {LinearSolverError(self.label, res)}")
        return res

    def solve(self, b, x0=None) -> np.ndarray:
        return self.mult(b, x0).x

    def release(self) -> None:
        """Drop the preconditioner and any AMG hierarchy."""
        self._preconditioner = None
        self.hierarchy = None
        self._released = True

