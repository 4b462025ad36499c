"""Solver and run configuration.

Every config is a frozen dataclass with reference defaults; a subset can be
overridden through ``RMHD_JAX_*`` environment variables, which is how
solver behaviour is tuned in CI and batch runs without touching input files.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import math
import os

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

_PRECONDITIONERS = {"none", "jacobi", "chebyshev", "amg"}
_FAILURE_POLICIES = {"raise", "warn"}
_TIME_SCHEMES = {"rk4", "backward_euler"}


def _env_str(name: str) -> str:
    return os.environ.get(name, "").strip()


def env_flag(name: str, default: bool) -> bool:
    val = _env_str(name).lower()
    if val in _TRUE:
        return True
    if val in _FALSE:
        return False
    return bool(default)


def env_float(name: str, default: float) -> float:
    val = _env_str(name)
    if not val:
        return float(default)
    try:
        return float(val)
    except ValueError:
        return float(default)


def env_int(name: str, default: int) -> int:
    val = _env_str(name)
    if not val:
        return int(default)
    try:
        return int(val)
    except ValueError:
        return int(default)


@dataclass(frozen=True)
class KrylovConfig:
    """Settings for one CG-class solver.

    `iterative_mode` warm-starts each solve from the caller's guess.
    `on_failure` is ``"raise"`` (raise :class:`~rmhd_jax.solver.LinearSolverError`)
    or ``"warn"`` (emit a level-0 warning and return the under-converged iterate).
    """

    rtol: float = 1e-12
    atol: float = 0.0
    maxiter: int = 2000
    preconditioner: str = "jacobi"
    iterative_mode: bool = True
    on_failure: str = "raise"
    chebyshev_order: int = 3
    amg_cycle: str = "V"

    def __post_init__(self) -> None:
        if not (self.rtol >= 0.0 and self.atol >= 0.0):
            raise ValueError(f"Tolerances must be non-negative, got rtol={self.rtol}, atol={self.atol}")
        if int(self.maxiter) < 1:
            raise ValueError(f"maxiter must be >= 1, got {self.maxiter}")
        if self.preconditioner not in _PRECONDITIONERS:
            raise ValueError(f"preconditioner must be one of {sorted(_PRECONDITIONERS)}, got {self.preconditioner!r}")
        if self.on_failure not in _FAILURE_POLICIES:
            raise ValueError(f"on_failure must be one of {sorted(_FAILURE_POLICIES)}, got {self.on_failure!r}")
        if int(self.chebyshev_order) < 1:
            raise ValueError(f"chebyshev_order must be >= 1, got {self.chebyshev_order}")


@dataclass(frozen=True)
class NewtonConfig:
    """Newton–Krylov settings for the implicit step.

    Convergence is ``||F|| <= max(atol, rtol * ||F_0||)``. The inner GMRES is
    right-preconditioned by the block preconditioner.
    """

    rtol: float = 1e-8
    atol: float = 1e-12
    maxiter: int = 20
    gmres_rtol: float = 1e-6
    gmres_restart: int = 50
    gmres_maxiter: int = 200
    line_search_max: int = 12
    line_search_c1: float = 1e-4
    preconditioner: str = "block"

    def __post_init__(self) -> None:
        if not (self.rtol >= 0.0 and self.atol >= 0.0):
            raise ValueError(f"Tolerances must be non-negative, got rtol={self.rtol}, atol={self.atol}")
        if int(self.maxiter) < 1:
            raise ValueError(f"maxiter must be >= 1, got {self.maxiter}")
        if self.preconditioner not in {"block", "none"}:
            raise ValueError(f"preconditioner must be 'block' or 'none', got {self.preconditioner!r}")


@dataclass(frozen=True)
class MHDParameters:
    viscosity: float = 0.0
    resistivity: float = 0.0
    problem: str = "tearing"
    ess_bdr: tuple[int, ...] = (1, 1, 1, 1)
    use_amg: bool = False

    def __post_init__(self) -> None:
        if not (math.isfinite(self.viscosity) and math.isfinite(self.resistivity)):
            raise ValueError("viscosity and resistivity must be finite")
        if self.viscosity < 0.0 or self.resistivity < 0.0:
            raise ValueError(f"viscosity and resistivity must be >= 0, got {self.viscosity}, {self.resistivity}")


@dataclass(frozen=True)
class MeshParameters:
    nx: int = 16
    ny: int = 16
    x_min: float = 0.0
    x_max: float = 1.0
    y_min: float = 0.0
    y_max: float = 1.0


@dataclass(frozen=True)
class TimeParameters:
    dt: float = 1e-3
    t_final: float = 1e-2
    scheme: str = "rk4"
    energy_every: int = 1

    def __post_init__(self) -> None:
        if not (math.isfinite(self.dt) and self.dt > 0.0):
            raise ValueError(f"dt must be positive and finite, got {self.dt}")
        if self.t_final < 0.0:
            raise ValueError(f"t_final must be >= 0, got {self.t_final}")
        if self.scheme not in _TIME_SCHEMES:
            raise ValueError(f"scheme must be one of {sorted(_TIME_SCHEMES)}, got {self.scheme!r}")

    @property
    def n_steps(self) -> int:
        return int(math.ceil(self.t_final / self.dt - 1e-12))


def _apply_krylov_env(cfg: KrylovConfig, prefix: str) -> KrylovConfig:
    pc = _env_str(f"{prefix}_PC").lower()
    on_failure = _env_str("RMHD_JAX_ON_SOLVER_FAILURE").lower()
    return replace(
        cfg,
        rtol=env_float(f"{prefix}_RTOL", cfg.rtol),
        atol=env_float(f"{prefix}_ATOL", cfg.atol),
        maxiter=env_int(f"{prefix}_MAXITER", cfg.maxiter),
        preconditioner=pc if pc in _PRECONDITIONERS else cfg.preconditioner,
        on_failure=on_failure if on_failure in _FAILURE_POLICIES else cfg.on_failure,
    )


def use_amg_from_env(default: bool = False) -> bool:
    return env_flag("RMHD_JAX_USE_AMG", default)


def mass_solver_config() -> KrylovConfig:
    """CG + Jacobi on M: rtol 1e-12, atol 0, 2000 iterations, warm started."""
    cfg = KrylovConfig(rtol=1e-12, atol=0.0, maxiter=2000, preconditioner="jacobi", iterative_mode=True)
    return _apply_krylov_env(cfg, "RMHD_JAX_MASS")


def stiffness_solver_config(use_amg: bool = False) -> KrylovConfig:
    """CG on K: Chebyshev smoothing by default, AMG-PCG (200 iterations, cold start) with `use_amg`."""
    if use_amg:
        cfg = KrylovConfig(rtol=1e-7, atol=0.0, maxiter=200, preconditioner="amg", iterative_mode=False)
    else:
        cfg = KrylovConfig(rtol=1e-7, atol=0.0, maxiter=2000, preconditioner="chebyshev", iterative_mode=True)
    return _apply_krylov_env(cfg, "RMHD_JAX_STIFFNESS")


def newton_config() -> NewtonConfig:
    cfg = NewtonConfig()
    pc = _env_str("RMHD_JAX_NEWTON_PC").lower()
    return replace(
        cfg,
        rtol=env_float("RMHD_JAX_NEWTON_RTOL", cfg.rtol),
        atol=env_float("RMHD_JAX_NEWTON_ATOL", cfg.atol),
        maxiter=env_int("RMHD_JAX_NEWTON_MAXITER", cfg.maxiter),
        gmres_rtol=env_float("RMHD_JAX_NEWTON_GMRES_RTOL", cfg.gmres_rtol),
        gmres_restart=env_int("RMHD_JAX_NEWTON_GMRES_RESTART", cfg.gmres_restart),
        gmres_maxiter=env_int("RMHD_JAX_NEWTON_GMRES_MAXITER", cfg.gmres_maxiter),
        preconditioner=pc if pc in {"block", "none"} else cfg.preconditioner,
    )
