"""Time-evolution operator of two-field reduced resistive MHD.

The state is one vector of three blocks ``(phi, psi, w)`` of length
``sc = space.n_dofs``: potential, flux and vorticity. ``phi`` is not evolved;
it is recovered from ``w`` by ``K phi = -M w``. The semi-discrete system is::

  M dpsi/dt = -(Nv psi + DSl psi + E0)
  M dw/dt   = -(Nv w + DRe w) + Nb j,      M j = -KB psi

where ``Nv``/``Nb`` are convection operators advected by the rotated
gradients of ``phi``/``psi``. All right-hand sides vanish on the essential
dofs.
"""

from __future__ import annotations

import math
from typing import Sequence

import jax.numpy as jnp
import numpy as np

from .config import (
    KrylovConfig,
    NewtonConfig,
    mass_solver_config,
    newton_config,
    stiffness_solver_config,
    use_amg_from_env,
)
from .convection import ConvectionOperator
from .current import CurrentRecovery
from .fespace import EssentialElimination, H1Space
from .newton import NewtonConvergenceError, NewtonResult, NewtonSolver
from .precond import PreconditionerFactory
from .reduced import LinearizationContext, ReducedOperands, ReducedSystemOperator
from .solver import KrylovSolver
from .sparse import CSROperator
from .verbose import EmitFn, emit_from_env, nested

_KIND_ORDER = {"preconditioner": 0, "solver": 1, "operator": 2}


class OperatorArena:
    """Role-keyed owner of the operators and solvers of one MHD operator.

    :meth:`close` releases preconditioners first, then solvers (and their AMG
    hierarchies), then plain operators; `release_log` records the order.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, object]] = {}
        self.release_log: list[str] = []
        self.closed = False

    def put(self, role: str, value, *, kind: str = "operator"):
        if self.closed:
            raise RuntimeError("OperatorArena is closed")
        if kind not in _KIND_ORDER:
            raise ValueError(f"Unknown arena kind {kind!r}")
        if role in self._entries:
            self.release(role)
        self._entries[role] = (kind, value)
        return value

    def get(self, role: str):
        try:
            return self._entries[role][1]
        except KeyError:
            raise KeyError(f"No operator registered for role {role!r}") from None

    def __contains__(self, role: str) -> bool:
        return role in self._entries

    def roles(self) -> list[str]:
        return list(self._entries)

    def release(self, role: str) -> None:
        _kind, value = self._entries.pop(role)
        release = getattr(value, "release", None)
        if callable(release):
            release()
        self.release_log.append(role)

    def close(self) -> None:
        if self.closed:
            return
        order = sorted(self._entries, key=lambda r: _KIND_ORDER[self._entries[r][0]])
        for role in order:
            self.release(role)
        self.closed = True


class ResistiveMHDOperator:
    """Explicit right-hand side and backward-Euler step of reduced resistive MHD.

    Parameters
    ----------
    space:
      P1 space shared by phi, psi, w and j.
    ess_bdr:
      Boundary-attribute marker (0/1 per attribute) selecting the Dirichlet boundary.
    viscosity, resistivity:
      Coefficients of DRe and DSl; a zero coefficient drops the term.
    use_amg:
      Precondition the potential solve with smoothed-aggregation AMG
      (default: ``RMHD_JAX_USE_AMG``, else Chebyshev).
    """

    def __init__(
        self,
        space: H1Space,
        ess_bdr: Sequence[int],
        viscosity: float,
        resistivity: float,
        *,
        use_amg: bool | None = None,
        mass_config: KrylovConfig | None = None,
        stiffness_config: KrylovConfig | None = None,
        newton: NewtonConfig | None = None,
        convection_mode: int = 2,
        emit: EmitFn | None = None,
    ) -> None:
        viscosity = float(viscosity)
        resistivity = float(resistivity)
        if not (math.isfinite(viscosity) and math.isfinite(resistivity)):
            raise ValueError(f"viscosity and resistivity must be finite, got {viscosity}, {resistivity}")
        if viscosity < 0.0 or resistivity < 0.0:
            raise ValueError(f"viscosity and resistivity must be >= 0, got {viscosity}, {resistivity}")
        if int(convection_mode) not in (1, 2):
            raise ValueError(f"convection_mode must be 1 or 2, got {convection_mode}")

        self.space = space
        self.sc = space.n_dofs
        self.viscosity = viscosity
        self.resistivity = resistivity
        self.convection_mode = int(convection_mode)
        self.emit = emit if emit is not None else emit_from_env()
        self.ess_tdof_list = space.essential_true_dofs(ess_bdr)
        self.use_amg = use_amg_from_env(False) if use_amg is None else bool(use_amg)
        self.newton_config = newton if newton is not None else newton_config()

        arena = OperatorArena()
        self.arena = arena
        m = arena.put("mass", space.mass())
        k = arena.put("stiffness", space.stiffness())
        kb = arena.put("boundary_stiffness", space.boundary_stiffness())
        arena.put("viscous_diffusion", space.diffusion(viscosity))
        arena.put("resistive_diffusion", space.diffusion(resistivity))
        mass_sys = arena.put("mass_system", EssentialElimination(m, self.ess_tdof_list))
        stiff_sys = arena.put("stiffness_system", EssentialElimination(k, self.ess_tdof_list))

        self.mass_solver = arena.put(
            "mass_solver",
            KrylovSolver(mass_sys.form_system_matrix(), mass_config or mass_solver_config(), label="mass", emit=nested(self.emit, "  ")),
            kind="solver",
        )
        self.stiffness_solver = arena.put(
            "stiffness_solver",
            KrylovSolver(
                stiff_sys.form_system_matrix(),
                stiffness_config or stiffness_solver_config(self.use_amg),
                label="stiffness",
                emit=nested(self.emit, "  "),
            ),
            kind="solver",
        )
        self.current = CurrentRecovery(mass_sys, kb, self.mass_solver)

        n = self.sc
        self.j = np.zeros(n, dtype=np.float64)
        self.j_bdy: float | None = None
        self.e0: np.ndarray | None = None
        self.t = 0.0
        self.implicit_steps = 0
        self.last_newton_result: NewtonResult | None = None
        self._phi = np.zeros(n, dtype=np.float64)
        self._dpsi_dt = np.zeros(n, dtype=np.float64)
        self._dw_dt = np.zeros(n, dtype=np.float64)
        self.emit(1, f"ResistiveMHDOperator: sc={n} ess_dofs={self.ess_tdof_list.size} viscosity={viscosity:g} resistivity={resistivity:g} use_amg={self.use_amg}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def height(self) -> int:
        return 3 * self.sc

    def close(self) -> None:
        self.arena.close()

    def __enter__(self) -> "ResistiveMHDOperator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _check_state(self, vx) -> np.ndarray:
        vx = np.asarray(vx, dtype=np.float64)
        if vx.shape != (self.height,):
            raise ValueError(f"state must have shape {(self.height,)} (3 x {self.sc}), got {vx.shape}")
        return vx

    def split(self, vx) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        vx = self._check_state(vx)
        n = self.sc
        return vx[:n], vx[n : 2 * n], vx[2 * n :]

    # ------------------------------------------------------------------
    # Sources and current
    # ------------------------------------------------------------------
    def _field(self, name: str, f) -> np.ndarray:
        if callable(f):
            return self.space.project(f)
        v = np.asarray(f, dtype=np.float64)
        if v.shape != (self.sc,):
            raise ValueError(f"{name} must be callable or have shape {(self.sc,)}, got {v.shape}")
        return v.copy()

    def set_rhs_efield(self, efield) -> None:
        """Set the source ``E0_i = int E w_i`` (callable ``E(x, y)``) or a precomputed load vector."""
        if callable(efield):
            self.e0 = self.space.linear_form(efield)
        else:
            self.e0 = self._field("efield", efield)
        for role in ("jacobian_preconditioner", "reduced_system"):
            if role in self.arena:
                self.arena.release(role)

    def set_initial_j(self, init_j) -> None:
        """Project an initial current; its essential-dof values are the Dirichlet data of the recovery."""
        self.j = self._field("init_j", init_j)
        if self.j_bdy is not None:
            self.j[self.ess_tdof_list] = self.j_bdy

    def set_j_bdy(self, j_bdy: float) -> None:
        """Prescribe a constant current on the essential boundary."""
        val = float(j_bdy)
        if not math.isfinite(val):
            raise ValueError(f"j_bdy must be finite, got {j_bdy}")
        self.j_bdy = val
        self.j[self.ess_tdof_list] = val

    def recover_current(self, psi) -> np.ndarray:
        self.j = self.current.recover(psi, self.j, x0=self.j)
        return self.j

    # ------------------------------------------------------------------
    # Convection and potential
    # ------------------------------------------------------------------
    def assemble_nv(self, phi) -> ConvectionOperator:
        return self.space.convection(phi, mode=self.convection_mode)

    def assemble_nb(self, psi) -> ConvectionOperator:
        return self.space.convection(psi, mode=self.convection_mode)

    def solve_potential(self, w, phi0=None) -> np.ndarray:
        """Solve ``K phi = -M w`` with homogeneous Dirichlet data."""
        w = np.asarray(w, dtype=np.float64)
        mmat = self.arena.get("mass_system").form_system_matrix()
        z = -(mmat @ w)
        z[self.ess_tdof_list] = 0.0
        guess = self._phi if phi0 is None else np.asarray(phi0, dtype=np.float64)
        phi = np.array(self.stiffness_solver.mult(z, guess).x, copy=True)
        phi[self.ess_tdof_list] = 0.0
        self._phi = phi
        return phi

    def update_phi(self, vx) -> np.ndarray:
        """Return a copy of `vx` whose phi block is recovered from its w block."""
        phi, _psi, w = self.split(vx)
        out = np.array(vx, dtype=np.float64, copy=True)
        out[: self.sc] = self.solve_potential(w, phi0=phi)
        return out

    # ------------------------------------------------------------------
    # Explicit right-hand side
    # ------------------------------------------------------------------
    def _mass_solve(self, z: np.ndarray, x0: np.ndarray) -> np.ndarray:
        z[self.ess_tdof_list] = 0.0
        x = np.array(self.mass_solver.mult(z, x0).x, copy=True)
        x[self.ess_tdof_list] = 0.0
        return x

    def mult(self, vx) -> np.ndarray:
        """Time derivative ``(0, dpsi/dt, dw/dt)`` of the state `vx`."""
        phi, psi, w = self.split(vx)
        j = self.recover_current(psi)
        phi_adv = self.solve_potential(w, phi0=phi)
        nv = self.assemble_nv(phi_adv)
        nb = self.assemble_nb(psi)

        z = np.asarray(nv.matvec(psi), dtype=np.float64)
        if self.resistivity != 0.0:
            z = z + self.arena.get("resistive_diffusion") @ psi
        if self.e0 is not None:
            z = z + self.e0
        dpsi = self._mass_solve(-z, self._dpsi_dt)

        z = np.asarray(nv.matvec(w), dtype=np.float64)
        if self.viscosity != 0.0:
            z = z + self.arena.get("viscous_diffusion") @ w
        z = -z + np.asarray(nb.matvec(j), dtype=np.float64)
        dw = self._mass_solve(z, self._dw_dt)

        self._dpsi_dt = dpsi
        self._dw_dt = dw
        return np.concatenate([np.zeros(self.sc, dtype=np.float64), dpsi, dw])

    # ------------------------------------------------------------------
    # Implicit step
    # ------------------------------------------------------------------
    def reduced_system(self) -> ReducedSystemOperator:
        """Backward-Euler system over the arena's operators (rebuilt after `set_rhs_efield`)."""
        if "reduced_system" in self.arena:
            return self.arena.get("reduced_system")
        keep = np.ones(self.sc, dtype=np.float64)
        keep[self.ess_tdof_list] = 0.0
        e0 = self.e0 if self.e0 is not None else np.zeros(self.sc, dtype=np.float64)
        operands = ReducedOperands(
            geometry=self.space.geometry,
            mass=CSROperator.from_scipy(self.arena.get("mass_system").form_system_matrix()),
            stiffness=CSROperator.from_scipy(self.arena.get("stiffness_system").form_system_matrix()),
            resistive_diffusion=CSROperator.from_scipy(self.arena.get("resistive_diffusion")),
            viscous_diffusion=CSROperator.from_scipy(self.arena.get("viscous_diffusion")),
            e0=jnp.asarray(e0, dtype=jnp.float64),
            keep=jnp.asarray(keep, dtype=jnp.float64),
            mode=self.convection_mode,
            use_resistivity=self.resistivity != 0.0,
            use_viscosity=self.viscosity != 0.0,
        )
        system = ReducedSystemOperator(operands, self.current, emit=self.emit)
        return self.arena.put("reduced_system", system)

    def preconditioner_factory(self) -> PreconditionerFactory:
        if "jacobian_preconditioner" not in self.arena:
            self.arena.put(
                "jacobian_preconditioner",
                PreconditionerFactory(self.reduced_system(), self.newton_config.preconditioner, emit=self.emit),
                kind="preconditioner",
            )
        return self.arena.get("jacobian_preconditioner")

    def linearization_context(self, dt: float, vx) -> LinearizationContext:
        phi, psi, w = self.split(vx)
        return LinearizationContext.create(dt, phi, psi, w, j_bdy=self.j)

    def implicit_solve(self, dt: float, vx) -> np.ndarray:
        """Backward-Euler stage derivative ``k`` with ``k = f(vx + dt k)``."""
        vx = self._check_state(vx)
        ctx = self.linearization_context(dt, vx)
        system = self.reduced_system()
        factory = self.preconditioner_factory()
        newton = NewtonSolver(self.newton_config, preconditioner_factory=factory, emit=self.emit)
        self.implicit_steps += 1
        result = newton.solve(system.bind(ctx), vx)
        self.last_newton_result = result
        self.emit(
            0,
            f"implicit step {self.implicit_steps}: t={self.t:.6e} dt={float(dt):.3e} "
            f"newton_iters={result.n_newton} residual_norm={result.residual_norm:.3e}",
        )
        if not result.converged:
            raise NewtonConvergenceError(
                step=self.implicit_steps,
                time=self.t,
                dt=float(dt),
                residual_norm=result.residual_norm,
                n_newton=result.n_newton,
            )
        return (result.x - vx) / float(dt)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def energy(self, vx) -> tuple[float, float]:
        """Magnetic and kinetic energies ``(psi^T K psi / 2, phi^T K phi / 2)``."""
        phi, psi, _w = self.split(vx)
        k = self.arena.get("stiffness")
        return 0.5 * float(psi @ (k @ psi)), 0.5 * float(phi @ (k @ phi))
