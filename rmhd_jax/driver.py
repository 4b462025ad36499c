from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .fespace import H1Space
from .initial_conditions import InitialCondition, get_initial_condition
from .mesh import rectangle_mesh
from .namelist import RunInput
from .resistive_mhd import ResistiveMHDOperator
from .verbose import EmitFn, Timer, null_emit


@dataclass(frozen=True)
class SimulationResult:
    state: np.ndarray
    times: np.ndarray
    magnetic_energy: np.ndarray
    kinetic_energy: np.ndarray
    n_steps: int
    elapsed_s: float

    @property
    def total_energy(self) -> np.ndarray:
        return self.magnetic_energy + self.kinetic_energy


def initial_state(op: ResistiveMHDOperator, ic: InitialCondition) -> np.ndarray:
    """Project `ic` onto the operator's space, load j and E, and recover phi."""
    space = op.space
    vx = np.concatenate([space.project(ic.phi), space.project(ic.psi), space.project(ic.w)])
    op.set_initial_j(ic.j)
    if ic.efield is not None:
        op.set_rhs_efield(ic.efield)
    return op.update_phi(vx)


def rk4_step(op: ResistiveMHDOperator, vx: np.ndarray, dt: float) -> np.ndarray:
    k1 = op.mult(vx)
    k2 = op.mult(vx + 0.5 * dt * k1)
    k3 = op.mult(vx + 0.5 * dt * k2)
    k4 = op.mult(vx + dt * k3)
    return op.update_phi(vx + (dt / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4))


def backward_euler_step(op: ResistiveMHDOperator, vx: np.ndarray, dt: float) -> np.ndarray:
    k = op.implicit_solve(dt, vx)
    return op.update_phi(vx + dt * k)


_STEPPERS = {"rk4": rk4_step, "backward_euler": backward_euler_step}


def integrate(
    op: ResistiveMHDOperator,
    vx: np.ndarray,
    *,
    dt: float,
    n_steps: int,
    scheme: str = "rk4",
    energy_every: int = 1,
    emit: EmitFn | None = None,
) -> SimulationResult:
    """Advance `vx` by `n_steps` fixed steps, recording energies every `energy_every` steps."""
    emit = emit if emit is not None else null_emit
    try:
        step = _STEPPERS[scheme]
    except KeyError:
        raise ValueError(f"Unknown time scheme {scheme!r}; expected one of {sorted(_STEPPERS)}") from None
    every = max(1, int(energy_every))
    timer = Timer()

    times = [op.t]
    em, ek = op.energy(vx)
    mag = [em]
    kin = [ek]
    for n in range(1, int(n_steps) + 1):
        vx = step(op, vx, float(dt))
        op.t += float(dt)
        if n % every == 0 or n == int(n_steps):
            em, ek = op.energy(vx)
            times.append(op.t)
            mag.append(em)
            kin.append(ek)
            emit(1, f"step={n} t={op.t:.6e} magnetic_energy={em:.10e} kinetic_energy={ek:.10e}")

    return SimulationResult(
        state=vx,
        times=np.asarray(times),
        magnetic_energy=np.asarray(mag),
        kinetic_energy=np.asarray(kin),
        n_steps=int(n_steps),
        elapsed_s=timer.elapsed_s(),
    )


def build_operator(run: RunInput, *, emit: EmitFn | None = None) -> tuple[ResistiveMHDOperator, InitialCondition]:
    m = run.mesh
    mesh = rectangle_mesh(m.nx, m.ny, x_min=m.x_min, x_max=m.x_max, y_min=m.y_min, y_max=m.y_max)
    space = H1Space(mesh)
    p = run.physics
    op = ResistiveMHDOperator(
        space,
        p.ess_bdr,
        p.viscosity,
        p.resistivity,
        use_amg=p.use_amg,
        mass_config=run.mass_solver,
        stiffness_config=run.stiffness_solver,
        newton=run.newton,
        emit=emit,
    )
    lx = m.x_max - m.x_min
    if p.problem == "tearing":
        ic = get_initial_condition("tearing", lx=lx, resistivity=p.resistivity)
    elif p.problem == "wave":
        ic = get_initial_condition("wave", lx=lx)
    else:
        ic = get_initial_condition(p.problem)
    return op, ic


def run_simulation(run: RunInput, *, emit: EmitFn | None = None) -> SimulationResult:
    emit = emit if emit is not None else null_emit
    op, ic = build_operator(run, emit=emit)
    with op:
        vx = initial_state(op, ic)
        emit(0, f"run: problem={ic.name} sc={op.sc} scheme={run.time.scheme} dt={run.time.dt:g} steps={run.time.n_steps}")
        return integrate(
            op,
            vx,
            dt=run.time.dt,
            n_steps=run.time.n_steps,
            scheme=run.time.scheme,
            energy_every=run.time.energy_every,
            emit=emit,
        )
