from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
import math
import time

import numpy as np

from .driver import build_operator, initial_state, run_simulation
from .namelist import RunInput, read_run_input
from .reduced import finite_difference_check


def _now() -> float:
    return time.perf_counter()


def _emit(msg: str, *, level: int, args: argparse.Namespace) -> None:
    """Structured stdout printing for the CLI (no stdlib `logging`, output stays diffable)."""
    verbose = int(getattr(args, "verbose", 0) or 0)
    quiet = bool(getattr(args, "quiet", False))
    if quiet:
        return
    if verbose >= level:
        print(msg)


def _emit_input_summary(*, run: RunInput, args: argparse.Namespace) -> None:
    m, p, t = run.mesh, run.physics, run.time
    _emit("----------------------------------------------------------------", level=0, args=args)
    _emit(f" problem={p.problem} viscosity={p.viscosity:g} resistivity={p.resistivity:g} ess_bdr={list(p.ess_bdr)}", level=0, args=args)
    _emit(f" mesh: nx={m.nx} ny={m.ny} domain=[{m.x_min:g}, {m.x_max:g}] x [{m.y_min:g}, {m.y_max:g}]", level=0, args=args)
    _emit(f" time: scheme={t.scheme} dt={t.dt:g} t_final={t.t_final:g} steps={t.n_steps}", level=0, args=args)
    _emit(
        f" solvers: mass rtol={run.mass_solver.rtol:g} pc={run.mass_solver.preconditioner};"
        f" stiffness rtol={run.stiffness_solver.rtol:g} pc={run.stiffness_solver.preconditioner};"
        f" newton rtol={run.newton.rtol:g} maxiter={run.newton.maxiter}",
        level=1,
        args=args,
    )
    _emit("----------------------------------------------------------------", level=0, args=args)


def _emit_runtime_info(*, args: argparse.Namespace) -> None:
    import jax  # noqa: PLC0415

    _emit(f" jax={jax.__version__} backend={jax.default_backend()}", level=2, args=args)


def _load_run(args: argparse.Namespace) -> RunInput:
    run = read_run_input(Path(args.input))
    if getattr(args, "scheme", None) is not None or getattr(args, "dt", None) is not None:
        time_params = replace(
            run.time,
            scheme=str(args.scheme) if args.scheme is not None else run.time.scheme,
            dt=float(args.dt) if args.dt is not None else run.time.dt,
        )
        run = replace(run, time=time_params)
    return run


def _cmd_run(args: argparse.Namespace) -> int:
    t0 = _now()
    run = _load_run(args)
    _emit("################################################################", level=0, args=args)
    _emit(" rmhd_jax run", level=0, args=args)
    _emit(f" input={Path(args.input).resolve()}", level=0, args=args)
    _emit_input_summary(run=run, args=args)
    _emit_runtime_info(args=args)

    result = run_simulation(run, emit=lambda level, msg: _emit(msg, level=level, args=args))

    out_state = Path(args.out_state)
    out_state.parent.mkdir(parents=True, exist_ok=True)
    np.savez(
        out_state,
        state=result.state,
        times=result.times,
        magnetic_energy=result.magnetic_energy,
        kinetic_energy=result.kinetic_energy,
    )
    e0 = float(result.total_energy[0])
    e1 = float(result.total_energy[-1])
    _emit(f" wrote state -> {out_state.resolve()}", level=0, args=args)
    _emit(f" total_energy: initial={e0:.10e} final={e1:.10e} relative_change={(e1 - e0) / max(abs(e0), 1e-300):.3e}", level=0, args=args)
    _emit(f" elapsed_s={_now() - t0:.3f}", level=1, args=args)
    return 0


def _cmd_check_jacobian(args: argparse.Namespace) -> int:
    run = _load_run(args)
    _emit("################################################################", level=0, args=args)
    _emit(" rmhd_jax check-jacobian", level=0, args=args)
    _emit_input_summary(run=run, args=args)
    eps = tuple(float(e) for e in args.eps)
    op, ic = build_operator(run, emit=lambda level, msg: _emit(msg, level=level, args=args))
    with op:
        vx = initial_state(op, ic)
        # Linearise away from the initial state so Nv(phi*) is non-trivial.
        k = op.update_phi(vx + run.time.dt * op.mult(vx))
        ctx = op.linearization_context(run.time.dt, vx)
        rows = finite_difference_check(op.reduced_system(), ctx, k, eps=eps, seed=int(args.seed))

    ok = True
    prev = None
    for e, err in rows:
        order = ""
        if prev is not None and prev[1] > 0.0 and err > 0.0:
            p = math.log(prev[1] / err) / math.log(prev[0] / e)
            order = f" observed_order={p:.2f}"
            ok = ok and p > 1.5
        _emit(f" eps={e:.1e} ||F(k+eps v) - F(k) - eps J v||={err:.3e}{order}", level=0, args=args)
        prev = (e, err)
    _emit(f" jacobian_consistent={ok}", level=0, args=args)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="rmhd-jax", description="Reduced resistive MHD in JAX.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (repeatable).")
    parser.add_argument("-q", "--quiet", action="store_true", help="Reduce output to a minimum.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Integrate a run described by an input.namelist and write the final state.")
    p_run.add_argument("--input", required=True, help="Path to input.namelist")
    p_run.add_argument("--out-state", default="state.npz", help="Where to write state and energy history (NumPy .npz)")
    p_run.add_argument("--scheme", default=None, choices=["rk4", "backward_euler"], help="Override &timeParameters scheme")
    p_run.add_argument("--dt", default=None, help="Override &timeParameters dt")
    p_run.set_defaults(func=_cmd_run)

    p_jac = sub.add_parser("check-jacobian", help="Finite-difference check of the implicit-step Jacobian.")
    p_jac.add_argument("--input", required=True, help="Path to input.namelist")
    p_jac.add_argument("--eps", default=["1e-2", "1e-3", "1e-4"], nargs="+", help="Perturbation sizes")
    p_jac.add_argument("--seed", default="0", help="Seed of the random direction")
    p_jac.add_argument("--scheme", default=None, help=argparse.SUPPRESS)
    p_jac.add_argument("--dt", default=None, help="Override &timeParameters dt")
    p_jac.set_defaults(func=_cmd_check_jacobian)

    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
