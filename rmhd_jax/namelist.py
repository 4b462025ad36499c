"""Reader for Fortran-namelist run inputs.

A run is described by up to four groups (all optional, keys case-insensitive)::

  &domain            nx, ny, x_min, x_max, y_min, y_max
  &physicsParameters viscosity, resistivity, problem, ess_bdr, use_amg
  &timeParameters    dt, t_final, scheme, energy_every
  &solverParameters  mass_rtol, mass_maxiter, stiffness_rtol, stiffness_maxiter,
                     stiffness_pc, newton_rtol, newton_atol, newton_maxiter,
                     gmres_rtol, gmres_restart, gmres_maxiter, on_failure

Arrays may be written as ``ess_bdr = 1 1 0 1`` or element-wise as
``ess_bdr(3) = 0`` (1-based). This is not a complete namelist implementation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Tuple, Union

from .config import (
    KrylovConfig,
    MeshParameters,
    MHDParameters,
    NewtonConfig,
    TimeParameters,
    mass_solver_config,
    newton_config,
    stiffness_solver_config,
)

Number = Union[int, float]
Scalar = Union[str, bool, Number]
Value = Union[Scalar, List[Scalar]]

_ASSIGN_RE = re.compile(r"(?P<key>[A-Za-z_]\w*)\s*(?:\(\s*(?P<idx>\d+)\s*\))?\s*=")
_INT_RE = re.compile(r"[+-]?\d+")
_BOOL_TRUE = {"T", ".T.", ".TRUE.", "TRUE"}
_BOOL_FALSE = {"F", ".F.", ".FALSE.", "FALSE"}


def _strip_comments(text: str) -> str:
    """Drop ``!`` comments outside quoted strings."""
    out: List[str] = []
    for line in text.splitlines():
        quote = ""
        for i, ch in enumerate(line):
            if quote:
                if ch == quote:
                    quote = ""
            elif ch in "'\"":
                quote = ch
            elif ch == "!":
                line = line[:i]
                break
        out.append(line)
    return "\n".join(out)


def _split_groups(text: str) -> List[Tuple[str, str]]:
    """Return ``(name, body)`` for every ``&name ... /`` group."""
    groups: List[Tuple[str, str]] = []
    i = 0
    n = len(text)
    while i < n:
        start = text.find("&", i)
        if start < 0:
            break
        m = re.match(r"&\s*([A-Za-z_]\w*)", text[start:])
        if m is None:
            raise ValueError(f"Malformed namelist group header at offset {start}")
        name = m.group(1).lower()
        j = start + m.end()
        quote = ""
        while j < n:
            ch = text[j]
            if quote:
                if ch == quote:
                    quote = ""
            elif ch in "'\"":
                quote = ch
            elif ch == "/":
                break
            elif ch == "&":
                raise ValueError(f"Namelist &{name} not terminated by '/' before the next group")
            j += 1
        if j >= n:
            raise ValueError(f"Namelist &{name} not terminated by '/'")
        groups.append((name, text[start + m.end() : j]))
        i = j + 1
    return groups


def _tokens(chunk: str) -> List[str]:
    toks: List[str] = []
    buf: List[str] = []
    quote = ""
    for ch in chunk:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = ""
        elif ch in "'\"":
            quote = ch
            buf.append(ch)
        elif ch in ", \t\r\n":
            if buf:
                toks.append("".join(buf))
                buf = []
        else:
            buf.append(ch)
    if buf:
        toks.append("".join(buf))
    return toks


def _scalar(tok: str) -> Scalar:
    if len(tok) >= 2 and tok[0] == tok[-1] and tok[0] in "'\"":
        return tok[1:-1]
    up = tok.upper()
    if up in _BOOL_TRUE:
        return True
    if up in _BOOL_FALSE:
        return False
    if _INT_RE.fullmatch(tok):
        return int(tok)
    try:
        return float(tok.replace("D", "E").replace("d", "e"))
    except ValueError:
        return tok


@dataclass(frozen=True)
class Namelist:
    groups: Dict[str, Dict[str, Value]]
    source_path: Path | None = None

    def group(self, name: str) -> Dict[str, Value]:
        return self.groups.get(name.lower(), {})


def parse_namelist(text: str, *, source_path: Path | None = None) -> Namelist:
    groups: Dict[str, Dict[str, Value]] = {}
    for name, body in _split_groups(_strip_comments(text)):
        values: Dict[str, Value] = dict(groups.get(name, {}))
        matches = list(_ASSIGN_RE.finditer(body))
        if not matches and body.strip():
            raise ValueError(f"Namelist &{name}: no assignments found in {body.strip()!r}")
        for k, m in enumerate(matches):
            end = matches[k + 1].start() if k + 1 < len(matches) else len(body)
            toks = _tokens(body[m.end() : end])
            if not toks:
                raise ValueError(f"Namelist &{name}: missing value for {m.group('key')}")
            parsed = [_scalar(t) for t in toks]
            key = m.group("key").lower()
            idx = m.group("idx")
            if idx is None:
                values[key] = parsed[0] if len(parsed) == 1 else parsed
                continue
            pos = int(idx) - 1
            if pos < 0:
                raise ValueError(f"Namelist &{name}: indices are 1-based, got {key}({idx})")
            cur = values.get(key, [])
            arr = list(cur) if isinstance(cur, list) else [cur]
            while len(arr) < pos + len(parsed):
                arr.append(0)
            arr[pos : pos + len(parsed)] = parsed
            values[key] = arr
        groups[name] = values
    return Namelist(groups=groups, source_path=source_path)


def read_namelist(path: str | Path) -> Namelist:
    source_path = Path(path).resolve()
    return parse_namelist(source_path.read_text(), source_path=source_path)


@dataclass(frozen=True)
class RunInput:
    """Everything a run needs, resolved from a namelist plus environment defaults."""

    mesh: MeshParameters = field(default_factory=MeshParameters)
    physics: MHDParameters = field(default_factory=MHDParameters)
    time: TimeParameters = field(default_factory=TimeParameters)
    mass_solver: KrylovConfig = field(default_factory=mass_solver_config)
    stiffness_solver: KrylovConfig = field(default_factory=stiffness_solver_config)
    newton: NewtonConfig = field(default_factory=newton_config)


def _pick(group: Dict[str, Value], key: str, default, cast):
    if key not in group:
        return default
    val = group[key]
    if isinstance(val, list):
        raise ValueError(f"{key} must be a scalar, got {val!r}")
    try:
        return cast(val)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {key}: {val!r}") from exc


def _as_bool(val) -> bool:
    if isinstance(val, bool):
        return val
    if isinstance(val, int):
        return val != 0
    raise ValueError(f"expected a logical, got {val!r}")


def run_input_from_namelist(nml: Namelist) -> RunInput:
    dom = nml.group("domain")
    mesh_default = MeshParameters()
    mesh = MeshParameters(
        nx=_pick(dom, "nx", mesh_default.nx, int),
        ny=_pick(dom, "ny", mesh_default.ny, int),
        x_min=_pick(dom, "x_min", mesh_default.x_min, float),
        x_max=_pick(dom, "x_max", mesh_default.x_max, float),
        y_min=_pick(dom, "y_min", mesh_default.y_min, float),
        y_max=_pick(dom, "y_max", mesh_default.y_max, float),
    )

    phys = nml.group("physicsParameters")
    phys_default = MHDParameters()
    ess = phys.get("ess_bdr", list(phys_default.ess_bdr))
    if not isinstance(ess, list):
        ess = [ess]
    physics = MHDParameters(
        viscosity=_pick(phys, "viscosity", phys_default.viscosity, float),
        resistivity=_pick(phys, "resistivity", phys_default.resistivity, float),
        problem=str(_pick(phys, "problem", phys_default.problem, str)).strip().lower(),
        ess_bdr=tuple(int(v) for v in ess),
        use_amg=_pick(phys, "use_amg", phys_default.use_amg, _as_bool),
    )

    tp = nml.group("timeParameters")
    time_default = TimeParameters()
    time = TimeParameters(
        dt=_pick(tp, "dt", time_default.dt, float),
        t_final=_pick(tp, "t_final", time_default.t_final, float),
        scheme=str(_pick(tp, "scheme", time_default.scheme, str)).strip().lower(),
        energy_every=_pick(tp, "energy_every", time_default.energy_every, int),
    )

    sol = nml.group("solverParameters")
    on_failure = _pick(sol, "on_failure", None, lambda v: str(v).strip().lower())
    mass = mass_solver_config()
    mass = replace(
        mass,
        rtol=_pick(sol, "mass_rtol", mass.rtol, float),
        maxiter=_pick(sol, "mass_maxiter", mass.maxiter, int),
        on_failure=on_failure or mass.on_failure,
    )
    stiff = stiffness_solver_config(physics.use_amg)
    stiff = replace(
        stiff,
        rtol=_pick(sol, "stiffness_rtol", stiff.rtol, float),
        maxiter=_pick(sol, "stiffness_maxiter", stiff.maxiter, int),
        preconditioner=_pick(sol, "stiffness_pc", stiff.preconditioner, lambda v: str(v).strip().lower()),
        on_failure=on_failure or stiff.on_failure,
    )
    newton = newton_config()
    newton = replace(
        newton,
        rtol=_pick(sol, "newton_rtol", newton.rtol, float),
        atol=_pick(sol, "newton_atol", newton.atol, float),
        maxiter=_pick(sol, "newton_maxiter", newton.maxiter, int),
        gmres_rtol=_pick(sol, "gmres_rtol", newton.gmres_rtol, float),
        gmres_restart=_pick(sol, "gmres_restart", newton.gmres_restart, int),
        gmres_maxiter=_pick(sol, "gmres_maxiter", newton.gmres_maxiter, int),
    )
    return RunInput(mesh=mesh, physics=physics, time=time, mass_solver=mass, stiffness_solver=stiff, newton=newton)


def read_run_input(path: str | Path) -> RunInput:
    return run_input_from_namelist(read_namelist(path))
