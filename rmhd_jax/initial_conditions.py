"""Analytic initial data for standard reduced-MHD test problems.

Each problem provides vectorised callables ``f(x, y)`` for psi, w, phi, the
current ``j = lap(psi)`` and an optional equilibrium-sustaining E-field,
together with the rectangle it is posed on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

Field = Callable[[np.ndarray, np.ndarray], np.ndarray]


def _zero(x, y):
    return np.zeros(np.broadcast(np.asarray(x), np.asarray(y)).shape)


@dataclass(frozen=True)
class InitialCondition:
    name: str
    psi: Field
    w: Field
    phi: Field
    j: Field
    efield: Optional[Field]
    domain: tuple[float, float, float, float]  # x_min, x_max, y_min, y_max


def wave(*, alpha: float = 1e-3, lx: float = 2.0) -> InitialCondition:
    """Uniform field ``B = grad(psi) x z`` with a small standing perturbation."""

    def psi(x, y):
        return -y + alpha * np.sin(np.pi * y) * np.cos(2.0 * np.pi * x / lx)

    def j(x, y):
        return -alpha * np.pi**2 * (1.0 + 4.0 / lx**2) * np.sin(np.pi * y) * np.cos(2.0 * np.pi * x / lx)

    return InitialCondition("wave", psi, _zero, _zero, j, None, (0.0, float(lx), 0.0, 1.0))


def tearing(*, lam: float = 0.5 / np.pi, eps: float = 1e-3, lx: float = 3.0, resistivity: float = 0.0) -> InitialCondition:
    """Harris-type current sheet ``psi = lam ln cosh(y/lam)`` with a tearing perturbation.

    The E-field ``eta * j_eq`` balances resistive decay of the equilibrium.
    """
    k = 2.0 * np.pi / lx

    def psi(x, y):
        return lam * np.log(np.cosh(y / lam)) + eps * np.cos(k * x) * np.cos(0.5 * np.pi * y)

    def j_eq(x, y):
        return np.broadcast_to(1.0 / (lam * np.cosh(y / lam) ** 2), np.broadcast(np.asarray(x), np.asarray(y)).shape)

    def j(x, y):
        return j_eq(x, y) - eps * (k**2 + 0.25 * np.pi**2) * np.cos(k * x) * np.cos(0.5 * np.pi * y)

    efield = None
    if resistivity != 0.0:

        def efield(x, y):
            return resistivity * j_eq(x, y)

    return InitialCondition("tearing", psi, _zero, _zero, j, efield, (0.0, float(lx), -1.0, 1.0))


def island(*, lam: float = 1.0 / (2.0 * np.pi), eps: float = 0.2) -> InitialCondition:
    """Fadeev magnetic-island chain ``psi = -lam ln(cosh(y/lam) + eps cos(x/lam))``."""

    def psi(x, y):
        return -lam * np.log(np.cosh(y / lam) + eps * np.cos(x / lam))

    def j(x, y):
        return -(1.0 - eps**2) / (lam * (np.cosh(y / lam) + eps * np.cos(x / lam)) ** 2)

    return InitialCondition("island", psi, _zero, _zero, j, None, (0.0, float(4.0 * np.pi * lam), -1.0, 1.0))


PROBLEMS: dict[str, Callable[..., InitialCondition]] = {
    "wave": wave,
    "tearing": tearing,
    "island": island,
}


def get_initial_condition(name: str, **kwargs) -> InitialCondition:
    key = str(name).strip().lower()
    try:
        factory = PROBLEMS[key]
    except KeyError:
        raise ValueError(f"Unknown problem {name!r}; expected one of {sorted(PROBLEMS)}") from None
    return factory(**kwargs)
