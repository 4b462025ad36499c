from __future__ import annotations

import numpy as np
import pytest

from rmhd_jax.initial_conditions import PROBLEMS, get_initial_condition, tearing


def _laplacian(f, x, y, h=1e-4):
    return (f(x + h, y) + f(x - h, y) + f(x, y + h) + f(x, y - h) - 4.0 * f(x, y)) / h**2


@pytest.mark.parametrize("name", sorted(PROBLEMS))
def test_current_is_laplacian_of_flux(name: str) -> None:
    ic = get_initial_condition(name)
    x0, x1, y0, y1 = ic.domain
    rng = np.random.default_rng(0)
    x = rng.uniform(x0, x1, size=20)
    y = rng.uniform(y0, y1, size=20)
    np.testing.assert_allclose(ic.j(x, y), _laplacian(ic.psi, x, y), rtol=1e-4, atol=1e-4)
    np.testing.assert_array_equal(ic.w(x, y), 0.0)
    np.testing.assert_array_equal(ic.phi(x, y), 0.0)


def test_tearing_efield_balances_resistive_decay() -> None:
    assert tearing().efield is None
    ic = tearing(resistivity=1e-3, eps=0.0)
    x = np.linspace(0.0, 3.0, 7)
    y = np.linspace(-1.0, 1.0, 7)
    np.testing.assert_allclose(ic.efield(x, y), 1e-3 * ic.j(x, y))


def test_unknown_problem() -> None:
    assert get_initial_condition(" Wave ").name == "wave"
    with pytest.raises(ValueError):
        get_initial_condition("kelvin-helmholtz")
