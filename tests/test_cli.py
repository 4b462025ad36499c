from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from rmhd_jax.cli import main

_INPUT = """
&domain nx = 6, ny = 6, x_max = 2.0 /
&physicsParameters problem = 'wave' viscosity = 0.0 resistivity = 0.0 /
&timeParameters scheme = 'rk4' dt = 1.0d-3 t_final = 2.0d-3 /
&solverParameters stiffness_rtol = 1e-12 /
"""


def _write_input(tmp_path: Path) -> Path:
    path = tmp_path / "input.namelist"
    path.write_text(_INPUT)
    return path


def test_cli_run_writes_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    inp = _write_input(tmp_path)
    out = tmp_path / "out" / "state.npz"
    rc = main(["run", "--input", str(inp), "--out-state", str(out)])
    assert rc == 0
    text = capsys.readouterr().out
    assert "problem=wave" in text
    assert "total_energy" in text

    data = np.load(out)
    assert data["state"].shape == (3 * 49,)
    np.testing.assert_allclose(data["times"], [0.0, 1e-3, 2e-3])
    assert data["magnetic_energy"].shape == (3,)
    assert np.all(np.isfinite(data["kinetic_energy"]))


def test_cli_run_quiet_with_overrides(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    inp = _write_input(tmp_path)
    out = tmp_path / "state.npz"
    rc = main(["-q", "run", "--input", str(inp), "--out-state", str(out), "--dt", "2e-3"])
    assert rc == 0
    assert capsys.readouterr().out == ""
    np.testing.assert_allclose(np.load(out)["times"], [0.0, 2e-3])


def test_check_jacobian_reports_second_order(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    inp = _write_input(tmp_path)
    rc = main(["check-jacobian", "--input", str(inp), "--dt", "1e-2"])
    text = capsys.readouterr().out
    assert rc == 0, text
    assert "observed_order" in text
    assert "jacobian_consistent=True" in text


def test_cli_requires_subcommand() -> None:
    with pytest.raises(SystemExit):
        main([])
