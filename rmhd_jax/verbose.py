from __future__ import annotations

from collections.abc import Callable
import os
import sys
import time
from typing import TextIO


EmitFn = Callable[[int, str], None]


def make_emit(*, verbose: int = 0, quiet: bool = False, stream: TextIO | None = None, prefix: str = "") -> EmitFn:
    """Create the structured printer passed through solvers and operators.

    Output is plain ``print`` rather than the stdlib `logging` module so that
    solver histories are reproducible line by line between runs.

    Parameters
    ----------
    verbose:
      Print messages with `level <= verbose`.
    quiet:
      Suppress all messages.
    stream:
      Destination stream (default: stdout).
    prefix:
      Optional line prefix (e.g. ``"  "`` for nested solvers).
    """
    if stream is None:
        stream = sys.stdout

    v = int(verbose)
    q = bool(quiet)
    p = str(prefix)

    def emit(level: int, msg: str) -> None:
        if q:
            return
        if v >= int(level):
            print(f"{p}{msg}", file=stream, flush=True)

    return emit


def emit_from_env(*, stream: TextIO | None = None, prefix: str = "") -> EmitFn:
    """Emitter whose verbosity comes from ``RMHD_JAX_VERBOSE`` (default: warnings only)."""
    env = os.environ.get("RMHD_JAX_VERBOSE", "").strip()
    try:
        level = int(env) if env else 0
    except ValueError:
        level = 0
    return make_emit(verbose=level, quiet=level < 0, stream=stream, prefix=prefix)


def null_emit(level: int, msg: str) -> None:
    del level, msg


def nested(emit: EmitFn, prefix: str) -> EmitFn:
    """Wrap `emit` so every message gets an extra `prefix`."""

    def _emit(level: int, msg: str) -> None:
        emit(level, f"{prefix}{msg}")

    return _emit


class Timer:
    """Small helper for elapsed-time prints."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def elapsed_s(self) -> float:
        return float(time.perf_counter() - self._t0)
