"""Reduced resistive MHD time-evolution operators in JAX.

The package provides the explicit right-hand side and the backward-Euler
(Newton–Krylov) step of the two-field reduced MHD model discretised with
continuous P1 finite elements.
"""

from __future__ import annotations

import os
import tempfile

# Persistent JAX compilation cache for repeated CLI runs, unless disabled.
_disable_cache = os.environ.get("RMHD_JAX_DISABLE_COMPILATION_CACHE", "").strip().lower()
if _disable_cache not in {"1", "true", "yes", "on"}:
    if not os.environ.get("JAX_COMPILATION_CACHE_DIR", "").strip():
        cache_override = os.environ.get("RMHD_JAX_COMPILATION_CACHE_DIR", "").strip()
        if cache_override:
            default_cache_dir = cache_override
        else:
            xdg_cache = os.environ.get("XDG_CACHE_HOME", "").strip()
            if xdg_cache:
                default_cache_dir = os.path.join(xdg_cache, "rmhd_jax", "jax_compilation_cache")
            else:
                default_cache_dir = os.path.join(os.path.expanduser("~"), ".cache", "rmhd_jax", "jax_compilation_cache")
        try:
            os.makedirs(default_cache_dir, exist_ok=True)
        except OSError:
            default_cache_dir = os.path.join(tempfile.gettempdir(), "rmhd_jax", "jax_compilation_cache")
            try:
                os.makedirs(default_cache_dir, exist_ok=True)
            except OSError:
                default_cache_dir = ""
        if default_cache_dir:
            os.environ["JAX_COMPILATION_CACHE_DIR"] = default_cache_dir

# All kernels run in float64.
from jax import config as _jax_config  # noqa: E402

_jax_config.update("jax_enable_x64", True)

from .fespace import H1Space  # noqa: E402
from .mesh import TriangleMesh, rectangle_mesh  # noqa: E402
from .reduced import LinearizationContext, ReducedSystemOperator  # noqa: E402
from .resistive_mhd import ResistiveMHDOperator  # noqa: E402

__all__ = [
    "__version__",
    "H1Space",
    "LinearizationContext",
    "ReducedSystemOperator",
    "ResistiveMHDOperator",
    "TriangleMesh",
    "rectangle_mesh",
]

__version__ = "0.1.0"
