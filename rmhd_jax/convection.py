from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from jax import config as _jax_config

_jax_config.update("jax_enable_x64", True)

import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse as sp
from jax import tree_util as jtu

from .fespace import ElementGeometry

if TYPE_CHECKING:
    from .fespace import H1Space


def _check_mode(mode: int) -> int:
    mode = int(mode)
    if mode not in (1, 2):
        raise ValueError(f"convection mode must be 1 or 2, got {mode}")
    return mode


def element_gradient(geom: ElementGeometry, u: jnp.ndarray) -> jnp.ndarray:
    """Elementwise-constant gradient of a P1 field, shape (Ne, 2)."""
    u_loc = jnp.asarray(u)[geom.tris]  # (Ne, 3)
    return jnp.einsum("ea,eak->ek", u_loc, geom.grad_basis)


def rotated_gradient(geom: ElementGeometry, snapshot: jnp.ndarray, mode: int = 2) -> jnp.ndarray:
    """Velocity-like field from a stream function.

    mode 2: ``V = (ds/dy, -ds/dx)``; mode 1: ``V = (-ds/dy, ds/dx)``.
    """
    g = element_gradient(geom, snapshot)
    v = jnp.stack([g[:, 1], -g[:, 0]], axis=1)
    if mode == 1:
        v = -v
    return v


def _apply_velocity(geom: ElementGeometry, velocity: jnp.ndarray, u: jnp.ndarray) -> jnp.ndarray:
    # V and grad(u) are constant per element, so int_e w_i (V . grad u) = A/3 * (V . grad u).
    gu = element_gradient(geom, u)
    c = (geom.area / 3.0) * jnp.sum(velocity * gu, axis=1)  # (Ne,)
    vals = jnp.broadcast_to(c[:, None], geom.tris.shape).reshape((-1,))
    return jax.ops.segment_sum(vals, geom.tris.reshape((-1,)), geom.n_dofs)


def convection_apply(geom: ElementGeometry, snapshot: jnp.ndarray, u: jnp.ndarray, mode: int = 2) -> jnp.ndarray:
    """``(N(s) u)_i = int w_i V(s) . grad u``; bilinear in `snapshot` and `u`."""
    return _apply_velocity(geom, rotated_gradient(geom, snapshot, mode), u)


convection_apply_jit = jax.jit(convection_apply, static_argnames=("mode",))


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class ConvectionOperator:
    """Convection operator frozen at one advecting snapshot.

    Instances are values: a new snapshot means a new operator, nothing is
    shared with or accumulated from earlier builds.
    """

    geometry: ElementGeometry
    velocity: jnp.ndarray  # (Ne, 2)

    def tree_flatten(self):
        children = (self.geometry, self.velocity)
        aux = None
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        del aux
        geometry, velocity = children
        return cls(geometry=geometry, velocity=velocity)

    @property
    def shape(self) -> tuple[int, int]:
        n = int(self.geometry.n_dofs)
        return (n, n)

    def matvec(self, u: jnp.ndarray) -> jnp.ndarray:
        u = jnp.asarray(u, dtype=jnp.float64)
        if u.shape != (self.shape[1],):
            raise ValueError(f"ConvectionOperator.matvec expects shape {(self.shape[1],)}, got {u.shape}")
        return _apply_velocity_jit(self.geometry, self.velocity, u)

    def __matmul__(self, u):
        return self.matvec(u)

    def to_scipy(self) -> sp.csr_matrix:
        """Assembled matrix ``C_ij = int w_i V . grad(w_j)`` (used by preconditioners)."""
        tris = np.asarray(self.geometry.tris)
        grad = np.asarray(self.geometry.grad_basis)
        area = np.asarray(self.geometry.area)
        vel = np.asarray(self.velocity)
        col_vals = (area / 3.0)[:, None] * np.einsum("ek,ebk->eb", vel, grad)  # (Ne, 3)
        local = np.broadcast_to(col_vals[:, None, :], (tris.shape[0], 3, 3))
        rows = np.broadcast_to(tris[:, :, None], local.shape).reshape(-1)
        cols = np.broadcast_to(tris[:, None, :], local.shape).reshape(-1)
        n = self.shape[0]
        c = sp.coo_matrix((local.reshape(-1), (rows, cols)), shape=(n, n)).tocsr()
        c.sum_duplicates()
        return c


_apply_velocity_jit = jax.jit(_apply_velocity)


def build_convection(space: "H1Space", snapshot, mode: int = 2) -> ConvectionOperator:
    """Build the convection operator advected by the rotated gradient of `snapshot`."""
    mode = _check_mode(mode)
    s = jnp.asarray(snapshot, dtype=jnp.float64)
    if s.shape != (space.n_dofs,):
        raise ValueError(f"snapshot must have shape {(space.n_dofs,)}, got {s.shape}")
    geom = space.geometry
    return ConvectionOperator(geometry=geom, velocity=rotated_gradient(geom, s, mode))
