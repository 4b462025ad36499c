"""Backward-Euler residual of the reduced MHD system and its Jacobian.

For the end-of-step unknown ``k = (phi*, psi*, w*)`` and a linearisation
context ``(dt, phi, psi, w)``::

  F1 = K phi* + M w*
  F2 = M (psi* - psi)/dt + Nv(phi*) psi* [+ DSl psi*] [+ E0]
  F3 = M (w* - w)/dt   + Nv(phi*) w*   [+ DRe w*]   - Nb(psi*) j(psi*)

with every block zeroed on the essential dofs. ``j(psi*)`` solves
``M j = -KB psi*``; it is an explicit argument of the JAX residual so that the
Jacobian is ``dF/dk + dF/dj * dj/dpsi`` with ``dj = M^{-1}(-KB dpsi)``.

The context is a value passed to every call, so one
:class:`ReducedSystemOperator` can serve any number of time steps.
"""

from __future__ import annotations

from dataclasses import dataclass
import math

from jax import config as _jax_config

_jax_config.update("jax_enable_x64", True)

import jax
import jax.numpy as jnp
import numpy as np
from jax import tree_util as jtu

from .convection import ConvectionOperator, convection_apply, rotated_gradient
from .current import CurrentRecovery
from .fespace import ElementGeometry
from .sparse import CSROperator, csr_matvec
from .verbose import EmitFn, null_emit


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class LinearizationContext:
    """Immutable linearisation point of one implicit step.

    `j_bdy` carries the Dirichlet values (and warm start) of the current field.
    Build instances with :meth:`create`, which validates the inputs.
    """

    dt: jnp.ndarray
    phi: jnp.ndarray
    psi: jnp.ndarray
    w: jnp.ndarray
    j_bdy: jnp.ndarray

    def tree_flatten(self):
        children = (self.dt, self.phi, self.psi, self.w, self.j_bdy)
        aux = None
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        del aux
        dt, phi, psi, w, j_bdy = children
        return cls(dt=dt, phi=phi, psi=psi, w=w, j_bdy=j_bdy)

    @classmethod
    def create(cls, dt: float, phi, psi, w, j_bdy=None) -> "LinearizationContext":
        dt_f = float(dt)
        if not math.isfinite(dt_f) or dt_f <= 0.0:
            raise ValueError(f"dt must be positive and finite, got {dt}")
        arrs = [np.asarray(a, dtype=np.float64) for a in (phi, psi, w)]
        n = arrs[0].shape
        if len(n) != 1 or any(a.shape != n for a in arrs):
            raise ValueError(f"phi, psi, w must be 1D with equal length, got {[a.shape for a in arrs]}")
        if j_bdy is None:
            j_arr = np.zeros(n, dtype=np.float64)
        else:
            j_arr = np.asarray(j_bdy, dtype=np.float64)
            if j_arr.shape != n:
                raise ValueError(f"j_bdy must have shape {n}, got {j_arr.shape}")
        return cls(
            dt=jnp.asarray(dt_f, dtype=jnp.float64),
            phi=jnp.asarray(arrs[0]),
            psi=jnp.asarray(arrs[1]),
            w=jnp.asarray(arrs[2]),
            j_bdy=jnp.asarray(j_arr),
        )

    @property
    def n_dofs(self) -> int:
        return int(self.psi.shape[0])

    def state(self) -> jnp.ndarray:
        return jnp.concatenate([self.phi, self.psi, self.w])


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class ReducedOperands:
    """Fixed operators of the residual, as JAX values (non-owning views of the arena)."""

    geometry: ElementGeometry
    mass: CSROperator  # eliminated M
    stiffness: CSROperator  # eliminated K
    resistive_diffusion: CSROperator
    viscous_diffusion: CSROperator
    e0: jnp.ndarray
    keep: jnp.ndarray  # 1 on free dofs, 0 on essential dofs
    mode: int = 2
    use_resistivity: bool = False
    use_viscosity: bool = False

    def tree_flatten(self):
        children = (self.geometry, self.mass, self.stiffness, self.resistive_diffusion, self.viscous_diffusion, self.e0, self.keep)
        aux = (int(self.mode), bool(self.use_resistivity), bool(self.use_viscosity))
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        geometry, mass, stiffness, dsl, dre, e0, keep = children
        mode, use_resistivity, use_viscosity = aux
        return cls(
            geometry=geometry,
            mass=mass,
            stiffness=stiffness,
            resistive_diffusion=dsl,
            viscous_diffusion=dre,
            e0=e0,
            keep=keep,
            mode=mode,
            use_resistivity=use_resistivity,
            use_viscosity=use_viscosity,
        )

    @property
    def n_dofs(self) -> int:
        return int(self.geometry.n_dofs)


def _csr(op: CSROperator, x: jnp.ndarray) -> jnp.ndarray:
    return csr_matvec(data=op.data, indices=op.indices, indptr=op.indptr, x=x, n_rows=op.shape[0])


def residual_with_current(ops: ReducedOperands, ctx: LinearizationContext, k: jnp.ndarray, j: jnp.ndarray) -> jnp.ndarray:
    """Pure JAX residual ``F(k; j)`` with the current supplied explicitly."""
    n = ops.n_dofs
    phi_s = k[:n]
    psi_s = k[n : 2 * n]
    w_s = k[2 * n :]

    r1 = _csr(ops.stiffness, phi_s) + _csr(ops.mass, w_s)

    r2 = _csr(ops.mass, psi_s - ctx.psi) / ctx.dt + convection_apply(ops.geometry, phi_s, psi_s, ops.mode)
    if ops.use_resistivity:
        r2 = r2 + _csr(ops.resistive_diffusion, psi_s)
    r2 = r2 + ops.e0

    r3 = _csr(ops.mass, w_s - ctx.w) / ctx.dt + convection_apply(ops.geometry, phi_s, w_s, ops.mode)
    if ops.use_viscosity:
        r3 = r3 + _csr(ops.viscous_diffusion, w_s)
    r3 = r3 - convection_apply(ops.geometry, psi_s, j, ops.mode)

    return jnp.concatenate([ops.keep * r1, ops.keep * r2, ops.keep * r3])


_residual_with_current_jit = jax.jit(residual_with_current)


class JacobianOperator:
    """Matrix-free Jacobian of the reduced residual at one Newton iterate.

    Rows and columns of the essential dofs act as the identity, so a Newton
    correction never moves Dirichlet values.
    """

    def __init__(self, system: "ReducedSystemOperator", ctx: LinearizationContext, k) -> None:
        self.system = system
        self.context = ctx
        self.k = jnp.asarray(np.asarray(k, dtype=np.float64))
        self.j = jnp.asarray(system.recover_current(ctx, self.k))
        ops = system.operands

        def f(kk, jj):
            return residual_with_current(ops, ctx, kk, jj)

        # One linearisation per Newton step, reused by every GMRES matvec.
        r, lin = jax.linearize(f, self.k, self.j)
        self.residual = np.asarray(r, dtype=np.float64)
        self._lin = lin
        self._keep3 = np.tile(np.asarray(ops.keep, dtype=np.float64), 3)

    @property
    def shape(self) -> tuple[int, int]:
        n = 3 * self.system.n_dofs
        return (n, n)

    def matvec(self, dk) -> np.ndarray:
        dk = np.asarray(dk, dtype=np.float64).reshape((-1,))
        if dk.shape != (self.shape[1],):
            raise ValueError(f"JacobianOperator.matvec expects shape {(self.shape[1],)}, got {dk.shape}")
        n = self.system.n_dofs
        dk_free = self._keep3 * dk
        dj = self.system.current.recover_increment(dk_free[n : 2 * n])
        out = np.asarray(self._lin(jnp.asarray(dk_free), jnp.asarray(dj)), dtype=np.float64)
        return self._keep3 * out + (1.0 - self._keep3) * dk

    def __call__(self, dk) -> np.ndarray:
        return self.matvec(dk)


class ReducedSystemOperator:
    """Residual and Jacobian of the backward-Euler step.

    The system holds non-owning references to the fixed operators and the
    current-recovery solver; convection operators are rebuilt inside every
    evaluation from the candidate ``k``.
    """

    def __init__(self, operands: ReducedOperands, current: CurrentRecovery, *, emit: EmitFn | None = None) -> None:
        if current.n != operands.n_dofs:
            raise ValueError(f"current recovery size {current.n} does not match operands size {operands.n_dofs}")
        self.operands = operands
        self.current = current
        self.emit = emit if emit is not None else null_emit

    @property
    def n_dofs(self) -> int:
        return self.operands.n_dofs

    @property
    def ess_tdof_list(self) -> np.ndarray:
        return self.current.ess_tdof_list

    def _check(self, ctx: LinearizationContext, k) -> np.ndarray:
        if not isinstance(ctx, LinearizationContext):
            raise ValueError(f"expected a LinearizationContext, got {type(ctx).__name__}")
        if ctx.n_dofs != self.n_dofs:
            raise ValueError(f"context has {ctx.n_dofs} dofs per field, operator has {self.n_dofs}")
        k = np.asarray(k, dtype=np.float64).reshape((-1,))
        if k.shape != (3 * self.n_dofs,):
            raise ValueError(f"k must have shape {(3 * self.n_dofs,)}, got {k.shape}")
        return k

    def operands_convection(self, snapshot) -> ConvectionOperator:
        geom = self.operands.geometry
        s = jnp.asarray(np.asarray(snapshot, dtype=np.float64))
        return ConvectionOperator(geometry=geom, velocity=rotated_gradient(geom, s, self.operands.mode))

    def recover_current(self, ctx: LinearizationContext, k) -> np.ndarray:
        n = self.n_dofs
        psi_s = np.asarray(k, dtype=np.float64)[n : 2 * n]
        j_bdy = np.asarray(ctx.j_bdy)
        return self.current.recover(psi_s, j_bdy, x0=j_bdy)

    def residual(self, ctx: LinearizationContext, k) -> np.ndarray:
        k = self._check(ctx, k)
        j = self.recover_current(ctx, k)
        r = _residual_with_current_jit(self.operands, ctx, jnp.asarray(k), jnp.asarray(j))
        return np.asarray(r, dtype=np.float64)

    def jacobian(self, ctx: LinearizationContext, k) -> JacobianOperator:
        k = self._check(ctx, k)
        return JacobianOperator(self, ctx, k)

    def bind(self, ctx: LinearizationContext) -> "BoundReducedSystem":
        if ctx.n_dofs != self.n_dofs:
            raise ValueError(f"context has {ctx.n_dofs} dofs per field, operator has {self.n_dofs}")
        return BoundReducedSystem(self, ctx)


@dataclass(frozen=True)
class BoundReducedSystem:
    """``mult``/``get_gradient`` view of the system at a fixed context, for the Newton solver."""

    system: ReducedSystemOperator
    context: LinearizationContext

    @property
    def n(self) -> int:
        return 3 * self.system.n_dofs

    def mult(self, k) -> np.ndarray:
        return self.system.residual(self.context, k)

    def get_gradient(self, k) -> JacobianOperator:
        return self.system.jacobian(self.context, k)


def finite_difference_check(
    system: ReducedSystemOperator,
    ctx: LinearizationContext,
    k,
    *,
    eps: tuple[float, ...] = (1e-2, 1e-3, 1e-4),
    seed: int = 0,
) -> list[tuple[float, float]]:
    """Return ``(eps, ||F(k+eps v) - F(k) - eps J v||)`` for a random `v` vanishing on essential dofs."""
    k = np.asarray(k, dtype=np.float64)
    n = system.n_dofs
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(3 * n)
    for b in range(3):
        v[b * n + system.ess_tdof_list] = 0.0
    v /= max(np.linalg.norm(v), 1e-300)
    f0 = system.residual(ctx, k)
    jv = system.jacobian(ctx, k).matvec(v)
    out = []
    for e in eps:
        fe = system.residual(ctx, k + float(e) * v)
        err = float(np.linalg.norm(fe - f0 - float(e) * jv))
        system.emit(1, f"finite_difference_check: eps={float(e):.1e} error={err:.3e}")
        out.append((float(e), err))
    return out
