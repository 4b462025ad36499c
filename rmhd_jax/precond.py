from __future__ import annotations

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from .fespace import eliminate
from .reduced import JacobianOperator, ReducedSystemOperator
from .verbose import EmitFn, null_emit


class BlockPreconditioner:
    """Block lower-triangular approximation of the reduced Jacobian.

    The Lorentz coupling and the dependence of ``Nv`` on ``phi*`` are dropped,
    which leaves::

      dw   = A_w^{-1} r3,          A_w   = M/dt + Nv(phi*) [+ DRe]
      dpsi = A_psi^{-1} r2,        A_psi = M/dt + Nv(phi*) [+ DSl]
      dphi = K^{-1} (r1 - M dw)

    Each block is Dirichlet-eliminated and factorised with SuperLU.
    """

    def __init__(self, jac: JacobianOperator, *, emit: EmitFn | None = None) -> None:
        self.emit = emit if emit is not None else null_emit
        system = jac.system
        ops = system.operands
        ess = system.ess_tdof_list
        n = system.n_dofs
        dt = float(jac.context.dt)
        self.n = n
        self.ess = ess

        mass = ops.mass.to_scipy()
        nv = system.operands_convection(jac.k[:n]).to_scipy()
        a_w = mass / dt + nv
        if ops.use_viscosity:
            a_w = a_w + ops.viscous_diffusion.to_scipy()
        a_psi = mass / dt + nv
        if ops.use_resistivity:
            a_psi = a_psi + ops.resistive_diffusion.to_scipy()

        self._mass = sp.csr_matrix(mass)
        self._lu_w = splu(sp.csc_matrix(eliminate(a_w, ess)))
        self._lu_psi = splu(sp.csc_matrix(eliminate(a_psi, ess)))
        self._lu_phi = splu(sp.csc_matrix(ops.stiffness.to_scipy()))
        self.emit(2, f"BlockPreconditioner: factorised 3 blocks of size {n}")

    def __call__(self, r) -> np.ndarray:
        if self._lu_w is None:
            raise RuntimeError("BlockPreconditioner used after release()")
        r = np.asarray(r, dtype=np.float64).reshape((-1,))
        n = self.n
        r1, r2, r3 = r[:n], r[n : 2 * n], r[2 * n :]
        dw = self._lu_w.solve(r3)
        dpsi = self._lu_psi.solve(r2)
        z = r1 - self._mass @ dw
        z[self.ess] = r1[self.ess]
        dphi = self._lu_phi.solve(z)
        return np.concatenate([dphi, dpsi, dw])

    def release(self) -> None:
        self._lu_w = None
        self._lu_psi = None
        self._lu_phi = None
        self._mass = None


class PreconditionerFactory:
    """Builds a preconditioner for each Jacobian handed out by the Newton solver."""

    def __init__(self, system: ReducedSystemOperator, name: str = "block", *, emit: EmitFn | None = None) -> None:
        if name not in {"block", "none"}:
            raise ValueError(f"Unknown preconditioner {name!r}")
        self.system = system
        self.name = name
        self.emit = emit if emit is not None else null_emit
        self._live: list[BlockPreconditioner] = []

    def new_preconditioner(self, jac: JacobianOperator) -> BlockPreconditioner | None:
        if self.name == "none":
            return None
        pc = BlockPreconditioner(jac, emit=self.emit)
        self._live.append(pc)
        return pc

    def release(self) -> None:
        """Release every factorisation handed out and not yet released."""
        for pc in self._live:
            pc.release()
        self._live.clear()
