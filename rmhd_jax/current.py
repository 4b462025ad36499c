from __future__ import annotations

import numpy as np
import scipy.sparse as sp

from .fespace import EssentialElimination
from .solver import KrylovResult, KrylovSolver


class CurrentRecovery:
    """Recover the current ``j`` from the flux ``psi`` by solving ``M j = -KB psi``.

    `mass` is the Dirichlet elimination of the mass form and `solver` a CG
    solver on its system matrix; the values of ``j`` on the essential dofs are
    taken from the Dirichlet data passed to :meth:`recover`.
    """

    def __init__(self, mass: EssentialElimination, boundary_stiffness, solver: KrylovSolver) -> None:
        self.mass = mass
        self.kb = sp.csr_matrix(boundary_stiffness)
        self.solver = solver
        self.ess_tdof_list = mass.ess_tdof_list
        n = int(self.kb.shape[0])
        if solver.n != n or mass.matrix.shape != (n, n):
            raise ValueError(f"CurrentRecovery: size mismatch (KB {self.kb.shape}, M {mass.matrix.shape}, solver n={solver.n})")
        self.last_result: KrylovResult | None = None

    @property
    def n(self) -> int:
        return int(self.kb.shape[0])

    def _check(self, name: str, v) -> np.ndarray:
        v = np.asarray(v, dtype=np.float64).reshape((-1,))
        if v.shape != (self.n,):
            raise ValueError(f"{name} must have shape {(self.n,)}, got {v.shape}")
        return v

    def recover(self, psi, j_dirichlet, x0=None) -> np.ndarray:
        """Solve for ``j``; `j_dirichlet` supplies the boundary values (and the default warm start)."""
        psi = self._check("psi", psi)
        j_dirichlet = self._check("j_dirichlet", j_dirichlet)
        z = -(self.kb @ psi)
        x, b = self.mass.rhs(j_dirichlet, z)
        guess = x if x0 is None else self._check("x0", x0)
        res = self.solver.mult(b, guess)
        self.last_result = res
        j = np.array(self.mass.recover(res.x), copy=True)
        j[self.ess_tdof_list] = x[self.ess_tdof_list]
        return j

    def recover_increment(self, dpsi) -> np.ndarray:
        """Linear response ``dj`` of the current to ``dpsi`` (homogeneous boundary values)."""
        dpsi = self._check("dpsi", dpsi)
        return self.recover(dpsi, np.zeros(self.n, dtype=np.float64))
