"""Continuous P1 finite-element space on a :class:`~rmhd_jax.mesh.TriangleMesh`.

This is the discretisation backend used by the reduced MHD operators. It
assembles the constant-coefficient operators once with SciPy (COO -> CSR) and
exposes the per-element geometry as a JAX pytree so that field-dependent
operators (convection) can be evaluated inside `jax.linearize`.

With barycentric basis functions ``l_a`` on a triangle of area ``A``::

    grad l_a = (b_a, c_a) / (2A),   b = (y2-y3, y3-y1, y1-y2),   c = (x3-x2, x1-x3, x2-x1)
    M_e = A/12 * [[2,1,1],[1,2,1],[1,1,2]]
    K_e = A * grad l_a . grad l_b
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from jax import config as _jax_config

_jax_config.update("jax_enable_x64", True)

import jax.numpy as jnp
import numpy as np
import scipy.sparse as sp
from jax import tree_util as jtu

from .mesh import TriangleMesh

ScalarFunction = Callable[[np.ndarray, np.ndarray], np.ndarray]


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class ElementGeometry:
    """Per-element data needed by the JAX kernels."""

    tris: jnp.ndarray  # (Ne, 3) int32
    grad_basis: jnp.ndarray  # (Ne, 3, 2)
    area: jnp.ndarray  # (Ne,)
    n_dofs: int

    def tree_flatten(self):
        children = (self.tris, self.grad_basis, self.area)
        aux = int(self.n_dofs)
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        tris, grad_basis, area = children
        return cls(tris=tris, grad_basis=grad_basis, area=area, n_dofs=int(aux))


def _element_data(mesh: TriangleMesh) -> tuple[np.ndarray, np.ndarray]:
    p = mesh.nodes
    t = mesh.tris
    x1, y1 = p[t[:, 0], 0], p[t[:, 0], 1]
    x2, y2 = p[t[:, 1], 0], p[t[:, 1], 1]
    x3, y3 = p[t[:, 2], 0], p[t[:, 2], 1]
    two_a = (x2 - x1) * (y3 - y1) - (y2 - y1) * (x3 - x1)
    if np.any(two_a <= 0.0):
        bad = int(np.argmin(two_a))
        raise ValueError(f"Element {bad} is degenerate or clockwise (2A={two_a[bad]:.3e})")
    b = np.stack([y2 - y3, y3 - y1, y1 - y2], axis=1)
    c = np.stack([x3 - x2, x1 - x3, x2 - x1], axis=1)
    grad = np.stack([b, c], axis=-1) / two_a[:, None, None]  # (Ne, 3, 2)
    return 0.5 * two_a, grad


def _assemble(local: np.ndarray, tris: np.ndarray, n: int) -> sp.csr_matrix:
    rows = np.broadcast_to(tris[:, :, None], local.shape).reshape(-1)
    cols = np.broadcast_to(tris[:, None, :], local.shape).reshape(-1)
    a = sp.coo_matrix((local.reshape(-1), (rows, cols)), shape=(n, n)).tocsr()
    a.sum_duplicates()
    return a


def eliminate(a, ess_tdof_list) -> sp.csr_matrix:
    """Zero the essential rows and columns of `a` and put 1 on their diagonal."""
    a = sp.csr_matrix(a)
    n = int(a.shape[0])
    mask = np.ones(n, dtype=np.float64)
    mask[np.asarray(ess_tdof_list, dtype=np.int64)] = 0.0
    d = sp.diags(mask)
    out = (d @ a @ d + sp.diags(1.0 - mask)).tocsr()
    out.eliminate_zeros()
    return out


class EssentialElimination:
    """Dirichlet elimination for one bilinear form (``FormLinearSystem`` contract).

    ``rhs(x, b)`` returns ``(X, B)`` such that solving ``A_elim X = B`` yields a
    vector equal to ``x`` on the essential dofs and satisfying the original
    equations on the others.
    """

    def __init__(self, a, ess_tdof_list) -> None:
        a = sp.csr_matrix(a)
        self.ess_tdof_list = np.asarray(ess_tdof_list, dtype=np.int64)
        self._coupling = a[:, self.ess_tdof_list].tocsr()
        self.matrix = eliminate(a, self.ess_tdof_list)

    def form_system_matrix(self) -> sp.csr_matrix:
        return self.matrix

    def rhs(self, x: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.array(x, dtype=np.float64, copy=True)
        b = np.asarray(b, dtype=np.float64)
        x_ess = x[self.ess_tdof_list]
        rhs = b - self._coupling @ x_ess
        rhs[self.ess_tdof_list] = x_ess
        return x, rhs

    def recover(self, x: np.ndarray) -> np.ndarray:
        # Serial P1: true dofs and local dofs coincide.
        return np.asarray(x, dtype=np.float64)


class H1Space:
    """Continuous piecewise-linear space, one dof per mesh node."""

    def __init__(self, mesh: TriangleMesh) -> None:
        self.mesh = mesh
        area, grad = _element_data(mesh)
        self._area = area
        self._grad = grad
        self.geometry = ElementGeometry(
            tris=jnp.asarray(mesh.tris, dtype=jnp.int32),
            grad_basis=jnp.asarray(grad, dtype=jnp.float64),
            area=jnp.asarray(area, dtype=jnp.float64),
            n_dofs=mesh.n_nodes,
        )

    @property
    def n_dofs(self) -> int:
        return self.mesh.n_nodes

    # ------------------------------------------------------------------
    # Boundary dofs
    # ------------------------------------------------------------------
    def essential_true_dofs(self, ess_bdr: Sequence[int]) -> np.ndarray:
        """Sorted dofs on the boundary attributes marked with 1 in `ess_bdr`."""
        marker = np.asarray(ess_bdr)
        n_attr = self.mesh.n_bdr_attributes
        if marker.ndim != 1 or marker.shape[0] != n_attr:
            raise ValueError(f"ess_bdr must have one entry per boundary attribute ({n_attr}), got shape {marker.shape}")
        if not np.all(np.isin(marker, (0, 1))):
            raise ValueError(f"ess_bdr entries must be 0 or 1, got {marker.tolist()}")
        marked = np.nonzero(marker)[0] + 1
        sel = np.isin(self.mesh.bdr_attributes, marked)
        return np.unique(self.mesh.bdr_edges[sel].reshape(-1)).astype(np.int64)

    # ------------------------------------------------------------------
    # Bilinear forms
    # ------------------------------------------------------------------
    def mass(self, coef: float = 1.0) -> sp.csr_matrix:
        ref = (np.ones((3, 3)) + np.eye(3)) / 12.0
        local = float(coef) * self._area[:, None, None] * ref[None, :, :]
        return _assemble(local, self.mesh.tris, self.n_dofs)

    def diffusion(self, coef: float = 1.0) -> sp.csr_matrix:
        g = self._grad
        local = float(coef) * self._area[:, None, None] * np.einsum("eak,ebk->eab", g, g)
        return _assemble(local, self.mesh.tris, self.n_dofs)

    def stiffness(self) -> sp.csr_matrix:
        return self.diffusion(1.0)

    def boundary_normal_derivative(self) -> sp.csr_matrix:
        """``B_ij = int_{dOmega} w_i grad(u_j) . n ds`` over every boundary edge."""
        mesh = self.mesh
        p = mesh.nodes
        u = mesh.bdr_edges[:, 0]
        v = mesh.bdr_edges[:, 1]
        t = p[v] - p[u]
        length = np.hypot(t[:, 0], t[:, 1])
        normal = np.stack([t[:, 1], -t[:, 0]], axis=1) / length[:, None]
        gn = np.einsum("eak,ek->ea", self._grad[mesh.bdr_elements], normal)  # (Nb, 3)
        vals = 0.5 * length[:, None] * gn
        cols = mesh.tris[mesh.bdr_elements]
        rows = np.concatenate([np.repeat(u, 3), np.repeat(v, 3)])
        cols = np.concatenate([cols.reshape(-1), cols.reshape(-1)])
        vals = np.concatenate([vals.reshape(-1), vals.reshape(-1)])
        b = sp.coo_matrix((vals, (rows, cols)), shape=(self.n_dofs, self.n_dofs)).tocsr()
        b.sum_duplicates()
        return b

    def boundary_stiffness(self) -> sp.csr_matrix:
        """``K - B``: the stiffness form with the boundary flux removed, so ``(K-B) psi ~ -M lap(psi)``."""
        return (self.stiffness() - self.boundary_normal_derivative()).tocsr()

    def convection(self, snapshot, mode: int = 2):
        from .convection import build_convection  # noqa: PLC0415

        return build_convection(self, snapshot, mode=mode)

    # ------------------------------------------------------------------
    # Grid functions and linear forms
    # ------------------------------------------------------------------
    def project(self, f: ScalarFunction) -> np.ndarray:
        """Nodal interpolation of a vectorised callable ``f(x, y)``."""
        x = self.mesh.nodes[:, 0]
        y = self.mesh.nodes[:, 1]
        return np.broadcast_to(np.asarray(f(x, y), dtype=np.float64), (self.n_dofs,)).copy()

    def linear_form(self, f: ScalarFunction) -> np.ndarray:
        """Load vector ``int f w_i``, edge-midpoint quadrature (exact for quadratics)."""
        p = self.mesh.nodes
        t = self.mesh.tris
        mids = []
        for a, b in ((0, 1), (1, 2), (2, 0)):
            m = 0.5 * (p[t[:, a]] + p[t[:, b]])
            mids.append(np.broadcast_to(np.asarray(f(m[:, 0], m[:, 1]), dtype=np.float64), (t.shape[0],)))
        f01, f12, f20 = mids
        w = self._area / 3.0
        out = np.zeros(self.n_dofs, dtype=np.float64)
        np.add.at(out, t[:, 0], 0.5 * w * (f01 + f20))
        np.add.at(out, t[:, 1], 0.5 * w * (f01 + f12))
        np.add.at(out, t[:, 2], 0.5 * w * (f12 + f20))
        return out
