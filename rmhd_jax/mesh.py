"""Structured triangle meshes of rectangles.

Boundary edges carry MFEM-style attributes so that essential boundaries can be
selected with a marker array::

    1 = bottom (y = y_min), 2 = right (x = x_max), 3 = top (y = y_max), 4 = left (x = x_min)

Triangles are counter-clockwise and boundary edges are oriented so that the
domain lies to their left, i.e. the outward normal of edge (u -> v) is the
right turn of ``v - u``.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

BOTTOM, RIGHT, TOP, LEFT = 1, 2, 3, 4


@dataclass(frozen=True)
class TriangleMesh:
    nodes: np.ndarray  # (Nn, 2)
    tris: np.ndarray  # (Ne, 3), CCW
    bdr_edges: np.ndarray  # (Nb, 2), oriented with the domain on the left
    bdr_attributes: np.ndarray  # (Nb,)
    bdr_elements: np.ndarray  # (Nb,) owning triangle of each boundary edge

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def n_elements(self) -> int:
        return int(self.tris.shape[0])

    @property
    def n_bdr_attributes(self) -> int:
        if self.bdr_attributes.size == 0:
            return 0
        return int(self.bdr_attributes.max())


def rectangle_mesh(
    nx: int,
    ny: int,
    *,
    x_min: float = 0.0,
    x_max: float = 1.0,
    y_min: float = 0.0,
    y_max: float = 1.0,
) -> TriangleMesh:
    """Split an `nx` x `ny` grid of rectangles into two triangles each.

    Cell (i, j) with corners n00, n10, n11, n01 is split along n00-n11 into
    (n00, n10, n11) and (n00, n11, n01); node (i, j) has index ``i + j*(nx+1)``.
    """
    nx = int(nx)
    ny = int(ny)
    if nx < 1 or ny < 1:
        raise ValueError(f"nx and ny must be positive, got nx={nx}, ny={ny}")
    if not (x_max > x_min and y_max > y_min):
        raise ValueError(f"Degenerate rectangle [{x_min}, {x_max}] x [{y_min}, {y_max}]")

    xs = np.linspace(float(x_min), float(x_max), nx + 1)
    ys = np.linspace(float(y_min), float(y_max), ny + 1)
    xx, yy = np.meshgrid(xs, ys, indexing="xy")
    nodes = np.stack([xx.reshape(-1), yy.reshape(-1)], axis=1)

    def nid(i, j):
        return i + j * (nx + 1)

    ii, jj = np.meshgrid(np.arange(nx), np.arange(ny), indexing="xy")
    ii = ii.reshape(-1)
    jj = jj.reshape(-1)
    n00 = nid(ii, jj)
    n10 = nid(ii + 1, jj)
    n11 = nid(ii + 1, jj + 1)
    n01 = nid(ii, jj + 1)

    # Cell c = i + j*nx owns triangles 2c (lower-right) and 2c+1 (upper-left).
    tris = np.empty((2 * nx * ny, 3), dtype=np.int64)
    tris[0::2] = np.stack([n00, n10, n11], axis=1)
    tris[1::2] = np.stack([n00, n11, n01], axis=1)

    def cell(i, j):
        return i + j * nx

    edges = []
    attrs = []
    owners = []

    i = np.arange(nx)
    edges.append(np.stack([nid(i, 0), nid(i + 1, 0)], axis=1))
    attrs.append(np.full(nx, BOTTOM))
    owners.append(2 * cell(i, 0))

    j = np.arange(ny)
    edges.append(np.stack([nid(nx, j), nid(nx, j + 1)], axis=1))
    attrs.append(np.full(ny, RIGHT))
    owners.append(2 * cell(nx - 1, j))

    edges.append(np.stack([nid(i + 1, ny), nid(i, ny)], axis=1))
    attrs.append(np.full(nx, TOP))
    owners.append(2 * cell(i, ny - 1) + 1)

    edges.append(np.stack([nid(0, j + 1), nid(0, j)], axis=1))
    attrs.append(np.full(ny, LEFT))
    owners.append(2 * cell(0, j) + 1)

    return TriangleMesh(
        nodes=nodes,
        tris=tris,
        bdr_edges=np.concatenate(edges, axis=0).astype(np.int64),
        bdr_attributes=np.concatenate(attrs).astype(np.int64),
        bdr_elements=np.concatenate(owners).astype(np.int64),
    )
