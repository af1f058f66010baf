from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Tuple

import numpy as np

ChunkCoord = Tuple[int, int]

# External deformation hook: (chunk, affected vertex indices, (x, z), radius).
Deformer = Callable[["Chunk", np.ndarray, Tuple[float, float], float], None]


class ChunkState(Enum):
    UNREQUESTED = "unrequested"
    LOADING = "loading"
    ACTIVE = "active"
    POOLED = "pooled"


@dataclass
class ChunkMesh:
    cx: int
    cz: int
    resolution: int  # quads per side
    size: float  # world units per side
    positions: np.ndarray  # (N,3) float32, world space, row-major (z rows, x columns)
    normals: np.ndarray  # (N,3) float32
    uvs: np.ndarray  # (N,2) float32 in [0,1]
    indices: np.ndarray  # (R*R*6,) uint32, shared between chunks of one resolution

    @property
    def verts_per_line(self) -> int:
        return self.resolution + 1

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        return int(self.indices.shape[0] // 3)

    @property
    def step(self) -> float:
        return self.size / self.resolution

    @property
    def height_grid(self) -> np.ndarray:
        """(R+1, R+1) view of vertex heights; row = z index, column = x index."""
        n = self.verts_per_line
        return self.positions.reshape(n, n, 3)[:, :, 1]


class Chunk:
    """One terrain tile plus its lifecycle flags.

    The mesh doubles as the collision representation: `heights_at` samples the
    exact triangles the mesh draws.
    """

    def __init__(self, coord: ChunkCoord, mesh: ChunkMesh) -> None:
        self.coord: ChunkCoord = (int(coord[0]), int(coord[1]))
        self.mesh = mesh
        self.state = ChunkState.UNREQUESTED
        self.visible = False
        self.collidable = False
        self.deformer: Deformer | None = None
        self.deformation: Any = None  # owned by the external deformer

    def __repr__(self) -> str:
        return f"Chunk({self.coord}, {self.state.value})"

    @property
    def origin(self) -> tuple[float, float]:
        return self.coord[0] * self.mesh.size, self.coord[1] * self.mesh.size

    def activate(self) -> None:
        self.state = ChunkState.ACTIVE
        self.visible = True
        self.collidable = True

    def deactivate(self) -> None:
        self.state = ChunkState.POOLED
        self.visible = False
        self.collidable = False

    def heights_at(self, x: np.ndarray, z: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Surface height under each (x, z) and a hit mask (False outside the chunk)."""
        x = np.asarray(x, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        mesh = self.mesh
        res = mesh.resolution
        ox, oz = self.origin
        u = (x - ox) / mesh.step
        v = (z - oz) / mesh.step
        hit = (u >= 0.0) & (u <= res) & (v >= 0.0) & (v <= res)

        i = np.clip(np.floor(u), 0, res - 1).astype(np.int64)
        j = np.clip(np.floor(v), 0, res - 1).astype(np.int64)
        fu = np.clip(u - i, 0.0, 1.0)
        fv = np.clip(v - j, 0.0, 1.0)

        hg = mesh.height_grid.astype(np.float64)
        a = hg[j, i]
        b = hg[j, i + 1]
        c = hg[j + 1, i]
        d = hg[j + 1, i + 1]
        # Cells are split along the b-c diagonal, matching the index winding.
        lower = fu + fv <= 1.0
        h = np.where(
            lower,
            a + fu * (b - a) + fv * (c - a),
            d + (1.0 - fu) * (c - d) + (1.0 - fv) * (b - d),
        )
        return np.where(hit, h, 0.0), hit

    def height_at(self, x: float, z: float) -> float | None:
        h, hit = self.heights_at(np.array([x]), np.array([z]))
        return float(h[0]) if bool(hit[0]) else None

    def vertices_within(self, x: float, z: float, radius: float) -> np.ndarray:
        p = self.mesh.positions
        dx = p[:, 0].astype(np.float64) - x
        dz = p[:, 2].astype(np.float64) - z
        return np.nonzero(dx * dx + dz * dz < radius * radius)[0]

    def deform_at(self, x: float, z: float, radius: float) -> np.ndarray:
        """Entry point for the external deformation system.

        Only active chunks accept deformation. Returns the indices of the
        vertices within `radius` (planar) that were handed to the deformer.
        """
        if self.state is not ChunkState.ACTIVE or radius <= 0:
            return np.zeros(0, dtype=np.int64)
        idx = self.vertices_within(x, z, radius)
        if self.deformer is not None and idx.size:
            self.deformer(self, idx, (float(x), float(z)), float(radius))
        return idx
