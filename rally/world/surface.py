from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Mapping, Protocol, Sequence

import numpy as np

from rally.world.chunk import Chunk, ChunkCoord

_EPS = 1e-9


class SurfaceClass(IntEnum):
    NONE = 0
    TERRAIN = 1
    ROAD = 2
    CENTER_STRIP = 3


class GroundQuery(Protocol):
    def query(self, x: float, z: float) -> float | None: ...


@dataclass
class SurfaceSample:
    heights: np.ndarray  # (nx, nz) height of the highest hit (0 where nothing was hit)
    classes: np.ndarray  # (nx, nz) SurfaceClass values
    hit: np.ndarray  # (nx, nz) bool


class TriangleSoup:
    """Triangles of one surface class, queried with vertical rays."""

    def __init__(self, positions: np.ndarray, indices: np.ndarray, surface: SurfaceClass) -> None:
        self.surface = surface
        p = np.asarray(positions, dtype=np.float64)
        idx = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
        tris = p[idx] if idx.size else np.zeros((0, 3, 3))
        x0, z0 = tris[:, 0, 0], tris[:, 0, 2]
        x1, z1 = tris[:, 1, 0], tris[:, 1, 2]
        x2, z2 = tris[:, 2, 0], tris[:, 2, 2]
        denom = (z1 - z2) * (x0 - x2) + (x2 - x1) * (z0 - z2)
        # Triangles that are vertical (zero area in xz) can't be hit by a vertical ray.
        keep = np.abs(denom) > _EPS
        self.tris = tris[keep]
        self.denom = denom[keep]

    def __len__(self) -> int:
        return int(self.tris.shape[0])

    def _barycentric(self, tris: np.ndarray, denom: np.ndarray, px: np.ndarray, pz: np.ndarray):
        x0, z0 = tris[..., 0, 0], tris[..., 0, 2]
        x1, z1 = tris[..., 1, 0], tris[..., 1, 2]
        x2, z2 = tris[..., 2, 0], tris[..., 2, 2]
        w0 = ((z1 - z2) * (px - x2) + (x2 - x1) * (pz - z2)) / denom
        w1 = ((z2 - z0) * (px - x2) + (x0 - x2) * (pz - z2)) / denom
        w2 = 1.0 - w0 - w1
        inside = (w0 >= -1e-7) & (w1 >= -1e-7) & (w2 >= -1e-7)
        y = w0 * tris[..., 0, 1] + w1 * tris[..., 1, 1] + w2 * tris[..., 2, 1]
        return inside, y

    def height_at(self, x: float, z: float) -> float | None:
        if not len(self):
            return None
        inside, y = self._barycentric(self.tris, self.denom, float(x), float(z))
        if not inside.any():
            return None
        return float(np.max(y[inside]))

    def rasterize(self, xs: np.ndarray, zs: np.ndarray) -> np.ndarray:
        """Highest hit per (xs[i], zs[j]) sample point; -inf where nothing is hit.

        Both axes must be ascending.
        """
        out = np.full((xs.shape[0], zs.shape[0]), -np.inf, dtype=np.float64)
        for t in range(len(self)):
            tri = self.tris[t]
            i0 = int(np.searchsorted(xs, tri[:, 0].min(), side="left"))
            i1 = int(np.searchsorted(xs, tri[:, 0].max(), side="right"))
            j0 = int(np.searchsorted(zs, tri[:, 2].min(), side="left"))
            j1 = int(np.searchsorted(zs, tri[:, 2].max(), side="right"))
            if i0 >= i1 or j0 >= j1:
                continue
            px, pz = np.meshgrid(xs[i0:i1], zs[j0:j1], indexing="ij")
            inside, y = self._barycentric(tri, self.denom[t], px, pz)
            block = out[i0:i1, j0:j1]
            np.maximum(block, np.where(inside, y, -np.inf), out=block)
        return out


class TerrainSurface:
    """Ground query over built chunks plus optional road meshes.

    `query` returns the highest surface under a point (None on a miss);
    `sample` classifies a whole grid of points at once for cost mapping.
    """

    def __init__(self, chunks: Mapping[ChunkCoord, Chunk], chunk_size: float, roads: Sequence = ()) -> None:
        self.chunks = chunks
        self.chunk_size = float(chunk_size)
        self.roads = [TriangleSoup(r.positions, r.indices, r.surface) for r in roads]

    def terrain_height(self, x: float, z: float) -> float | None:
        key = (int(np.floor(x / self.chunk_size)), int(np.floor(z / self.chunk_size)))
        chunk = self.chunks.get(key)
        if chunk is None:
            return None
        return chunk.height_at(x, z)

    def query(self, x: float, z: float) -> float | None:
        best = self.terrain_height(x, z)
        for soup in self.roads:
            h = soup.height_at(x, z)
            if h is not None and (best is None or h > best):
                best = h
        return best

    def sample(self, xs: np.ndarray, zs: np.ndarray) -> SurfaceSample:
        """Classify every (xs[i], zs[j]) point. The axes may come in any order."""
        xs = np.asarray(xs, dtype=np.float64)
        zs = np.asarray(zs, dtype=np.float64)
        ox = np.argsort(xs, kind="stable")
        oz = np.argsort(zs, kind="stable")
        heights, classes = self._sample_sorted(xs[ox], zs[oz])

        # Scatter back to the caller's axis order.
        where = np.ix_(ox, oz)
        out_h = np.empty_like(heights)
        out_h[where] = heights
        out_c = np.empty_like(classes)
        out_c[where] = classes
        hit = out_c != int(SurfaceClass.NONE)
        return SurfaceSample(heights=np.where(hit, out_h, 0.0), classes=out_c, hit=hit)

    def _sample_sorted(self, xs: np.ndarray, zs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        shape = (xs.shape[0], zs.shape[0])
        heights = np.full(shape, -np.inf, dtype=np.float64)
        classes = np.zeros(shape, dtype=np.int8)

        size = self.chunk_size
        for (cx, cz), chunk in self.chunks.items():
            i0 = int(np.searchsorted(xs, cx * size, side="left"))
            i1 = int(np.searchsorted(xs, (cx + 1) * size, side="left"))
            j0 = int(np.searchsorted(zs, cz * size, side="left"))
            j1 = int(np.searchsorted(zs, (cz + 1) * size, side="left"))
            if i0 >= i1 or j0 >= j1:
                continue
            px, pz = np.meshgrid(xs[i0:i1], zs[j0:j1], indexing="ij")
            h, hit = chunk.heights_at(px, pz)
            heights[i0:i1, j0:j1] = np.where(hit, h, heights[i0:i1, j0:j1])
            classes[i0:i1, j0:j1] = np.where(hit, int(SurfaceClass.TERRAIN), classes[i0:i1, j0:j1])

        # Later classes win ties so the center strip beats the road edges it shares vertices with.
        for soup in sorted(self.roads, key=lambda s: int(s.surface)):
            rh = soup.rasterize(xs, zs)
            win = rh >= heights
            win &= np.isfinite(rh)
            heights = np.where(win, rh, heights)
            classes = np.where(win, int(soup.surface), classes).astype(np.int8)
        return heights, classes
