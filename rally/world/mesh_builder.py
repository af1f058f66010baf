from __future__ import annotations

from concurrent.futures import Executor, Future
from functools import lru_cache

import numpy as np

from rally.errors import ConfigError
from rally.world.chunk import ChunkMesh


def validate_chunk_params(res: int, world_size: float) -> None:
    if int(res) <= 0:
        raise ConfigError(f"chunk resolution must be positive, got {res}")
    if float(world_size) <= 0:
        raise ConfigError(f"chunk size must be positive, got {world_size}")


@lru_cache(maxsize=8)
def build_indices(res: int) -> np.ndarray:
    """Indices for a res x res quad grid ((res+1)^2 vertices, row-major).

    Two triangles per cell: (a, c, b) and (b, c, d), where a is the cell's
    corner, b = a + 1 and c/d are the same columns one row up.
    """
    n = res + 1
    j, i = np.meshgrid(np.arange(res), np.arange(res), indexing="ij")
    a = (j * n + i).reshape(-1)
    b = a + 1
    c = a + n
    d = c + 1
    idx = np.stack([a, c, b, b, c, d], axis=1).reshape(-1).astype(np.uint32)
    idx.setflags(write=False)
    return idx


@lru_cache(maxsize=8)
def build_uvs(res: int) -> np.ndarray:
    n = res + 1
    u = np.arange(n, dtype=np.float32) / np.float32(res)
    uu, vv = np.meshgrid(u, u, indexing="xy")
    uvs = np.stack([uu, vv], axis=-1).reshape(-1, 2).astype(np.float32)
    uvs.setflags(write=False)
    return uvs


def chunk_grid(cx: int, cz: int, res: int, world_size: float) -> tuple[np.ndarray, np.ndarray]:
    """World (x, z) of every vertex, each shaped (res+1, res+1)."""
    validate_chunk_params(res, world_size)
    step = float(world_size) / int(res)
    x0 = cx * float(world_size)
    z0 = cz * float(world_size)
    xs = x0 + np.arange(res + 1, dtype=np.float64) * step
    zs = z0 + np.arange(res + 1, dtype=np.float64) * step
    return np.meshgrid(xs, zs, indexing="xy")


def compute_normals(h: np.ndarray, step: float) -> np.ndarray:
    # Normals by central differences
    dhdx = np.zeros_like(h)
    dhdz = np.zeros_like(h)
    dhdx[:, 1:-1] = (h[:, 2:] - h[:, :-2]) / (2 * step)
    dhdz[1:-1, :] = (h[2:, :] - h[:-2, :]) / (2 * step)
    dhdx[:, 0] = (h[:, 1] - h[:, 0]) / step
    dhdx[:, -1] = (h[:, -1] - h[:, -2]) / step
    dhdz[0, :] = (h[1, :] - h[0, :]) / step
    dhdz[-1, :] = (h[-1, :] - h[-2, :]) / step

    n = np.stack([-dhdx, np.ones_like(h), -dhdz], axis=-1)
    n = n / np.maximum(np.linalg.norm(n, axis=-1, keepdims=True), 1e-8)
    return n.reshape(-1, 3).astype(np.float32)


class HeightJob:
    """Handle on a forked per-vertex height evaluation.

    Rows are split into bands evaluated independently; `result()` joins every
    band (re-raising the first failure) and returns the full grid.
    """

    def __init__(self, futures: list[Future] | None = None, value: np.ndarray | None = None) -> None:
        self._futures = futures or []
        self._value = value

    def done(self) -> bool:
        return self._value is not None or all(f.done() for f in self._futures)

    def result(self) -> np.ndarray:
        if self._value is None:
            self._value = np.concatenate([f.result() for f in self._futures], axis=0)
            self._futures = []
        return self._value


def schedule_heights(
    height_field,
    grid_x: np.ndarray,
    grid_z: np.ndarray,
    carve: np.ndarray | None,
    *,
    executor: Executor | None = None,
    bands: int = 4,
) -> HeightJob:
    """Fork the height evaluation of a vertex grid across `executor`.

    Without an executor (or with a single band) the grid is evaluated inline
    and the returned job is already complete.
    """
    if carve is None:
        carve = np.zeros_like(grid_x, dtype=np.float64)
    rows = grid_x.shape[0]
    bands = max(1, min(int(bands), rows))
    if executor is None or bands == 1:
        return HeightJob(value=height_field.height_grid(grid_x, grid_z, carve))

    futures: list[Future] = []
    for r in np.array_split(np.arange(rows), bands):
        r0, r1 = int(r[0]), int(r[-1]) + 1
        futures.append(executor.submit(height_field.height_grid, grid_x[r0:r1], grid_z[r0:r1], carve[r0:r1]))
    return HeightJob(futures=futures)


def assemble_chunk_mesh(
    cx: int,
    cz: int,
    res: int,
    world_size: float,
    grid_x: np.ndarray,
    grid_z: np.ndarray,
    heights: np.ndarray,
) -> ChunkMesh:
    """Pack joined heights into a chunk mesh (positions, normals, uvs, indices)."""
    h = np.asarray(heights, dtype=np.float32)
    step = float(world_size) / int(res)
    pos = np.stack([grid_x.astype(np.float32), h, grid_z.astype(np.float32)], axis=-1).reshape(-1, 3)
    return ChunkMesh(
        cx=int(cx),
        cz=int(cz),
        resolution=int(res),
        size=float(world_size),
        positions=pos,
        normals=compute_normals(h, np.float32(step)),
        uvs=build_uvs(int(res)),
        indices=build_indices(int(res)),
    )


def build_chunk_mesh(
    cx: int,
    cz: int,
    res: int,
    world_size: float,
    height_field,
    carve: np.ndarray | None = None,
    *,
    executor: Executor | None = None,
    bands: int = 4,
) -> ChunkMesh:
    """Build one chunk synchronously: fork heights, join, assemble."""
    grid_x, grid_z = chunk_grid(cx, cz, res, world_size)
    if carve is not None:
        carve = np.asarray(carve, dtype=np.float64).reshape(grid_x.shape)
    job = schedule_heights(height_field, grid_x, grid_z, carve, executor=executor, bands=bands)
    return assemble_chunk_mesh(cx, cz, res, world_size, grid_x, grid_z, job.result())
