from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from rally.config import (
    GENERATE_ROADS, ROAD_WIDTH, CENTER_STRIP_WIDTH, SHOULDER_WIDTH, ROAD_MESH_STEP, ROAD_RAISE,
)
from rally.errors import ConfigError
from rally.util.math import WORLD_UP
from rally.world.curves import ValleyCurve
from rally.world.surface import GroundQuery, SurfaceClass

log = logging.getLogger(__name__)

# U coordinates across the road, outer-left to outer-right.
_EDGE_U = (-0.1, 0.0, 0.45, 0.55, 1.0, 1.1)
_CENTER_U = (0.0, 1.0)


@dataclass(frozen=True)
class RoadParams:
    enabled: bool = GENERATE_ROADS
    width: float = ROAD_WIDTH
    center_strip_width: float = CENTER_STRIP_WIDTH
    shoulder_width: float = SHOULDER_WIDTH
    mesh_step: float = ROAD_MESH_STEP
    raise_height: float = ROAD_RAISE

    def validate(self) -> None:
        if self.width <= 0:
            raise ConfigError(f"road width must be positive, got {self.width}")
        if not (0.0 < self.center_strip_width < self.width):
            raise ConfigError(
                f"center strip width ({self.center_strip_width}) must be positive and less than road width ({self.width})"
            )
        if self.shoulder_width < 0:
            raise ConfigError(f"shoulder width must be non-negative, got {self.shoulder_width}")
        if self.mesh_step <= 0:
            raise ConfigError(f"road mesh step must be positive, got {self.mesh_step}")


@dataclass
class RoadMesh:
    name: str
    surface: SurfaceClass
    positions: np.ndarray  # (N,3) float32
    uvs: np.ndarray  # (N,2) float32
    indices: np.ndarray  # (M,) uint32

    @property
    def triangle_count(self) -> int:
        return int(self.indices.shape[0] // 3)


def _stations(length: float, step: float) -> np.ndarray:
    d = np.arange(0.0, length, step)
    if d.size == 0 or length - d[-1] > 1e-6:
        d = np.append(d, length)
    return d


def _right_vector(direction: np.ndarray) -> np.ndarray:
    # World up keeps the road flat across even when the curve climbs.
    r = np.cross(direction, WORLD_UP)
    n = float(np.linalg.norm(r))
    if n < 1e-9:
        return np.array([1.0, 0.0, 0.0])
    return r / n


def _snap(point: np.ndarray, ground: GroundQuery | None) -> np.ndarray:
    # Misses keep the curve's own height.
    if ground is None:
        return point.copy()
    y = ground.query(float(point[0]), float(point[2]))
    out = point.copy()
    if y is not None:
        out[1] = y
    return out


def build_curve_road(
    curve: ValleyCurve,
    params: RoadParams,
    ground: GroundQuery | None,
    *,
    index: int = 0,
) -> list[RoadMesh]:
    """Center-strip mesh and edges/shoulders mesh for one curve.

    Returns an empty list for curves shorter than one mesh step.
    """
    length = curve.length
    if length < params.mesh_step:
        log.debug("curve %d shorter than road mesh step (%.2f < %.2f), skipped", index, length, params.mesh_step)
        return []

    half_road = params.width * 0.5
    half_center = params.center_strip_width * 0.5
    outer = half_road + params.shoulder_width
    raise_v = WORLD_UP * params.raise_height

    center_v: list[np.ndarray] = []
    center_uv: list[tuple[float, float]] = []
    center_idx: list[int] = []
    edge_v: list[np.ndarray] = []
    edge_uv: list[tuple[float, float]] = []
    edge_idx: list[int] = []

    for k, dist in enumerate(_stations(length, params.mesh_step)):
        pos, direction = curve.evaluate(dist)
        right = _right_vector(direction)

        sh_l = _snap(pos - right * outer, ground)
        rd_l = _snap(pos - right * half_road, ground) + raise_v
        cn_l = _snap(pos - right * half_center, ground) + raise_v
        cn_r = _snap(pos + right * half_center, ground) + raise_v
        rd_r = _snap(pos + right * half_road, ground) + raise_v
        sh_r = _snap(pos + right * outer, ground)

        v = float(dist) / params.width
        c0 = len(center_v)
        e0 = len(edge_v)
        center_v.extend([cn_l, cn_r])
        center_uv.extend((u, v) for u in _CENTER_U)
        edge_v.extend([sh_l, rd_l, cn_l, cn_r, rd_r, sh_r])
        edge_uv.extend((u, v) for u in _EDGE_U)

        if k == 0:
            continue

        pl, pr, cl, cr = c0 - 2, c0 - 1, c0, c0 + 1
        center_idx.extend([pl, pr, cl, cl, pr, cr])

        p = [e0 - 6 + i for i in range(6)]
        c = [e0 + i for i in range(6)]
        # Left shoulder, left lane, right lane, right shoulder.
        for a, b in ((0, 1), (1, 2), (3, 4), (4, 5)):
            edge_idx.extend([p[a], p[b], c[a], c[a], p[b], c[b]])

    meshes: list[RoadMesh] = []
    if len(center_v) >= 4:
        meshes.append(RoadMesh(
            name=f"road_{index}_center",
            surface=SurfaceClass.CENTER_STRIP,
            positions=np.array(center_v, dtype=np.float32),
            uvs=np.array(center_uv, dtype=np.float32),
            indices=np.array(center_idx, dtype=np.uint32),
        ))
    if len(edge_v) >= 12:
        meshes.append(RoadMesh(
            name=f"road_{index}_edges",
            surface=SurfaceClass.ROAD,
            positions=np.array(edge_v, dtype=np.float32),
            uvs=np.array(edge_uv, dtype=np.float32),
            indices=np.array(edge_idx, dtype=np.uint32),
        ))
    return meshes


def build_road_meshes(
    curves: Iterable[ValleyCurve],
    params: RoadParams,
    ground: GroundQuery | None = None,
) -> list[RoadMesh]:
    params.validate()
    meshes: list[RoadMesh] = []
    for k, curve in enumerate(curves):
        meshes.extend(build_curve_road(curve, params, ground, index=k))
    return meshes
