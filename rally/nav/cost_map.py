from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

import numpy as np

from rally.config import (
    CELL_SIZE, MIN_PATH_POINT_DISTANCE,
    CENTER_STRIP_COST, ROAD_COST, TERRAIN_COST, HEIGHT_COST_MULTIPLIER, MIN_CELL_COST,
)
from rally.errors import ConfigError
from rally.world.surface import SurfaceClass, TerrainSurface

log = logging.getLogger(__name__)

# Distinct from any finite cost; inf + x stays inf so sums never wrap into range.
IMPASSABLE = math.inf

Cell = tuple[int, int]


@dataclass(frozen=True)
class SurfaceCosts:
    center_strip: float = CENTER_STRIP_COST
    road: float = ROAD_COST
    terrain: float = TERRAIN_COST
    height_multiplier: float = HEIGHT_COST_MULTIPLIER
    min_cost: float = MIN_CELL_COST

    def validate(self) -> None:
        for name in ("center_strip", "road", "terrain", "height_multiplier", "min_cost"):
            v = getattr(self, name)
            if not math.isfinite(v) or v < 0:
                raise ConfigError(f"surface cost {name} must be a finite non-negative number, got {v}")


@dataclass(frozen=True)
class PathParams:
    cell_size: float = CELL_SIZE
    min_point_distance: float = MIN_PATH_POINT_DISTANCE

    def validate(self) -> None:
        if not self.cell_size > 0:
            raise ConfigError(f"path cell size must be positive, got {self.cell_size}")
        if self.min_point_distance < 0:
            raise ConfigError(f"minimum path point distance must be >= 0, got {self.min_point_distance}")


class CostMap:
    """Immutable grid of traversal costs indexed by cell (ix, iz).

    Cell (ix, iz) covers world [ix*cell, (ix+1)*cell) x [iz*cell, (iz+1)*cell).
    `heights` holds the sampled ground height at each cell centre (0 where
    nothing was hit).
    """

    def __init__(self, costs: np.ndarray, cell_size: float, heights: np.ndarray | None = None) -> None:
        c = np.array(costs, dtype=np.float64)
        if c.ndim != 2 or c.size == 0:
            raise ConfigError(f"cost map needs a non-empty 2D grid, got shape {c.shape}")
        if cell_size <= 0:
            raise ConfigError(f"cost map cell size must be positive, got {cell_size}")
        if np.any(c < 0):
            raise ConfigError("cost map cells must be non-negative")
        h = np.zeros_like(c) if heights is None else np.array(heights, dtype=np.float64)
        if h.shape != c.shape:
            raise ConfigError(f"height grid shape {h.shape} does not match cost grid {c.shape}")
        c.setflags(write=False)
        h.setflags(write=False)
        self.costs = c
        self.heights = h
        self.cell_size = float(cell_size)

    @classmethod
    def uniform(cls, nx: int, nz: int, cost: float = 1.0, cell_size: float = 1.0) -> "CostMap":
        return cls(np.full((nx, nz), float(cost)), cell_size)

    @property
    def shape(self) -> tuple[int, int]:
        return self.costs.shape

    def in_bounds(self, cell: Cell) -> bool:
        nx, nz = self.costs.shape
        return 0 <= cell[0] < nx and 0 <= cell[1] < nz

    def cost(self, cell: Cell) -> float:
        return float(self.costs[cell[0], cell[1]])

    def passable(self, cell: Cell) -> bool:
        return self.in_bounds(cell) and self.costs[cell[0], cell[1]] != IMPASSABLE

    @property
    def impassable_count(self) -> int:
        return int(np.count_nonzero(np.isinf(self.costs)))

    def world_to_cell(self, x: float, z: float) -> Cell:
        nx, nz = self.costs.shape
        ix = int(math.floor(x / self.cell_size))
        iz = int(math.floor(z / self.cell_size))
        return min(max(ix, 0), nx - 1), min(max(iz, 0), nz - 1)

    def cell_to_world(self, cell: Cell) -> tuple[float, float, float]:
        """Cell centre at ground height."""
        half = self.cell_size * 0.5
        y = float(self.heights[cell[0], cell[1]]) if self.in_bounds(cell) else 0.0
        return cell[0] * self.cell_size + half, y, cell[1] * self.cell_size + half


class CostMapBuilder:
    """Samples a built surface into a `CostMap` and hands it to a pathfinder.

    When bound to a generator the map is rebuilt every time the generator
    reports a full regeneration.
    """

    def __init__(self, costs: SurfaceCosts | None = None, params: PathParams | None = None) -> None:
        self.costs = costs or SurfaceCosts()
        self.params = params or PathParams()
        self._generator = None
        self._pathfinder = None

    def build(self, surface: TerrainSurface, extent_x: float, extent_z: float) -> CostMap:
        self.costs.validate()
        self.params.validate()
        if extent_x <= 0 or extent_z <= 0:
            raise ConfigError(f"cost map extent must be positive, got {extent_x}x{extent_z}")

        started = time.perf_counter()
        cell = self.params.cell_size
        nx = max(1, int(math.ceil(extent_x / cell)))
        nz = max(1, int(math.ceil(extent_z / cell)))
        xs = (np.arange(nx, dtype=np.float64) + 0.5) * cell
        zs = (np.arange(nz, dtype=np.float64) + 0.5) * cell
        sample = surface.sample(xs, zs)

        c = self.costs
        cls = sample.classes
        grid = np.full((nx, nz), IMPASSABLE, dtype=np.float64)
        terrain = cls == SurfaceClass.TERRAIN
        grid[terrain] = c.terrain + sample.heights[terrain] * c.height_multiplier
        grid[cls == SurfaceClass.ROAD] = c.road
        grid[cls == SurfaceClass.CENTER_STRIP] = c.center_strip
        hit = sample.hit
        grid[hit] = np.maximum(grid[hit], c.min_cost)

        cost_map = CostMap(grid, cell, sample.heights)
        log.info(
            "cost map %dx%d built in %.2f s, impassable cells: %d of %d",
            nx, nz, time.perf_counter() - started, cost_map.impassable_count, nx * nz,
        )
        return cost_map

    def build_for(self, generator) -> CostMap:
        grid = generator.grid
        if not generator.chunks:
            log.warning("building a cost map with no terrain chunks, every cell will be impassable")
        return self.build(generator.surface(), grid.world_size_x, grid.world_size_z)

    def bind(self, generator, pathfinder) -> None:
        """Feed `pathfinder` a fresh map now (if terrain exists) and after every regeneration."""
        self.unbind()
        self._generator = generator
        self._pathfinder = pathfinder
        generator.regenerated.connect(self.rebuild)
        if generator.chunks:
            self.rebuild()

    def unbind(self) -> None:
        if self._generator is not None:
            self._generator.regenerated.disconnect(self.rebuild)
        self._generator = None
        self._pathfinder = None

    def rebuild(self) -> CostMap | None:
        if self._generator is None or self._pathfinder is None:
            log.warning("cost map rebuild requested while unbound")
            return None
        try:
            cost_map = self.build_for(self._generator)
        except ConfigError as e:
            log.error("cost map disabled: %s", e)
            return None
        self._pathfinder.set_cost_map(cost_map)
        return cost_map
