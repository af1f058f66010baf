from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping

import numpy as np

from rally.config import (
    CHUNKS_X, CHUNKS_Z, CHUNK_RES, CHUNK_WORLD_SIZE, DEFAULT_HEIGHT_WORKERS, CARVE_YIELD_EVERY,
)
from rally.errors import ConfigError
from rally.tasks import TaskGen
from rally.util.events import Signal
from rally.world.chunk import Chunk, ChunkCoord, Deformer
from rally.world.curves import CurveCache, CurveSource, carve_factors
from rally.world.height import HeightField, TerrainConfig
from rally.world.mesh_builder import (
    assemble_chunk_mesh, build_chunk_mesh, chunk_grid, schedule_heights, validate_chunk_params,
)
from rally.world.roads import RoadMesh, RoadParams, build_road_meshes
from rally.world.surface import GroundQuery, TerrainSurface

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridParams:
    chunks_x: int = CHUNKS_X
    chunks_z: int = CHUNKS_Z
    resolution: int = CHUNK_RES
    chunk_size: float = CHUNK_WORLD_SIZE

    def validate(self) -> None:
        if self.chunks_x <= 0 or self.chunks_z <= 0:
            raise ConfigError(f"chunk counts must be positive, got {self.chunks_x}x{self.chunks_z}")
        validate_chunk_params(self.resolution, self.chunk_size)

    @property
    def world_size_x(self) -> float:
        return self.chunks_x * self.chunk_size

    @property
    def world_size_z(self) -> float:
        return self.chunks_z * self.chunk_size

    @property
    def vertices_per_chunk(self) -> int:
        return (self.resolution + 1) ** 2

    def in_bounds(self, coord: ChunkCoord) -> bool:
        return 0 <= coord[0] < self.chunks_x and 0 <= coord[1] < self.chunks_z

    def coords(self) -> Iterator[ChunkCoord]:
        for z in range(self.chunks_z):
            for x in range(self.chunks_x):
                yield (x, z)

    def chunk_at(self, x: float, z: float) -> ChunkCoord:
        return int(np.floor(x / self.chunk_size)), int(np.floor(z / self.chunk_size))


@dataclass
class GenerationResult:
    built: int = 0
    total: int = 0
    cancelled: bool = False
    error: str | None = None
    seconds: float = 0.0
    roads: int = 0

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.error is None


class TerrainGenerator:
    """Owns terrain configuration, the curve cache and the built chunk set.

    Builds single chunks (sync or as resumable tasks), whole worlds (blocking
    with cancel/rollback, or incremental), and road meshes along the cached
    curves. `regenerated` fires once after every successful full pass.
    """

    def __init__(
        self,
        grid: GridParams | None = None,
        terrain: TerrainConfig | None = None,
        roads: RoadParams | None = None,
        curve_source: CurveSource | None = None,
        *,
        height_workers: int = DEFAULT_HEIGHT_WORKERS,
        carve_yield_every: int = CARVE_YIELD_EVERY,
    ) -> None:
        self.grid = grid or GridParams()
        self.terrain = terrain or TerrainConfig()
        self.road_params = roads or RoadParams()
        self.curves = CurveCache(curve_source)
        self.carve_yield_every = max(1, int(carve_yield_every))
        self.height_workers = max(1, int(height_workers))

        self.chunks: Dict[ChunkCoord, Chunk] = {}
        self.road_meshes: list[RoadMesh] = []
        self.regenerated = Signal("chunks_regenerated")
        self.deformer: Deformer | None = None

        self.config_error: str | None = None
        self.field: HeightField | None = None
        try:
            self.grid.validate()
            self.field = HeightField(self.terrain, self.curves)
        except ConfigError as e:
            self.config_error = str(e)
            log.error("terrain generator disabled: %s", e)

        self._executor: ThreadPoolExecutor | None = None
        if self.height_workers > 1 and self.enabled:
            self._executor = ThreadPoolExecutor(max_workers=self.height_workers, thread_name_prefix="rally-height")

    @property
    def enabled(self) -> bool:
        return self.config_error is None

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _require_enabled(self) -> HeightField:
        if self.field is None:
            raise ConfigError(f"terrain generator disabled: {self.config_error}")
        return self.field

    # --- curves ---

    def cache_curves(self) -> int:
        n = self.curves.populate()
        if n == 0 and (self.terrain.use_path_valleys or self.road_params.enabled):
            log.warning("path carving or roads are enabled but no curves were cached")
        return n

    def _ensure_curves(self) -> None:
        if not self.curves.populated:
            self.cache_curves()

    def carve_factors(self, coord: ChunkCoord) -> np.ndarray:
        """Per-vertex path carve factors for a chunk, shaped (R+1, R+1)."""
        field_ = self._require_enabled()
        self._ensure_curves()
        g = self.grid
        grid_x, grid_z = chunk_grid(coord[0], coord[1], g.resolution, g.chunk_size)
        return field_.carve_factors(grid_x, grid_z)

    def iter_carve_factors(self, coord: ChunkCoord) -> TaskGen:
        """Carve factors computed in blocks of `carve_yield_every` vertices, yielding between blocks."""
        field_ = self._require_enabled()
        self._ensure_curves()
        g = self.grid
        grid_x, grid_z = chunk_grid(coord[0], coord[1], g.resolution, g.chunk_size)
        out = np.zeros(grid_x.size, dtype=np.float64)
        if not field_.carving_enabled:
            return out.reshape(grid_x.shape)

        xf = grid_x.reshape(-1)
        zf = grid_z.reshape(-1)
        cfg = self.terrain
        n = self.carve_yield_every
        for s in range(0, xf.size, n):
            d = self.curves.nearest_distance(xf[s:s + n], zf[s:s + n])
            out[s:s + n] = carve_factors(d, cfg.path_valley_width, cfg.path_valley_falloff)
            yield
        return out.reshape(grid_x.shape)

    # --- chunks ---

    def _new_chunk(self, coord: ChunkCoord, mesh) -> Chunk:
        chunk = Chunk(coord, mesh)
        chunk.deformer = self.deformer
        return chunk

    def build_chunk(self, coord: ChunkCoord) -> Chunk:
        field_ = self._require_enabled()
        self._ensure_curves()
        g = self.grid
        carve = self.carve_factors(coord)
        mesh = build_chunk_mesh(
            coord[0], coord[1], g.resolution, g.chunk_size, field_, carve,
            executor=self._executor, bands=self.height_workers,
        )
        return self._new_chunk(coord, mesh)

    def build_chunk_task(self, coord: ChunkCoord) -> TaskGen:
        """Resumable build of one chunk; the generator's return value is the Chunk.

        Yields inside the carve pass and until the forked height evaluation
        has joined.
        """
        field_ = self._require_enabled()
        g = self.grid
        carve = yield from self.iter_carve_factors(coord)
        grid_x, grid_z = chunk_grid(coord[0], coord[1], g.resolution, g.chunk_size)
        job = schedule_heights(field_, grid_x, grid_z, carve, executor=self._executor, bands=self.height_workers)
        while not job.done():
            yield
        mesh = assemble_chunk_mesh(coord[0], coord[1], g.resolution, g.chunk_size, grid_x, grid_z, job.result())
        return self._new_chunk(coord, mesh)

    def clear_chunks(self) -> None:
        n = len(self.chunks)
        self.chunks.clear()
        if n:
            log.debug("cleared %d terrain chunks", n)

    def _begin_pass(self) -> None:
        self._require_enabled()
        self.clear_chunks()
        self.clear_roads()
        self.curves.invalidate()
        self.cache_curves()

    def _finish_pass(self, result: GenerationResult, started: float) -> GenerationResult:
        self.road_meshes = self.generate_roads()
        result.roads = len(self.road_meshes)
        result.seconds = time.perf_counter() - started
        log.info("terrain generation finished: %d chunks, %d road meshes in %.2f s", result.built, result.roads, result.seconds)
        self.regenerated.emit()
        return result

    def generate_all(
        self,
        cancel: Callable[[], bool] | None = None,
        progress: Callable[[int, int], None] | None = None,
    ) -> GenerationResult:
        """Blocking build of every chunk in the grid.

        `cancel` is polled before each chunk; cancelling clears the chunks
        built so far. Configuration errors are logged and rolled back.
        """
        started = time.perf_counter()
        result = GenerationResult(total=self.grid.chunks_x * self.grid.chunks_z)
        try:
            self._begin_pass()
            for coord in self.grid.coords():
                if cancel is not None and cancel():
                    log.warning("terrain generation cancelled after %d/%d chunks", result.built, result.total)
                    self.clear_chunks()
                    result.cancelled = True
                    result.seconds = time.perf_counter() - started
                    return result
                self.chunks[coord] = self.build_chunk(coord)
                result.built += 1
                if progress is not None:
                    progress(result.built, result.total)
        except ConfigError as e:
            log.error("terrain generation disabled: %s", e)
            self.clear_chunks()
            result.error = str(e)
            result.seconds = time.perf_counter() - started
            return result
        except Exception:
            log.exception("terrain generation failed after %d chunks, rolling back", result.built)
            self.clear_chunks()
            raise
        return self._finish_pass(result, started)

    def generate_incremental(self, progress: Callable[[int, int], None] | None = None) -> TaskGen:
        """Resumable full pass that builds one chunk per step.

        Closing the task (Task.cancel) rolls back the chunks built so far.
        """
        started = time.perf_counter()
        result = GenerationResult(total=self.grid.chunks_x * self.grid.chunks_z)
        try:
            self._begin_pass()
            yield
            for coord in self.grid.coords():
                self.chunks[coord] = self.build_chunk(coord)
                result.built += 1
                if progress is not None:
                    progress(result.built, result.total)
                yield
        except GeneratorExit:
            log.warning("incremental terrain generation cancelled after %d/%d chunks", result.built, result.total)
            self.clear_chunks()
            raise
        except ConfigError as e:
            log.error("terrain generation disabled: %s", e)
            self.clear_chunks()
            result.error = str(e)
            return result
        except Exception:
            log.exception("incremental terrain generation failed after %d chunks, rolling back", result.built)
            self.clear_chunks()
            raise
        return self._finish_pass(result, started)

    # --- roads ---

    def clear_roads(self) -> None:
        self.road_meshes = []

    def generate_roads(self, ground: GroundQuery | None = None) -> list[RoadMesh]:
        """Road meshes along the cached curves, snapped to `ground`.

        Defaults to the built terrain as ground. Returns [] when roads are
        disabled, misconfigured or there are no curves.
        """
        params = self.road_params
        if not params.enabled:
            return []
        try:
            params.validate()
        except ConfigError as e:
            log.error("cannot generate roads: %s", e)
            return []
        self._ensure_curves()
        if len(self.curves) == 0:
            log.warning("cannot generate roads: road generation enabled, but no curves are cached")
            return []

        started = time.perf_counter()
        if ground is None:
            ground = TerrainSurface(self.chunks, self.grid.chunk_size)
        meshes = build_road_meshes(self.curves, params, ground)
        log.debug("built %d road meshes in %.3f s", len(meshes), time.perf_counter() - started)
        return meshes

    def surface(self, chunks: Mapping[ChunkCoord, Chunk] | None = None) -> TerrainSurface:
        """Ground query/classifier over `chunks` (default: every built chunk) and the roads."""
        return TerrainSurface(self.chunks if chunks is None else chunks, self.grid.chunk_size, self.road_meshes)
