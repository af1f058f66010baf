from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence, Set

from rally.config import LOAD_RADIUS, TICK_INTERVAL, CHUNKS_PER_TICK, POOL_LIMIT
from rally.errors import ConfigError
from rally.tasks import Task, TaskScheduler
from rally.world.chunk import Chunk, ChunkCoord, ChunkState
from rally.world.generator import TerrainGenerator

log = logging.getLogger(__name__)

Locator = Callable[[Any], Sequence[float]]


def _default_locate(handle: Any) -> Sequence[float]:
    return handle.position


@dataclass(frozen=True)
class StreamerParams:
    load_radius: int = LOAD_RADIUS
    tick_interval: float = TICK_INTERVAL
    chunks_per_tick: int = CHUNKS_PER_TICK
    pool_limit: int | None = POOL_LIMIT

    def validate(self) -> None:
        if self.load_radius < 0:
            raise ConfigError(f"load radius must be >= 0, got {self.load_radius}")
        if self.tick_interval < 0:
            raise ConfigError(f"tick interval must be >= 0, got {self.tick_interval}")
        if self.chunks_per_tick < 1:
            raise ConfigError(f"chunks per tick must be >= 1, got {self.chunks_per_tick}")
        if self.pool_limit is not None and self.pool_limit < 0:
            raise ConfigError(f"pool limit must be >= 0, got {self.pool_limit}")


@dataclass
class TrackedEntity:
    handle: Any
    locate: Locator
    coord: ChunkCoord | None = None  # None until the first check sees it

    def position_xz(self) -> tuple[float, float]:
        p = self.locate(self.handle)
        return float(p[0]), float(p[2])


@dataclass
class TickReport:
    moved: bool = False
    required: int = 0
    queued_deactivation: list[ChunkCoord] = field(default_factory=list)
    queued_activation: list[ChunkCoord] = field(default_factory=list)
    builds_started: list[ChunkCoord] = field(default_factory=list)
    activated: list[ChunkCoord] = field(default_factory=list)
    deactivated: list[ChunkCoord] = field(default_factory=list)
    builds_activated: list[ChunkCoord] = field(default_factory=list)
    builds_pooled: list[ChunkCoord] = field(default_factory=list)
    builds_failed: list[ChunkCoord] = field(default_factory=list)

    @property
    def work(self) -> int:
        """Activations plus deactivations done by the budgeted queue drain."""
        return len(self.activated) + len(self.deactivated)


class WorldStreamer:
    """Keeps the chunks around tracked entities active.

    Chunks that fall out of range are pooled (mesh kept) rather than
    discarded; missing chunks are built as cooperative tasks on `scheduler`.
    Drive it with `tick(dt)` from the simulation loop.
    """

    def __init__(
        self,
        generator: TerrainGenerator,
        params: StreamerParams | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.generator = generator
        self.params = params or StreamerParams()
        self.scheduler = scheduler or TaskScheduler()

        self.active: Dict[ChunkCoord, Chunk] = {}
        self.pool: Dict[ChunkCoord, Chunk] = {}  # insertion order = eviction order
        self.loading: Set[ChunkCoord] = set()
        self.entities: Dict[int, TrackedEntity] = {}

        self._activate_q: deque[ChunkCoord] = deque()
        self._activate_set: Set[ChunkCoord] = set()
        self._deactivate_q: deque[ChunkCoord] = deque()
        self._deactivate_set: Set[ChunkCoord] = set()
        self._tasks: Dict[ChunkCoord, Task] = {}

        self._dirty = False
        self._since_check = 0.0
        self._checked_once = False
        self._completed = TickReport()

        self.enabled = True
        try:
            self.params.validate()
            if not generator.enabled:
                raise ConfigError(f"terrain generator is disabled ({generator.config_error})")
        except ConfigError as e:
            log.error("world streamer disabled: %s", e)
            self.enabled = False
        else:
            generator.regenerated.connect(self._on_regenerated)

    # --- entities ---

    def register(self, handle: Any, locate: Locator | None = None) -> TrackedEntity:
        """Follow `handle`; `locate(handle)` must return a world (x, y, z). Defaults to `handle.position`."""
        key = id(handle)
        ent = self.entities.get(key)
        if ent is None:
            ent = TrackedEntity(handle, locate or _default_locate)
            self.entities[key] = ent
        return ent

    def unregister(self, handle: Any) -> bool:
        if self.entities.pop(id(handle), None) is None:
            return False
        # Chunks around the removed entity only go away on a recomputation.
        self._dirty = True
        return True

    def chunk_at(self, x: float, z: float) -> ChunkCoord:
        return self.generator.grid.chunk_at(x, z)

    # --- membership ---

    def state_of(self, coord: ChunkCoord) -> ChunkState:
        if coord in self.active:
            return ChunkState.ACTIVE
        if coord in self.loading:
            return ChunkState.LOADING
        if coord in self.pool:
            return ChunkState.POOLED
        return ChunkState.UNREQUESTED

    @property
    def pending_activation(self) -> list[ChunkCoord]:
        return list(self._activate_q)

    @property
    def pending_deactivation(self) -> list[ChunkCoord]:
        return list(self._deactivate_q)

    @property
    def idle(self) -> bool:
        return not (self.loading or self._activate_q or self._deactivate_q)

    def required_coords(self, clip: bool = True) -> Set[ChunkCoord]:
        """Union of the Chebyshev windows around every entity's current chunk.

        With `clip` the set is intersected with the generator's world bounds.
        """
        r = self.params.load_radius
        grid = self.generator.grid
        out: Set[ChunkCoord] = set()
        for ent in self.entities.values():
            cx, cz = self.chunk_at(*ent.position_xz())
            for dz in range(-r, r + 1):
                for dx in range(-r, r + 1):
                    c = (cx + dx, cz + dz)
                    if not clip or grid.in_bounds(c):
                        out.add(c)
        return out

    def is_required(self, coord: ChunkCoord) -> bool:
        r = self.params.load_radius
        for ent in self.entities.values():
            cx, cz = self.chunk_at(*ent.position_xz())
            if abs(coord[0] - cx) <= r and abs(coord[1] - cz) <= r:
                return True
        return False

    # --- pool ---

    def adopt(self, chunks: Mapping[ChunkCoord, Chunk] | Iterable[Chunk]) -> int:
        """Seed the pool with already built chunks (e.g. from a batch generation)."""
        items = chunks.values() if isinstance(chunks, Mapping) else chunks
        n = 0
        for chunk in items:
            coord = chunk.coord
            if self.state_of(coord) is not ChunkState.UNREQUESTED:
                log.warning("duplicate chunk %s offered for adoption, keeping the one already tracked", coord)
                continue
            chunk.deactivate()
            self.pool[coord] = chunk
            n += 1
        self._trim_pool()
        # Pooled chunks only become active through a recomputation.
        self._dirty = True
        log.info("adopted %d pre-generated chunks into the pool", n)
        return n

    def _pool_insert(self, coord: ChunkCoord, chunk: Chunk) -> bool:
        if coord in self.pool:
            log.warning("chunk %s is already pooled, discarding the duplicate", coord)
            return False
        chunk.deactivate()
        self.pool[coord] = chunk
        self._trim_pool()
        return True

    def _trim_pool(self) -> None:
        limit = self.params.pool_limit
        if limit is None:
            return
        while len(self.pool) > limit:
            coord = next(iter(self.pool))
            del self.pool[coord]
            log.debug("evicted pooled chunk %s (pool limit %d)", coord, limit)

    # --- queues ---

    def _enqueue(self, q: deque, members: Set[ChunkCoord], coord: ChunkCoord) -> bool:
        if coord in members:
            return False
        q.append(coord)
        members.add(coord)
        return True

    def _dequeue(self, q: deque, members: Set[ChunkCoord]) -> ChunkCoord:
        coord = q.popleft()
        members.discard(coord)
        return coord

    # --- per check ---

    def update(self) -> TickReport:
        """Detect movement and queue work for the current required set.

        Returns a report of what was queued or launched. Does nothing when no
        entity changed chunk since the previous check.
        """
        report = self._completed
        self._completed = TickReport()

        moved = self._dirty
        self._dirty = False
        for ent in self.entities.values():
            coord = self.chunk_at(*ent.position_xz())
            if coord != ent.coord:
                ent.coord = coord
                moved = True
        report.moved = moved
        if not moved:
            return report

        required = self.required_coords()
        report.required = len(required)

        for coord in list(self.active):
            if coord not in required and coord not in self.loading:
                if self._enqueue(self._deactivate_q, self._deactivate_set, coord):
                    report.queued_deactivation.append(coord)

        # Nearest-first so the chunks under the entities come in before the rim.
        for coord in sorted(required, key=self._priority):
            if coord in self.active or coord in self.loading or coord in self._activate_set:
                continue
            if coord in self.pool:
                self._enqueue(self._activate_q, self._activate_set, coord)
                report.queued_activation.append(coord)
            else:
                self._start_build(coord)
                report.builds_started.append(coord)

        if report.queued_activation or report.queued_deactivation or report.builds_started:
            log.debug(
                "streaming check: %d required, %d to activate, %d to deactivate, %d builds",
                report.required, len(report.queued_activation), len(report.queued_deactivation),
                len(report.builds_started),
            )
        return report

    def _priority(self, coord: ChunkCoord) -> tuple[int, int, int]:
        best = min(
            (max(abs(coord[0] - e.coord[0]), abs(coord[1] - e.coord[1])) for e in self.entities.values() if e.coord is not None),
            default=0,
        )
        return best, coord[1], coord[0]

    def process_queues(self, report: TickReport | None = None) -> TickReport:
        """Drain up to `chunks_per_tick` activations and as many deactivations."""
        report = report or TickReport()
        budget = self.params.chunks_per_tick

        done = 0
        while self._activate_q and done < budget:
            coord = self._dequeue(self._activate_q, self._activate_set)
            if not self.is_required(coord) or coord in self.active or coord in self.loading:
                continue
            chunk = self.pool.pop(coord, None)
            if chunk is None:
                # Evicted while queued; the next check rebuilds it.
                log.warning("chunk %s was queued for activation but is neither pooled nor active", coord)
                self._dirty = True
                continue
            chunk.activate()
            self.active[coord] = chunk
            report.activated.append(coord)
            done += 1

        done = 0
        while self._deactivate_q and done < budget:
            coord = self._dequeue(self._deactivate_q, self._deactivate_set)
            chunk = self.active.get(coord)
            if chunk is None or self.is_required(coord) or coord in self._activate_set:
                continue
            del self.active[coord]
            self._pool_insert(coord, chunk)
            report.deactivated.append(coord)
            done += 1
        return report

    def tick(self, dt: float) -> TickReport | None:
        """Advance build tasks by one step; run a streaming check every `tick_interval`.

        Returns the check's report, or None when no check ran this tick.
        """
        if not self.enabled:
            return None
        self.scheduler.step()
        self._since_check += dt
        if self._checked_once and self._since_check < self.params.tick_interval:
            return None
        self._since_check = 0.0
        self._checked_once = True
        report = self.update()
        return self.process_queues(report)

    def settle(self, max_checks: int = 1000) -> int:
        """Run builds and checks until nothing is loading or queued. Returns the number of checks."""
        n = 0
        while n < max_checks:
            self.scheduler.run_until_idle()
            self.process_queues(self.update())
            n += 1
            if self.idle and not self._dirty:
                break
        return n

    def shutdown(self) -> None:
        self.generator.regenerated.disconnect(self._on_regenerated)
        self._cancel_builds()

    def _cancel_builds(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        self.loading.clear()

    def _on_regenerated(self) -> None:
        """Replace every tracked chunk with the generator's fresh one.

        Active coordinates that the new pass built stay active with the new
        chunk; the rest of the new pass goes to the pool. In-flight builds
        belong to the old geometry and are cancelled.
        """
        self._cancel_builds()
        self._activate_q.clear()
        self._activate_set.clear()
        self._deactivate_q.clear()
        self._deactivate_set.clear()
        self.pool.clear()

        fresh = self.generator.chunks
        for coord in list(self.active):
            chunk = fresh.get(coord)
            if chunk is None:
                del self.active[coord]
                continue
            chunk.activate()
            self.active[coord] = chunk
        for coord, chunk in fresh.items():
            if coord not in self.active:
                chunk.deactivate()
                self.pool[coord] = chunk
        self._trim_pool()
        self._dirty = True
        log.info("terrain regenerated: %d active and %d pooled chunks replaced", len(self.active), len(self.pool))

    # --- builds ---

    def _start_build(self, coord: ChunkCoord) -> None:
        self.loading.add(coord)
        gen = self.generator.build_chunk_task(coord)
        self._tasks[coord] = self.scheduler.spawn(
            gen, name=f"chunk {coord}", on_done=lambda task, c=coord: self._on_build_done(c, task),
        )

    def _on_build_done(self, coord: ChunkCoord, task: Task) -> None:
        self._tasks.pop(coord, None)
        self.loading.discard(coord)
        if task.cancelled:
            return
        if task.error is not None or task.result is None:
            # Not retried until the coordinate is re-requested by a later check.
            log.error("chunk %s failed to build: %s", coord, task.error)
            self._completed.builds_failed.append(coord)
            return

        chunk: Chunk = task.result
        if not self.is_required(coord):
            log.debug("chunk %s no longer required after build, pooling it", coord)
            if self._pool_insert(coord, chunk):
                self._completed.builds_pooled.append(coord)
            return
        if coord in self.pool or coord in self.active:
            log.warning("chunk %s finished building but is already tracked, discarding the duplicate", coord)
            if coord in self.pool:
                self._enqueue(self._activate_q, self._activate_set, coord)
            return
        chunk.activate()
        self.active[coord] = chunk
        self._completed.builds_activated.append(coord)
