from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field

from rally.config import (
    DEFAULT_DT, DEFAULT_DURATION, DEFAULT_NPCS, DEFAULT_NPC_SPEED, DEFAULT_PLAYER_SPEED,
    DEFAULT_WAYPOINT_SWITCH_DISTANCE, DEFAULT_HEIGHT_WORKERS,
)
from rally.errors import ConfigError
from rally.nav.cost_map import CostMapBuilder
from rally.nav.pathfinder import Pathfinder
from rally.settings import Settings
from rally.sim.agent import NpcAgent, RouteAgent
from rally.world.curves import ValleyCurve
from rally.world.generator import GenerationResult, GridParams, TerrainGenerator
from rally.world.streamer import WorldStreamer

log = logging.getLogger(__name__)


def demo_curves(grid: GridParams) -> list[list[tuple[float, float, float]]]:
    """One S-shaped road across the world, used when no curves are configured."""
    w, d = grid.world_size_x, grid.world_size_z
    pts = []
    n = 9
    for i in range(n):
        t = i / (n - 1)
        x = w * (0.1 + 0.8 * t)
        z = d * (0.5 + 0.3 * math.sin(t * 2.0 * math.pi))
        pts.append((x, 0.0, z))
    return [pts]


@dataclass
class SimStats:
    generation: GenerationResult | None = None
    ticks: int = 0
    checks: int = 0
    activations: int = 0
    deactivations: int = 0
    builds: int = 0
    max_active: int = 0
    active: int = 0
    pooled: int = 0
    paths_requested: int = 0
    paths_found: int = 0
    player_distance: float = 0.0
    npc_distances: list[float] = field(default_factory=list)
    wall_seconds: float = 0.0


def run_sim(
    settings: Settings | None = None,
    *,
    npcs: int = DEFAULT_NPCS,
    duration: float = DEFAULT_DURATION,
    dt: float = DEFAULT_DT,
    player_speed: float = DEFAULT_PLAYER_SPEED,
    npc_speed: float = DEFAULT_NPC_SPEED,
    waypoint_switch_distance: float = DEFAULT_WAYPOINT_SWITCH_DISTANCE,
    height_workers: int = DEFAULT_HEIGHT_WORKERS,
) -> SimStats:
    """Headless driver loop.

    Batch-generates the world, keeps the pathfinder's cost map in sync with
    regeneration, hands the chunks to the streamer's pool and ticks a player
    plus `npcs` chasing agents for `duration` simulated seconds.
    """
    settings = settings or Settings()
    if dt <= 0:
        raise ConfigError(f"dt must be positive, got {dt}")
    stats = SimStats()
    started = time.perf_counter()

    curves = settings.curves if settings.curves is not None else demo_curves(settings.grid)
    generator = TerrainGenerator(
        settings.grid,
        settings.terrain,
        settings.roads,
        curve_source=lambda: curves,
        height_workers=height_workers,
    )
    pathfinder = Pathfinder(min_point_distance=settings.path.min_point_distance)
    costs = CostMapBuilder(settings.costs, settings.path)
    streamer: WorldStreamer | None = None
    try:
        if not generator.enabled:
            log.error("nothing to simulate: %s", generator.config_error)
            return stats

        costs.bind(generator, pathfinder)
        step = max(1, (settings.grid.chunks_x * settings.grid.chunks_z) // 10)

        def progress(done: int, total: int) -> None:
            if done % step == 0 or done == total:
                log.info("generating terrain: %d/%d chunks", done, total)

        stats.generation = generator.generate_all(progress=progress)
        if not stats.generation.ok:
            log.error("terrain generation did not complete, stopping")
            return stats

        streamer = WorldStreamer(generator, settings.streamer)
        if not streamer.enabled:
            return stats
        streamer.adopt(generator.chunks)
        ground = generator.surface(streamer.active)

        route_curve = next(iter(generator.curves), None)
        if route_curve is None:
            mid = (settings.grid.world_size_x * 0.5, 0.0, settings.grid.world_size_z * 0.5)
            route_curve = ValleyCurve.from_points([mid, (mid[0] + 1.0, 0.0, mid[2])])
        player = RouteAgent("player", route_curve, player_speed, ground)
        streamer.register(player)

        agents: list[NpcAgent] = []
        for i in range(max(0, int(npcs))):
            s = route_curve.length * (i + 1) / (npcs + 1)
            pos, _ = route_curve.evaluate(s)
            npc = NpcAgent(
                f"npc{i}", pos, pathfinder, player,
                max_speed=npc_speed, ground=ground, waypoint_switch_distance=waypoint_switch_distance,
            )
            agents.append(npc)
            streamer.register(npc)

        t = 0.0
        next_log = 1.0
        while t < duration:
            report = streamer.tick(dt)
            if report is not None:
                stats.checks += 1
                stats.activations += len(report.activated) + len(report.builds_activated)
                stats.deactivations += len(report.deactivated)
                stats.builds += len(report.builds_activated) + len(report.builds_pooled)
            player.update(dt)
            for npc in agents:
                npc.update(dt)
            stats.ticks += 1
            stats.max_active = max(stats.max_active, len(streamer.active))
            t += dt
            if t >= next_log:
                next_log += 1.0
                log.info(
                    "t=%.1fs active=%d pooled=%d loading=%d player=(%.1f, %.1f, %.1f)",
                    t, len(streamer.active), len(streamer.pool), len(streamer.loading), *player.position,
                )

        stats.active = len(streamer.active)
        stats.pooled = len(streamer.pool)
        stats.player_distance = player.distance_travelled
        stats.npc_distances = [a.distance_travelled for a in agents]
        stats.paths_requested = sum(a.paths_requested for a in agents)
        stats.paths_found = sum(a.paths_found for a in agents)
        return stats
    finally:
        costs.unbind()
        if streamer is not None:
            streamer.shutdown()
        generator.shutdown()
        stats.wall_seconds = time.perf_counter() - started
        log.info("simulation finished in %.2f s (%d ticks)", stats.wall_seconds, stats.ticks)
