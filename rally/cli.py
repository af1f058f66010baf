from __future__ import annotations

import argparse
import logging
import random
import sys

from rally.app import run_sim
from rally.config import (
    APP_VERSION,
    DEFAULT_SEED,
    DEFAULT_NOISE,
    DEFAULT_NPCS,
    DEFAULT_DURATION,
    DEFAULT_DT,
    DEFAULT_NPC_SPEED,
    DEFAULT_PLAYER_SPEED,
    DEFAULT_HEIGHT_WORKERS,
    DEFAULT_LOG_LEVEL,
)
from rally.errors import ConfigError
from rally.logsetup import setup_logging
from rally.settings import load_settings, with_overrides

log = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="rally", description=f"Streamed procedural terrain with road pathing (headless) v{APP_VERSION}")
    p.add_argument("--config", default=None, help="JSON settings file (sections: grid, terrain, noise, roads, streamer, path, costs, curves)")
    p.add_argument("--seed", default=None, help=f"int seed or 'random' (default: settings file or {DEFAULT_SEED})")
    p.add_argument("--noise", choices=["value", "simplex"], default=None, help=f"height noise mode (default: {DEFAULT_NOISE})")
    p.add_argument("--chunks-x", type=int, default=None, help="chunk count along x")
    p.add_argument("--chunks-z", type=int, default=None, help="chunk count along z")
    p.add_argument("--chunk-res", type=int, default=None, help="quads per chunk side")
    p.add_argument("--chunk-size", type=float, default=None, help="chunk world size")
    p.add_argument("--load-radius", type=int, default=None, help="streaming radius in chunks (Chebyshev)")
    p.add_argument("--no-roads", dest="roads", action="store_false", default=None, help="disable road generation")
    p.add_argument("--npcs", type=int, default=DEFAULT_NPCS, help=f"number of chasing NPC agents (default: {DEFAULT_NPCS})")
    p.add_argument("--duration", type=float, default=DEFAULT_DURATION, help="simulated seconds to run")
    p.add_argument("--dt", type=float, default=DEFAULT_DT, help="simulation step (seconds)")
    p.add_argument("--player-speed", type=float, default=DEFAULT_PLAYER_SPEED, help="player speed (world units / sec)")
    p.add_argument("--npc-speed", type=float, default=DEFAULT_NPC_SPEED, help="NPC speed (world units / sec)")
    p.add_argument("--height-workers", type=int, default=DEFAULT_HEIGHT_WORKERS, help="threads for per-vertex height evaluation")
    p.add_argument("--log-level", default=DEFAULT_LOG_LEVEL, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-file", default=None, help="also write the log to this file")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        settings = load_settings(args.config)
        seed = None
        if args.seed is not None:
            if str(args.seed).lower() == "random":
                seed = random.randint(0, 2**31 - 1)
            else:
                try:
                    seed = int(args.seed)
                except ValueError as e:
                    raise ConfigError(f"seed must be an integer or 'random', got {args.seed!r}") from e
        settings = with_overrides(settings, "terrain", seed=seed, noise_mode=args.noise)
        settings = with_overrides(
            settings, "grid",
            chunks_x=args.chunks_x, chunks_z=args.chunks_z, resolution=args.chunk_res, chunk_size=args.chunk_size,
        )
        settings = with_overrides(settings, "streamer", load_radius=args.load_radius)
        settings = with_overrides(settings, "roads", enabled=args.roads)
        settings.validate()
    except ConfigError as e:
        log.error("invalid configuration: %s", e)
        return 2

    log.info(
        "rally v%s seed=%d noise=%s world=%dx%d chunks (res %d, size %.1f)",
        APP_VERSION, settings.terrain.seed, settings.terrain.noise_mode,
        settings.grid.chunks_x, settings.grid.chunks_z, settings.grid.resolution, settings.grid.chunk_size,
    )
    try:
        stats = run_sim(
            settings,
            npcs=args.npcs,
            duration=args.duration,
            dt=args.dt,
            player_speed=args.player_speed,
            npc_speed=args.npc_speed,
            height_workers=args.height_workers,
        )
    except ConfigError as e:
        log.error("invalid configuration: %s", e)
        return 2

    log.info(
        "checks=%d activations=%d deactivations=%d builds=%d max_active=%d paths=%d/%d",
        stats.checks, stats.activations, stats.deactivations, stats.builds, stats.max_active,
        stats.paths_found, stats.paths_requested,
    )
    return 0 if stats.generation is not None and stats.generation.ok else 1


if __name__ == "__main__":
    sys.exit(main())
