from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from rally.config import DEFAULT_NPC_SPEED, DEFAULT_PLAYER_SPEED, DEFAULT_WAYPOINT_SWITCH_DISTANCE
from rally.nav.pathfinder import Pathfinder
from rally.util.math import dist2_xz, exp_smooth, normalize
from rally.world.curves import ValleyCurve
from rally.world.surface import GroundQuery

log = logging.getLogger(__name__)

SPEED_SMOOTH_K = 3.0  # 1/sec


class Agent:
    """Kinematic ground vehicle: moves in the xz plane, y follows the ground.

    A bare Agent only carries position and movement helpers (it serves as a
    static target); driving subclasses must override `update`.
    """

    def __init__(self, name: str, position: Sequence[float], max_speed: float, ground: GroundQuery | None = None) -> None:
        self.name = name
        self.position = np.array(position, dtype=np.float64)
        self.max_speed = float(max_speed)
        self.speed = 0.0
        self.ground = ground
        self.distance_travelled = 0.0

    def __repr__(self) -> str:
        x, y, z = self.position
        return f"{type(self).__name__}({self.name!r}, pos=({x:.1f}, {y:.1f}, {z:.1f}))"

    def snap_to_ground(self) -> None:
        if self.ground is None:
            return
        y = self.ground.query(float(self.position[0]), float(self.position[2]))
        if y is not None:
            self.position[1] = y

    def drive_toward(self, target: Sequence[float], dt: float, target_speed: float | None = None) -> float:
        """Move toward `target` (planar) without overshooting. Returns the planar distance left."""
        to = np.array([float(target[0]) - self.position[0], 0.0, float(target[2]) - self.position[2]])
        dist = float(np.linalg.norm(to))
        goal = self.max_speed if target_speed is None else target_speed
        self.speed = exp_smooth(self.speed, goal, SPEED_SMOOTH_K, dt)
        step = min(self.speed * dt, dist)
        if step > 0:
            self.position += normalize(to) * step
            self.distance_travelled += step
        self.snap_to_ground()
        return dist - step

    def update(self, dt: float) -> None:
        """Advance by `dt` seconds. Subclasses must override this."""
        raise NotImplementedError(f"{type(self).__name__} does not drive itself")


class RouteAgent(Agent):
    """Drives back and forth along a curve (the player stand-in)."""

    def __init__(self, name: str, route: ValleyCurve, max_speed: float = DEFAULT_PLAYER_SPEED,
                 ground: GroundQuery | None = None, start: float = 0.0) -> None:
        pos, _ = route.evaluate(start)
        super().__init__(name, pos, max_speed, ground)
        self.route = route
        self.s = float(start)
        self.direction = 1.0
        self.snap_to_ground()

    def update(self, dt: float) -> None:
        length = self.route.length
        self.speed = exp_smooth(self.speed, self.max_speed, SPEED_SMOOTH_K, dt)
        s = self.s + self.direction * self.speed * dt
        if s >= length or s <= 0.0:
            self.direction = -self.direction
            s = min(max(s, 0.0), length)
        self.distance_travelled += abs(s - self.s)
        self.s = s
        pos, _ = self.route.evaluate(s)
        self.position[:] = pos
        self.snap_to_ground()


class NpcAgent(Agent):
    """Chases a target agent along pathfinder waypoints.

    A fresh path is requested whenever the current one is used up or the
    repath interval elapses. Stops within `stop_distance` of the target.
    """

    def __init__(
        self,
        name: str,
        position: Sequence[float],
        pathfinder: Pathfinder,
        target: Agent | None = None,
        *,
        max_speed: float = DEFAULT_NPC_SPEED,
        ground: GroundQuery | None = None,
        waypoint_switch_distance: float = DEFAULT_WAYPOINT_SWITCH_DISTANCE,
        stop_distance: float = 15.0,
        repath_interval: float = 2.0,
    ) -> None:
        super().__init__(name, position, max_speed, ground)
        self.pathfinder = pathfinder
        self.target = target
        self.waypoint_switch_distance = float(waypoint_switch_distance)
        self.stop_distance = float(stop_distance)
        self.repath_interval = float(repath_interval)
        self.path: list[tuple[float, float, float]] = []
        self.path_index = 0
        self.since_repath = 0.0
        self.paths_requested = 0
        self.paths_found = 0
        self.snap_to_ground()

    def request_path(self) -> bool:
        self.since_repath = 0.0
        self.paths_requested += 1
        self.path = self.pathfinder.find_path(tuple(self.position), tuple(self.target.position))
        # Index 0 is our own position.
        self.path_index = 1 if len(self.path) > 1 else 0
        if not self.path:
            log.debug("%s: no path to %s", self.name, self.target.name)
            return False
        self.paths_found += 1
        return True

    def update(self, dt: float) -> None:
        if self.target is None:
            self.speed = 0.0
            return
        if dist2_xz(self.position, self.target.position) <= self.stop_distance ** 2:
            self.speed = exp_smooth(self.speed, 0.0, SPEED_SMOOTH_K, dt)
            return

        self.since_repath += dt
        if not self.path or self.path_index >= len(self.path) or self.since_repath >= self.repath_interval:
            # No movement guidance this tick when the search fails.
            self.request_path()
            return

        waypoint = self.path[self.path_index]
        if dist2_xz(self.position, waypoint) < self.waypoint_switch_distance ** 2:
            self.path_index += 1
            return
        self.drive_toward(waypoint, dt)
