import numpy as np
import pytest

from rally.app import demo_curves, run_sim
from rally.errors import ConfigError
from rally.nav.cost_map import CostMap
from rally.nav.pathfinder import Pathfinder
from rally.settings import settings_from_dict
from rally.sim.agent import Agent, NpcAgent, RouteAgent
from rally.world.curves import ValleyCurve
from rally.world.generator import GridParams

from helpers import straight_curve_points


class Flat:
    def __init__(self, y):
        self.y = y

    def query(self, x, z):
        return self.y


def _tiny(**extra):
    data = {
        "grid": {"chunks_x": 4, "chunks_z": 4, "resolution": 4, "chunk_size": 10.0},
        "streamer": {"load_radius": 1, "tick_interval": 0.1},
    }
    data.update(extra)
    return settings_from_dict(data)


def test_run_sim_small_world():
    stats = run_sim(_tiny(), npcs=2, duration=2.0, dt=0.05, height_workers=1)
    assert stats.generation.ok and stats.generation.built == 16
    assert stats.generation.roads == 2
    assert 40 <= stats.ticks <= 41
    assert stats.checks > 0
    assert 0 < stats.max_active <= 16
    assert stats.activations > 0 and stats.builds == 0
    assert stats.active + stats.pooled == 16
    assert stats.player_distance > 0
    assert len(stats.npc_distances) == 2
    assert stats.paths_requested >= stats.paths_found
    assert stats.wall_seconds > 0


def test_run_sim_with_configured_curve_and_no_roads():
    settings = _tiny(curves=[[[2, 0, 20], [38, 0, 20]]], roads={"enabled": False})
    stats = run_sim(settings, npcs=0, duration=0.5, dt=0.1, height_workers=1)
    assert stats.generation.ok and stats.generation.roads == 0
    assert stats.npc_distances == []


def test_run_sim_disabled_generator_returns_early():
    settings = _tiny(grid={"chunks_x": 0})
    stats = run_sim(settings, duration=1.0, height_workers=1)
    assert stats.generation is None and stats.ticks == 0


def test_run_sim_rejects_bad_dt():
    with pytest.raises(ConfigError):
        run_sim(_tiny(), dt=0.0)


def test_demo_curve_spans_world():
    (pts,) = demo_curves(GridParams(10, 4, 4, 10.0))
    xs = [p[0] for p in pts]
    zs = [p[2] for p in pts]
    assert xs[0] == pytest.approx(10.0) and xs[-1] == pytest.approx(90.0)
    assert min(zs) >= 0.0 and max(zs) <= 40.0


def test_route_agent_ping_pongs():
    route = ValleyCurve.from_points(straight_curve_points(0.0, 10.0, 0.0))
    car = RouteAgent("player", route, max_speed=100.0, ground=Flat(2.0))
    assert car.position[1] == 2.0
    for _ in range(200):
        car.update(0.05)
        assert 0.0 <= car.s <= route.length
    assert car.distance_travelled > route.length


def test_drive_toward_does_not_overshoot():
    car = Agent("a", (0.0, 0.0, 0.0), max_speed=1000.0)
    car.speed = 1000.0
    left = car.drive_toward((3.0, 9.0, 4.0), 1.0)
    assert left == pytest.approx(0.0)
    assert car.position == pytest.approx([3.0, 0.0, 4.0])
    assert car.distance_travelled == pytest.approx(5.0)


def test_plain_agent_does_not_drive_itself():
    target = Agent("target", (1.0, 0.0, 1.0), max_speed=0.0)
    with pytest.raises(NotImplementedError, match="Agent does not drive itself"):
        target.update(0.1)
    assert target.position == pytest.approx([1.0, 0.0, 1.0])


def test_npc_follows_path_toward_target():
    finder = Pathfinder(CostMap.uniform(60, 20), min_point_distance=2.0)
    target = Agent("target", (55.5, 0.0, 10.5), max_speed=0.0)
    npc = NpcAgent("npc", (2.5, 0.0, 10.5), finder, target, max_speed=10.0, ground=Flat(1.5),
                   waypoint_switch_distance=1.0, stop_distance=5.0)
    npc.update(0.1)  # first update plans
    assert npc.paths_requested == 1 and npc.paths_found == 1
    assert npc.path_index == 1
    start = npc.position.copy()
    for _ in range(100):
        npc.update(0.1)
    assert npc.position[0] > start[0] + 10.0
    assert npc.position[1] == 1.5


def test_npc_stops_near_target_and_without_one():
    finder = Pathfinder(CostMap.uniform(20, 20))
    target = Agent("target", (5.0, 0.0, 5.0), max_speed=0.0)
    npc = NpcAgent("npc", (6.0, 0.0, 5.0), finder, target, stop_distance=3.0)
    npc.update(0.1)
    assert npc.paths_requested == 0

    idle = NpcAgent("idle", (1.0, 0.0, 1.0), finder, None)
    idle.speed = 4.0
    idle.update(0.1)
    assert idle.speed == 0.0


def test_npc_without_path_waits():
    costs = np.ones((10, 10))
    costs[5, :] = np.inf
    finder = Pathfinder(CostMap(costs, 1.0))
    target = Agent("target", (8.5, 0.0, 5.5), max_speed=0.0)
    npc = NpcAgent("npc", (1.5, 0.0, 5.5), finder, target, stop_distance=1.0)
    npc.update(0.1)
    assert npc.paths_requested == 1 and npc.paths_found == 0
    assert npc.position == pytest.approx([1.5, 0.0, 5.5])
