import logging

import numpy as np
import pytest

from rally.errors import ConfigError
from rally.tasks import Task
from rally.world.generator import GridParams
from rally.world.height import TerrainConfig
from rally.world.roads import RoadParams
from rally.world.surface import SurfaceClass

from helpers import straight_curve_points


def _heights(chunks):
    return {coord: chunk.mesh.height_grid.copy() for coord, chunk in chunks.items()}


def test_generate_all_builds_every_chunk_and_is_reproducible(make_generator):
    gen = make_generator(4, 4, 8, 10.0, workers=2)
    result = gen.generate_all()
    assert result.ok and result.built == 16 and result.total == 16
    assert len(gen.chunks) == 16
    assert all(c.mesh.vertex_count == 81 for c in gen.chunks.values())
    first = _heights(gen.chunks)

    gen.clear_chunks()
    assert gen.chunks == {}
    assert gen.generate_all().ok
    second = _heights(gen.chunks)
    assert first.keys() == second.keys()
    for coord in first:
        assert np.array_equal(first[coord], second[coord])


def test_threaded_and_inline_builds_agree(make_generator):
    a = make_generator(2, 2, 8, 10.0, workers=1)
    b = make_generator(2, 2, 8, 10.0, workers=3)
    assert np.array_equal(a.build_chunk((1, 0)).mesh.positions, b.build_chunk((1, 0)).mesh.positions)


def test_regenerated_signal_fires_once_per_pass(make_generator):
    gen = make_generator(2, 2)
    seen = []
    gen.regenerated.connect(lambda: seen.append(len(gen.chunks)))
    gen.generate_all()
    assert seen == [4]
    gen.generate_all()
    assert seen == [4, 4]


def test_cancel_rolls_back_partial_run(make_generator, caplog):
    gen = make_generator(4, 4)
    seen = []
    gen.regenerated.connect(lambda: seen.append(1))
    polls = []

    def cancel():
        polls.append(1)
        return len(polls) > 5

    with caplog.at_level(logging.WARNING, logger="rally.world.generator"):
        result = gen.generate_all(cancel=cancel)
    assert result.cancelled and not result.ok
    assert result.built == 5
    assert gen.chunks == {}
    assert seen == []
    assert "cancelled after 5/16" in caplog.text


def test_progress_is_reported_per_chunk(make_generator):
    gen = make_generator(3, 2)
    calls = []
    gen.generate_all(progress=lambda done, total: calls.append((done, total)))
    assert calls == [(i, 6) for i in range(1, 7)]


def test_incremental_generation_builds_one_chunk_per_step(make_generator):
    gen = make_generator(3, 3)
    task = Task(gen.generate_incremental(), name="terrain")
    assert task.step()  # setup
    counts = []
    while task.step():
        counts.append(len(gen.chunks))
    assert counts == list(range(1, 10))
    assert task.error is None
    assert task.result.ok and task.result.built == 9

    blocking = make_generator(3, 3)
    blocking.generate_all()
    for coord, chunk in blocking.chunks.items():
        assert np.array_equal(chunk.mesh.positions, gen.chunks[coord].mesh.positions)


def test_incremental_cancel_rolls_back(make_generator):
    gen = make_generator(3, 3)
    seen = []
    gen.regenerated.connect(lambda: seen.append(1))
    task = Task(gen.generate_incremental())
    for _ in range(4):
        task.step()
    assert len(gen.chunks) == 3
    task.cancel()
    assert task.done and task.cancelled
    assert gen.chunks == {}
    assert seen == []


def test_incremental_failure_rolls_back(make_generator, monkeypatch):
    gen = make_generator(3, 3)
    seen = []
    gen.regenerated.connect(lambda: seen.append(1))
    build = gen.build_chunk
    calls = []

    def flaky(coord):
        calls.append(coord)
        if len(calls) == 3:
            raise RuntimeError("disk full")
        return build(coord)

    monkeypatch.setattr(gen, "build_chunk", flaky)
    task = Task(gen.generate_incremental())
    while task.step():
        pass
    assert isinstance(task.error, RuntimeError)
    assert len(calls) == 3
    assert gen.chunks == {}
    assert seen == []


def test_build_chunk_task_yields_and_matches_sync_build(make_generator):
    curves = [straight_curve_points(0.0, 40.0, 12.0)]
    terrain = TerrainConfig(seed=5, use_path_valleys=True)
    gen = make_generator(4, 4, 4, 10.0, terrain=terrain, curves=curves, carve_yield_every=10)
    gen.cache_curves()

    task = Task(gen.build_chunk_task((1, 1)))
    chunk = task.run()
    # 25 vertices in blocks of 10 -> at least 3 yields in the carve pass.
    assert task.steps >= 4
    sync = gen.build_chunk((1, 1))
    assert chunk.coord == (1, 1)
    assert np.array_equal(chunk.mesh.positions, sync.mesh.positions)

    carve = gen.carve_factors((1, 1))
    assert carve.shape == (5, 5)
    assert carve.max() == 1.0


def test_carving_lowers_chunks_near_curve(make_generator):
    curves = [straight_curve_points(0.0, 40.0, 15.0)]
    carved = make_generator(4, 4, 8, 10.0, terrain=TerrainConfig(seed=5, use_valleys=False, use_path_valleys=True), curves=curves)
    plain = make_generator(4, 4, 8, 10.0, terrain=TerrainConfig(seed=5, use_valleys=False, use_path_valleys=False), curves=curves)
    a = carved.build_chunk((1, 1)).mesh.height_grid
    b = plain.build_chunk((1, 1)).mesh.height_grid
    assert np.all(a <= b)
    assert np.any(a < b)


def test_regeneration_rereads_the_curve_source(make_generator):
    curves = [straight_curve_points(0.0, 20.0, 5.0)]
    gen = make_generator(2, 2, curves=curves)
    gen.generate_all()
    assert len(gen.curves) == 1
    curves.append(straight_curve_points(0.0, 20.0, 15.0))
    gen.generate_all()
    assert len(gen.curves) == 2
    assert gen.curves.version == 2


def test_empty_curve_cache_warns_when_carving(make_generator, caplog):
    gen = make_generator(2, 2, terrain=TerrainConfig(use_path_valleys=True))
    with caplog.at_level(logging.WARNING, logger="rally.world.generator"):
        assert gen.cache_curves() == 0
    assert "no curves were cached" in caplog.text


def test_invalid_grid_disables_generator(make_generator, caplog):
    with caplog.at_level(logging.ERROR, logger="rally.world.generator"):
        gen = make_generator(0, 4)
    assert not gen.enabled
    assert "terrain generator disabled" in caplog.text
    result = gen.generate_all()
    assert result.error is not None and not result.ok
    with pytest.raises(ConfigError):
        gen.build_chunk((0, 0))


def test_invalid_terrain_disables_generator(make_generator):
    gen = make_generator(2, 2, terrain=TerrainConfig(noise_mode="nope"))
    assert not gen.enabled
    assert gen.generate_all().error


def test_grid_params_helpers():
    g = GridParams(4, 3, 8, 10.0)
    assert g.world_size_x == 40.0 and g.world_size_z == 30.0
    assert g.vertices_per_chunk == 81
    assert list(g.coords())[:5] == [(0, 0), (1, 0), (2, 0), (3, 0), (0, 1)]
    assert g.in_bounds((3, 2)) and not g.in_bounds((4, 0)) and not g.in_bounds((0, -1))
    assert g.chunk_at(-0.5, 29.9) == (-1, 2)
    with pytest.raises(ConfigError):
        GridParams(4, 4, 0, 10.0).validate()


def test_roads_built_after_generation(make_generator):
    curves = [straight_curve_points(2.0, 38.0, 20.0)]
    roads = RoadParams(enabled=True, width=4.0, center_strip_width=1.0, mesh_step=1.0, raise_height=0.2)
    gen = make_generator(4, 4, 8, 10.0, terrain=TerrainConfig(seed=9, use_path_valleys=True), roads=roads, curves=curves)
    result = gen.generate_all()
    assert result.roads == 2
    center, edges = gen.road_meshes
    assert center.surface is SurfaceClass.CENTER_STRIP
    assert edges.surface is SurfaceClass.ROAD
    assert center.name == "road_0_center" and edges.name == "road_0_edges"

    # Road vertices ride raise_height above the terrain under them.
    ground = gen.surface().terrain_height
    for x, y, z in center.positions[::7]:
        assert y == pytest.approx(ground(float(x), float(z)) + 0.2, abs=1e-4)

    gen.clear_roads()
    assert gen.road_meshes == []


def test_roads_disabled_or_invalid(make_generator, caplog):
    curves = [straight_curve_points(2.0, 38.0, 20.0)]
    gen = make_generator(4, 4, curves=curves, roads=RoadParams(enabled=False))
    assert gen.generate_roads() == []

    bad = RoadParams(enabled=True, width=2.0, center_strip_width=3.0)
    gen = make_generator(4, 4, curves=curves, roads=bad)
    with caplog.at_level(logging.ERROR, logger="rally.world.generator"):
        result = gen.generate_all()
    assert result.ok and result.roads == 0
    assert "cannot generate roads" in caplog.text


def test_roads_without_curves_warn(make_generator, caplog):
    gen = make_generator(2, 2, roads=RoadParams(enabled=True))
    with caplog.at_level(logging.WARNING, logger="rally.world.generator"):
        assert gen.generate_roads() == []
    assert "no curves are cached" in caplog.text
