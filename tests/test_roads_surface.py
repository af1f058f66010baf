import numpy as np
import pytest

from rally.errors import ConfigError
from rally.world.curves import ValleyCurve
from rally.world.roads import RoadParams, build_curve_road, build_road_meshes
from rally.world.surface import SurfaceClass, TerrainSurface, TriangleSoup

from helpers import flat_chunk, straight_curve_points


class NoGround:
    def query(self, x, z):
        return None


def _flat(height=0.0):
    return {(cx, cz): flat_chunk(cx, cz, height=height) for cz in range(2) for cx in range(2)}


def _params(**kw):
    values = dict(enabled=True, width=4.0, center_strip_width=1.0, shoulder_width=0.0, mesh_step=1.0, raise_height=0.2)
    values.update(kw)
    return RoadParams(**values)


def test_station_and_triangle_counts():
    curve = ValleyCurve.from_points(straight_curve_points(0.0, 10.0, 5.0))
    center, edges = build_curve_road(curve, _params(), None, index=3)
    # 10 units at step 1 -> 11 stations, 10 segments.
    assert center.positions.shape == (22, 3)
    assert edges.positions.shape == (66, 3)
    assert center.triangle_count == 20
    assert edges.triangle_count == 80
    assert center.name == "road_3_center" and edges.name == "road_3_edges"
    assert center.positions.dtype == np.float32 and center.indices.dtype == np.uint32
    assert int(edges.indices.max()) == 65


def test_vertices_snap_to_ground_and_rise():
    curve = ValleyCurve.from_points(straight_curve_points(2.0, 18.0, 10.0, y=40.0))
    center, edges = build_curve_road(curve, _params(shoulder_width=1.0), TerrainSurface(_flat(3.0), 10.0))
    assert center.positions[:, 1] == pytest.approx(3.2)
    ys = edges.positions[:, 1].reshape(-1, 6)
    # Shoulders stay on the ground; everything on the road is raised.
    assert ys[:, [0, 5]] == pytest.approx(3.0)
    assert ys[:, 1:5] == pytest.approx(3.2)
    zs = edges.positions[:, 2].reshape(-1, 6)
    assert zs[0] == pytest.approx([7.0, 8.0, 9.5, 10.5, 12.0, 13.0])


def test_missing_ground_keeps_curve_height():
    curve = ValleyCurve.from_points(straight_curve_points(0.0, 5.0, 0.0, y=7.0))
    center, _ = build_curve_road(curve, _params(), NoGround())
    assert center.positions[:, 1] == pytest.approx(7.2)
    center, _ = build_curve_road(curve, _params(), None)
    assert center.positions[:, 1] == pytest.approx(7.2)


def test_uvs_run_along_and_across():
    curve = ValleyCurve.from_points(straight_curve_points(0.0, 8.0, 0.0))
    center, edges = build_curve_road(curve, _params(), None)
    assert center.uvs[:2, 0].tolist() == [0.0, 1.0]
    assert center.uvs[-1, 1] == pytest.approx(8.0 / 4.0)
    assert edges.uvs[:6, 0] == pytest.approx([-0.1, 0.0, 0.45, 0.55, 1.0, 1.1])


def test_short_curves_are_skipped():
    curve = ValleyCurve.from_points([(0.0, 0.0, 0.0), (0.5, 0.0, 0.0)])
    assert build_curve_road(curve, _params(), None) == []
    long_one = ValleyCurve.from_points(straight_curve_points(0.0, 4.0, 0.0))
    assert len(build_road_meshes([curve, long_one], _params())) == 2


@pytest.mark.parametrize("kw", [
    dict(width=0.0), dict(center_strip_width=4.0), dict(center_strip_width=0.0),
    dict(shoulder_width=-1.0), dict(mesh_step=0.0),
])
def test_invalid_road_params(kw):
    with pytest.raises(ConfigError):
        build_road_meshes([], _params(**kw))


def test_surface_sample_prefers_highest_and_center_strip():
    chunks = _flat()
    curve = ValleyCurve.from_points(straight_curve_points(0.0, 20.0, 10.5))
    roads = build_road_meshes([curve], _params(), TerrainSurface(chunks, 10.0))
    surface = TerrainSurface(chunks, 10.0, roads)

    xs = np.array([5.5, 25.0])
    zs = np.array([10.5, 9.5, 15.5])
    sample = surface.sample(xs, zs)
    assert sample.classes[0].tolist() == [SurfaceClass.CENTER_STRIP, SurfaceClass.ROAD, SurfaceClass.TERRAIN]
    assert sample.heights[0] == pytest.approx([0.2, 0.2, 0.0], abs=1e-5)
    assert sample.hit[0].all()
    # Beyond the built chunks.
    assert not sample.hit[1].any()
    assert sample.classes[1].tolist() == [SurfaceClass.NONE] * 3
    assert sample.heights[1].tolist() == [0.0, 0.0, 0.0]

    assert surface.query(5.5, 10.5) == pytest.approx(0.2, abs=1e-5)
    assert surface.terrain_height(5.5, 10.5) == pytest.approx(0.0)
    assert surface.query(25.0, 10.5) is None


def test_sample_accepts_unsorted_axes():
    chunks = _flat()
    curve = ValleyCurve.from_points(straight_curve_points(0.0, 20.0, 10.5))
    roads = build_road_meshes([curve], _params(), TerrainSurface(chunks, 10.0))
    surface = TerrainSurface(chunks, 10.0, roads)

    xs = np.array([15.5, 25.0, 2.5, 5.5])
    zs = np.array([15.5, 10.5, 3.5, 9.5])
    sample = surface.sample(xs, zs)
    for i, x in enumerate(xs):
        for j, z in enumerate(zs):
            h = surface.query(x, z)
            if h is None:
                assert not sample.hit[i, j]
            else:
                assert sample.hit[i, j]
                assert sample.heights[i, j] == pytest.approx(h, abs=1e-5)

    ordered = surface.sample(np.sort(xs), np.sort(zs))
    ix, iz = np.argsort(xs), np.argsort(zs)
    assert np.array_equal(sample.classes[np.ix_(ix, iz)], ordered.classes)
    assert sample.classes[3, 1] == SurfaceClass.CENTER_STRIP
    assert not sample.hit[1].any()


def test_triangle_soup_height_and_vertical_triangles():
    positions = np.array([
        [0.0, 1.0, 0.0], [2.0, 1.0, 0.0], [0.0, 3.0, 2.0],
        [5.0, 0.0, 5.0], [5.0, 4.0, 5.0], [6.0, 0.0, 5.0],  # zero xz area
    ])
    soup = TriangleSoup(positions, np.arange(6), SurfaceClass.ROAD)
    assert len(soup) == 1
    assert soup.height_at(0.5, 1.0) == pytest.approx(2.0)
    assert soup.height_at(1.9, 1.9) is None

    grid = soup.rasterize(np.array([0.5, 3.0]), np.array([1.0]))
    assert grid[0, 0] == pytest.approx(2.0)
    assert grid[1, 0] == -np.inf
