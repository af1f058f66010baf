import logging

import numpy as np
import pytest

from rally.world.curves import CurveCache, ValleyCurve, carve_factors


def test_straight_curve_length_and_evaluate():
    c = ValleyCurve.from_points([(0.0, 0.0, 0.0), (10.0, 0.0, 0.0)], smoothing=4)
    assert c.length == pytest.approx(10.0)
    pos, tangent = c.evaluate(2.5)
    assert pos == pytest.approx([2.5, 0.0, 0.0])
    assert tangent == pytest.approx([1.0, 0.0, 0.0])
    # Clamped past the ends.
    assert c.evaluate(-5.0)[0] == pytest.approx([0.0, 0.0, 0.0])
    assert c.evaluate(50.0)[0] == pytest.approx([10.0, 0.0, 0.0])


def test_smoothed_curve_passes_through_control_points():
    pts = [(0.0, 0.0, 0.0), (10.0, 2.0, 5.0), (20.0, 0.0, 0.0)]
    c = ValleyCurve.from_points(pts, smoothing=8)
    assert c.polyline[0] == pytest.approx(pts[0])
    assert c.polyline[8] == pytest.approx(pts[1])
    assert c.polyline[-1] == pytest.approx(pts[2])
    assert c.length > np.linalg.norm(np.subtract(pts[1], pts[0])) * 2 - 1e-9


def test_curve_arrays_are_immutable_copies():
    pts = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 1.0]])
    c = ValleyCurve.from_points(pts)
    assert pts.flags.writeable
    assert not c.control_points.flags.writeable
    assert not c.polyline.flags.writeable


@pytest.mark.parametrize("points", [[(0.0, 0.0, 0.0)], [(0.0, 0.0), (1.0, 1.0)]])
def test_curve_rejects_bad_points(points):
    with pytest.raises(ValueError):
        ValleyCurve.from_points(points)


def test_tangent_skips_degenerate_segments():
    c = ValleyCurve.from_points([(0.0, 0.0, 0.0), (0.0, 0.0, 4.0), (0.0, 0.0, 4.0)], smoothing=1)
    _, tangent = c.evaluate(4.0)
    assert tangent == pytest.approx([0.0, 0.0, 1.0])


def test_planar_distance_ignores_height():
    c = ValleyCurve.from_points([(0.0, 50.0, 0.0), (10.0, 50.0, 0.0)], smoothing=1)
    d = c.distance_xz(np.array([5.0, -3.0, 13.0]), np.array([2.0, 0.0, 4.0]))
    assert d == pytest.approx([2.0, 3.0, 5.0])


def test_carve_factor_profile():
    d = np.array([0.0, 2.5, 3.0, 7.5, 13.0, 20.0])
    f = carve_factors(d, width=5.0, falloff=10.0)
    assert f[0] == 1.0 and f[1] == 1.0
    assert 0.0 < f[2] < 1.0
    assert f[3] == pytest.approx(0.5)
    assert f[4] == 0.0 and f[5] == 0.0
    assert np.all(np.diff(f) <= 0.0)


def test_carve_factor_without_falloff_is_a_step():
    f = carve_factors(np.array([1.0, 2.0, 2.01]), width=4.0, falloff=0.0)
    assert f.tolist() == [1.0, 1.0, 0.0]


def test_cache_populates_explicitly_and_skips_invalid(caplog):
    calls = []

    def source():
        calls.append(1)
        return [[(0.0, 0.0, 0.0), (10.0, 0.0, 0.0)], [(5.0, 0.0, 5.0)]]

    cache = CurveCache(source)
    assert not cache.populated and len(cache) == 0 and calls == []
    with caplog.at_level(logging.WARNING, logger="rally.world.curves"):
        assert cache.populate() == 1
    assert "skipping curve 1" in caplog.text
    assert cache.populated and cache.version == 1 and calls == [1]

    cache.invalidate()
    assert not cache.populated and len(cache) == 0
    cache.populate()
    assert cache.version == 2 and calls == [1, 1]


def test_cache_accepts_prebuilt_curves():
    curve = ValleyCurve.from_points([(0.0, 0.0, 0.0), (1.0, 0.0, 0.0)])
    cache = CurveCache(lambda: [curve])
    cache.populate()
    assert cache.curves == (curve,)


def test_nearest_distance_uses_closest_curve():
    cache = CurveCache(lambda: [
        [(0.0, 0.0, 0.0), (10.0, 0.0, 0.0)],
        [(0.0, 0.0, 10.0), (10.0, 0.0, 10.0)],
    ])
    assert np.isinf(cache.nearest_distance(np.array([1.0]), np.array([1.0]))).all()
    cache.populate()
    d = cache.nearest_distance(np.array([5.0, 5.0]), np.array([3.0, 8.0]))
    assert d == pytest.approx([3.0, 2.0])
