from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Sequence

import numpy as np

from rally.config import CURVE_SMOOTHING

log = logging.getLogger(__name__)

# A curve source returns the authored curves: each item is either a ValleyCurve
# or a sequence of (x, y, z) control points.
CurveSource = Callable[[], Iterable["ValleyCurve | Sequence[Sequence[float]]"]]

# Points per block in distance queries; bounds the (points x segments) temporaries.
_DIST_BLOCK = 4096


def _catmull_rom(points: np.ndarray, samples: int) -> np.ndarray:
    """Sample a uniform Catmull-Rom spline through `points` (endpoints clamped)."""
    n = points.shape[0]
    padded = np.concatenate([points[:1], points, points[-1:]], axis=0)
    t = np.linspace(0.0, 1.0, samples, endpoint=False)[:, None]
    t2 = t * t
    t3 = t2 * t
    out = []
    for i in range(n - 1):
        p0, p1, p2, p3 = padded[i], padded[i + 1], padded[i + 2], padded[i + 3]
        seg = 0.5 * (
            2.0 * p1
            + (-p0 + p2) * t
            + (2.0 * p0 - 5.0 * p1 + 4.0 * p2 - p3) * t2
            + (-p0 + 3.0 * p1 - 3.0 * p2 + p3) * t3
        )
        out.append(seg)
    out.append(points[-1:])
    return np.concatenate(out, axis=0)


@dataclass(frozen=True, eq=False)
class ValleyCurve:
    """Immutable path centerline.

    `control_points` are the authored (x, y, z) points; `polyline` is the dense
    sampling used for distance queries and arc-length evaluation.
    """

    control_points: np.ndarray
    polyline: np.ndarray
    cumulative: np.ndarray  # arc length at each polyline point

    @classmethod
    def from_points(cls, points: Sequence[Sequence[float]], *, smoothing: int = CURVE_SMOOTHING) -> "ValleyCurve":
        pts = np.array(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError(f"curve points must be (N, 3), got shape {pts.shape}")
        if pts.shape[0] < 2:
            raise ValueError("a curve needs at least two control points")

        poly = _catmull_rom(pts, int(smoothing)) if smoothing > 1 else pts.copy()
        seg = np.linalg.norm(np.diff(poly, axis=0), axis=1)
        cum = np.concatenate([[0.0], np.cumsum(seg)])

        for arr in (pts, poly, cum):
            arr.setflags(write=False)
        return cls(control_points=pts, polyline=poly, cumulative=cum)

    @property
    def length(self) -> float:
        return float(self.cumulative[-1])

    def evaluate(self, distance: float) -> tuple[np.ndarray, np.ndarray]:
        """Return (position, unit tangent) at `distance` along the curve (clamped)."""
        cum = self.cumulative
        d = min(max(float(distance), 0.0), float(cum[-1]))
        i = int(np.searchsorted(cum, d, side="right")) - 1
        i = min(max(i, 0), len(cum) - 2)
        p0 = self.polyline[i]
        p1 = self.polyline[i + 1]
        seg_len = float(cum[i + 1] - cum[i])
        t = (d - float(cum[i])) / seg_len if seg_len > 1e-12 else 0.0
        pos = p0 + (p1 - p0) * t

        tangent = self._tangent_at(i)
        return pos, tangent

    def _tangent_at(self, i: int) -> np.ndarray:
        # Nearest non-degenerate segment, searching forward first.
        poly = self.polyline
        last = len(poly) - 2
        for j in list(range(i, last + 1)) + list(range(i - 1, -1, -1)):
            d = poly[j + 1] - poly[j]
            n = float(np.linalg.norm(d))
            if n > 1e-9:
                return d / n
        return np.array([0.0, 0.0, 1.0])

    def distance_xz(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Minimum planar (x,z) distance from each point to the curve polyline."""
        xs = np.asarray(x, dtype=np.float64)
        zs = np.asarray(z, dtype=np.float64)
        shape = np.broadcast(xs, zs).shape
        xf = np.broadcast_to(xs, shape).reshape(-1)
        zf = np.broadcast_to(zs, shape).reshape(-1)

        a = self.polyline[:-1][:, [0, 2]]
        ab = self.polyline[1:][:, [0, 2]] - a
        len2 = np.maximum(np.sum(ab * ab, axis=1), 1e-12)

        out = np.empty(xf.shape[0], dtype=np.float64)
        for s in range(0, xf.shape[0], _DIST_BLOCK):
            px = xf[s:s + _DIST_BLOCK, None]
            pz = zf[s:s + _DIST_BLOCK, None]
            t = ((px - a[None, :, 0]) * ab[None, :, 0] + (pz - a[None, :, 1]) * ab[None, :, 1]) / len2[None, :]
            t = np.clip(t, 0.0, 1.0)
            dx = px - (a[None, :, 0] + t * ab[None, :, 0])
            dz = pz - (a[None, :, 1] + t * ab[None, :, 1])
            out[s:s + _DIST_BLOCK] = np.sqrt(np.min(dx * dx + dz * dz, axis=1))
        return out.reshape(shape)


def carve_factors(distance: np.ndarray, width: float, falloff: float) -> np.ndarray:
    """Valley carve factor from distance to the nearest curve.

    1 on the flat floor (distance <= width/2), smoothstep decay to 0 across
    the falloff band, 0 beyond.
    """
    d = np.asarray(distance, dtype=np.float64)
    half = width * 0.5
    f = np.zeros_like(d)
    f[d <= half] = 1.0
    if falloff > 0.0:
        band = (d > half) & (d < half + falloff)
        t = (d[band] - half) / falloff
        f[band] = 1.0 - t * t * (3.0 - 2.0 * t)
    return f


class CurveCache:
    """Curves captured once per generation pass.

    Populated explicitly from the curve source; `invalidate()` drops the set
    so the next pass re-reads the source. `version` increases on every
    populate so consumers can tell a fresh set from a stale one.
    """

    def __init__(self, source: CurveSource | None = None, *, smoothing: int = CURVE_SMOOTHING) -> None:
        self.source = source
        self.smoothing = int(smoothing)
        self._curves: tuple[ValleyCurve, ...] = ()
        self._populated = False
        self.version = 0

    @property
    def curves(self) -> tuple[ValleyCurve, ...]:
        return self._curves

    @property
    def populated(self) -> bool:
        return self._populated

    def __len__(self) -> int:
        return len(self._curves)

    def __iter__(self) -> Iterator[ValleyCurve]:
        return iter(self._curves)

    def invalidate(self) -> None:
        self._curves = ()
        self._populated = False

    def populate(self) -> int:
        curves: list[ValleyCurve] = []
        if self.source is not None:
            for k, item in enumerate(self.source()):
                if isinstance(item, ValleyCurve):
                    curves.append(item)
                    continue
                try:
                    curves.append(ValleyCurve.from_points(item, smoothing=self.smoothing))
                except ValueError as e:
                    log.warning("skipping curve %d from source: %s", k, e)
        self._curves = tuple(curves)
        self._populated = True
        self.version += 1
        log.debug("cached %d curves (version %d)", len(curves), self.version)
        return len(curves)

    def nearest_distance(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Planar distance to the nearest cached curve (inf when the cache is empty)."""
        shape = np.broadcast(np.asarray(x), np.asarray(z)).shape
        best = np.full(shape, np.inf, dtype=np.float64)
        for curve in self._curves:
            best = np.minimum(best, curve.distance_xz(x, z))
        return best
