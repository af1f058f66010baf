from __future__ import annotations

from dataclasses import dataclass, field
import numpy as np

from rally.config import (
    DEFAULT_SEED, DEFAULT_NOISE, MAX_HEIGHT, HEIGHT_CURVE_SAMPLES,
    USE_DOMAIN_WARP, WARP_SCALE, WARP_STRENGTH, WARP_OFFSET_X, WARP_OFFSET_Z,
    USE_VALLEYS, VALLEY_SCALE, VALLEY_DEPTH, VALLEY_WIDTH_EXPONENT, VALLEY_OFFSET_X, VALLEY_OFFSET_Z,
    USE_PATH_VALLEYS, PATH_VALLEY_WIDTH, PATH_VALLEY_DEPTH, PATH_VALLEY_FALLOFF,
)
from rally.errors import ConfigError
from rally.util.math import smoothstep
from rally.world.curves import CurveCache, carve_factors
from rally.world.noise import NoiseConfig, make_noise, fbm01, NOISE_MODES


@dataclass(frozen=True)
class HeightCurve:
    """Monotonic remap of normalized noise to unit height.

    `keys` are (t, value) pairs with strictly increasing t in [0,1] and
    non-decreasing values. "linear" joins keys with straight lines, "smooth"
    eases in/out between keys. The curve is baked once into a `samples`-entry
    lookup table; `sample()` linearly interpolates the table.
    """

    keys: tuple[tuple[float, float], ...] = ((0.0, 0.0), (1.0, 1.0))
    interpolation: str = "linear"
    samples: int = HEIGHT_CURVE_SAMPLES
    _lut: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        keys = tuple((float(t), float(v)) for t, v in self.keys)
        object.__setattr__(self, "keys", keys)
        if len(keys) < 2:
            raise ConfigError("height curve needs at least two keys")
        if self.samples < 2:
            raise ConfigError(f"height curve needs at least two samples, got {self.samples}")
        if self.interpolation not in ("linear", "smooth"):
            raise ConfigError(f"unknown height curve interpolation {self.interpolation!r}")
        kt = np.array([k[0] for k in keys])
        kv = np.array([k[1] for k in keys])
        if kt[0] < 0.0 or kt[-1] > 1.0 or np.any(np.diff(kt) <= 0.0):
            raise ConfigError("height curve key times must be strictly increasing within [0, 1]")
        if np.any(np.diff(kv) < 0.0):
            raise ConfigError("height curve must be monotonic (non-decreasing values)")

        ts = np.linspace(0.0, 1.0, int(self.samples))
        if self.interpolation == "linear":
            lut = np.interp(ts, kt, kv)
        else:
            idx = np.clip(np.searchsorted(kt, ts, side="right") - 1, 0, len(kt) - 2)
            t0, t1 = kt[idx], kt[idx + 1]
            local = np.clip((ts - t0) / (t1 - t0), 0.0, 1.0)
            lut = kv[idx] + (kv[idx + 1] - kv[idx]) * smoothstep(0.0, 1.0, local)
            lut = np.where(ts < kt[0], kv[0], np.where(ts > kt[-1], kv[-1], lut))
        lut.setflags(write=False)
        object.__setattr__(self, "_lut", lut)

    @classmethod
    def linear(cls) -> "HeightCurve":
        return cls()

    @classmethod
    def ease_in_out(cls) -> "HeightCurve":
        return cls(keys=((0.0, 0.0), (1.0, 1.0)), interpolation="smooth")

    @property
    def lut(self) -> np.ndarray:
        return self._lut

    def sample(self, t: np.ndarray) -> np.ndarray:
        t = np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0)
        n = self._lut.shape[0]
        fi = t * (n - 1)
        i0 = np.floor(fi).astype(np.int64)
        i1 = np.minimum(i0 + 1, n - 1)
        frac = fi - i0
        v0 = self._lut[i0]
        v1 = self._lut[i1]
        return v0 + (v1 - v0) * frac


@dataclass(frozen=True)
class TerrainConfig:
    seed: int = DEFAULT_SEED
    noise_mode: str = DEFAULT_NOISE
    max_height: float = MAX_HEIGHT
    noise: NoiseConfig = field(default_factory=NoiseConfig)

    # Domain warping
    use_domain_warp: bool = USE_DOMAIN_WARP
    warp_scale: float = WARP_SCALE
    warp_strength: float = WARP_STRENGTH
    warp_offset_x: float = WARP_OFFSET_X
    warp_offset_z: float = WARP_OFFSET_Z

    height_curve: HeightCurve = field(default_factory=HeightCurve)

    # Ridge valleys (noise based)
    use_valleys: bool = USE_VALLEYS
    valley_scale: float = VALLEY_SCALE
    valley_depth: float = VALLEY_DEPTH
    valley_width_exponent: float = VALLEY_WIDTH_EXPONENT
    valley_offset_x: float = VALLEY_OFFSET_X
    valley_offset_z: float = VALLEY_OFFSET_Z

    # Path valleys (curve based)
    use_path_valleys: bool = USE_PATH_VALLEYS
    path_valley_width: float = PATH_VALLEY_WIDTH
    path_valley_depth: float = PATH_VALLEY_DEPTH
    path_valley_falloff: float = PATH_VALLEY_FALLOFF

    def validate(self) -> None:
        if self.noise_mode not in NOISE_MODES:
            raise ConfigError(f"unknown noise mode {self.noise_mode!r}; expected one of {NOISE_MODES}")
        if self.max_height < 0:
            raise ConfigError(f"max_height must be non-negative, got {self.max_height}")
        self.noise.validate()
        if self.use_domain_warp and self.warp_scale <= 0:
            raise ConfigError(f"warp_scale must be positive, got {self.warp_scale}")
        if self.use_valleys:
            if self.valley_scale <= 0:
                raise ConfigError(f"valley_scale must be positive, got {self.valley_scale}")
            if self.valley_width_exponent <= 0:
                raise ConfigError(f"valley_width_exponent must be positive, got {self.valley_width_exponent}")
        if self.use_path_valleys:
            if self.path_valley_width < 0 or self.path_valley_falloff < 0:
                raise ConfigError("path valley width and falloff must be non-negative")


class HeightField:
    """World (x, z) -> terrain height.

    Pure and deterministic for a given config and curve set; holds no mutable
    state, so `height_grid` may run concurrently on disjoint vertex bands.
    """

    def __init__(self, config: TerrainConfig, curves: CurveCache | None = None) -> None:
        config.validate()
        self.config = config
        self.curves = curves
        self.noise = make_noise(config.noise_mode, config.seed)

    @property
    def carving_enabled(self) -> bool:
        return bool(self.config.use_path_valleys and self.curves is not None and len(self.curves) > 0)

    def carve_factors(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Per-point path carve factor in [0,1] (zeros when carving is off)."""
        shape = np.broadcast(np.asarray(x), np.asarray(z)).shape
        if not self.carving_enabled:
            return np.zeros(shape, dtype=np.float64)
        cfg = self.config
        d = self.curves.nearest_distance(x, z)
        return carve_factors(d, cfg.path_valley_width, cfg.path_valley_falloff)

    def _warp(self, x: np.ndarray, z: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        cfg = self.config
        if not cfg.use_domain_warp:
            return x, z
        sx = x / cfg.warp_scale
        sz = z / cfg.warp_scale
        wx = self.noise.noise(sx + cfg.warp_offset_x, sz)
        wz = self.noise.noise(sx + cfg.warp_offset_z, sz)
        return (
            x + (wx * 2.0 - 1.0) * cfg.warp_strength,
            z + (wz * 2.0 - 1.0) * cfg.warp_strength,
        )

    def base_height(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Height before path carving and clamping (warp, fBm, remap, ridge valleys)."""
        cfg = self.config
        x = np.asarray(x, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        xw, zw = self._warp(x, z)

        n01 = fbm01(self.noise, xw, zw, cfg.noise)
        h = cfg.height_curve.sample(n01) * cfg.max_height

        if cfg.use_valleys:
            vn = self.noise.noise(xw / cfg.valley_scale + cfg.valley_offset_x, zw / cfg.valley_scale + cfg.valley_offset_z)
            ridge = 1.0 - np.abs(vn * 2.0 - 1.0)
            h = h - np.power(ridge, cfg.valley_width_exponent) * cfg.valley_depth
        return h

    def height_grid(self, x: np.ndarray, z: np.ndarray, carve: np.ndarray | None = None) -> np.ndarray:
        """Final heights for a batch of points.

        `carve` is the precomputed per-point carve factor; when omitted it is
        derived from the cached curves, so both paths give identical values.
        """
        cfg = self.config
        h = self.base_height(x, z)
        if cfg.use_path_valleys:
            if carve is None:
                carve = self.carve_factors(x, z)
            h = h - np.asarray(carve, dtype=np.float64) * cfg.path_valley_depth
        return np.maximum(h, 0.0)

    def height_at(self, x: float, z: float) -> float:
        xv = np.array([x], dtype=np.float64)
        zv = np.array([z], dtype=np.float64)
        return float(self.height_grid(xv, zv)[0])
