from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from opensimplex import OpenSimplex

from rally.config import (
    TERRAIN_SCALE, OCTAVES, PERSISTENCE, LACUNARITY, NOISE_OFFSET_X, NOISE_OFFSET_Z,
)
from rally.errors import ConfigError

NOISE_MODES = ("value", "simplex")

# Each octave is nudged by this much so octaves do not share lattice points.
OCTAVE_SHIFT = 0.1


@dataclass(frozen=True)
class NoiseConfig:
    scale: float = TERRAIN_SCALE
    octaves: int = OCTAVES
    persistence: float = PERSISTENCE
    lacunarity: float = LACUNARITY
    offset_x: float = NOISE_OFFSET_X
    offset_z: float = NOISE_OFFSET_Z

    def validate(self) -> None:
        if self.scale <= 0:
            raise ConfigError(f"noise scale must be positive, got {self.scale}")
        if self.octaves <= 0:
            raise ConfigError(f"octaves must be positive, got {self.octaves}")
        if not (0.0 <= self.persistence <= 1.0):
            raise ConfigError(f"persistence must be in [0, 1], got {self.persistence}")
        if self.lacunarity <= 0:
            raise ConfigError(f"lacunarity must be positive, got {self.lacunarity}")


class FastValueNoise2D:
    """Fast 2D value noise with fully vectorized numpy implementation.

    Uses an integer hash on lattice points and smooth interpolation.
    Deterministic for a given seed and holds no mutable state, so one
    instance can be sampled from several threads at once.
    """

    def __init__(self, seed: int) -> None:
        self.seed = int(seed)
        self._seed32 = np.uint32(self.seed & 0xFFFFFFFF)

    @staticmethod
    def _fade(t: np.ndarray) -> np.ndarray:
        # smootherstep
        return t * t * t * (t * (t * 6 - 15) + 10)

    def _hash(self, xi: np.ndarray, zi: np.ndarray) -> np.ndarray:
        # Vectorized integer hash -> uint32 -> [0,1)
        x = (xi.astype(np.uint32) * np.uint32(374761393)) ^ (zi.astype(np.uint32) * np.uint32(668265263)) ^ self._seed32
        x ^= (x >> np.uint32(13))
        x *= np.uint32(1274126177)
        x ^= (x >> np.uint32(16))
        return x.astype(np.float64) / 2.0**32

    def noise(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        # x,z: float arrays (same shape); result in [0,1)
        x = np.asarray(x, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        xf0 = np.floor(x)
        zf0 = np.floor(z)
        xi0 = xf0.astype(np.int64)
        zi0 = zf0.astype(np.int64)
        xi1 = xi0 + 1
        zi1 = zi0 + 1

        u = self._fade(x - xf0)
        v = self._fade(z - zf0)

        a = self._hash(xi0, zi0)
        b = self._hash(xi1, zi0)
        c = self._hash(xi0, zi1)
        d = self._hash(xi1, zi1)

        # bilinear interpolation with fade
        ab = a + (b - a) * u
        cd = c + (d - c) * u
        return ab + (cd - ab) * v


class SimplexNoise2D:
    """OpenSimplex gradient noise remapped to [0,1]. Slower, per-point calls."""

    def __init__(self, seed: int) -> None:
        self.seed = int(seed)
        self._simp = OpenSimplex(self.seed)
        self._noise2 = np.vectorize(self._simp.noise2, otypes=[np.float64])

    def noise(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        if x.size == 0:
            return np.zeros_like(x)
        n = self._noise2(x, z)
        return np.clip(n * 0.5 + 0.5, 0.0, 1.0)


def make_noise(mode: str, seed: int) -> FastValueNoise2D | SimplexNoise2D:
    if mode == "value":
        return FastValueNoise2D(seed)
    if mode == "simplex":
        return SimplexNoise2D(seed)
    raise ConfigError(f"unknown noise mode {mode!r}; expected one of {NOISE_MODES}")


def fbm01(noise, x: np.ndarray, z: np.ndarray, cfg: NoiseConfig) -> np.ndarray:
    """Fractal sum of `cfg.octaves` layers, normalized by the amplitude sum to [0,1]."""
    freq = 1.0
    amp = 1.0
    total = np.zeros(np.shape(x), dtype=np.float64)
    norm = 0.0
    for i in range(cfg.octaves):
        sx = x / cfg.scale * freq + cfg.offset_x + i * OCTAVE_SHIFT
        sz = z / cfg.scale * freq + cfg.offset_z + i * OCTAVE_SHIFT
        total += noise.noise(sx, sz) * amp
        norm += amp
        amp *= cfg.persistence
        freq *= cfg.lacunarity
    if norm <= 0.0:
        return total
    return total / norm
