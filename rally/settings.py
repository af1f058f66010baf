from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from rally.errors import ConfigError
from rally.nav.cost_map import PathParams, SurfaceCosts
from rally.world.generator import GridParams
from rally.world.height import HeightCurve, TerrainConfig
from rally.world.noise import NoiseConfig
from rally.world.roads import RoadParams
from rally.world.streamer import StreamerParams

log = logging.getLogger(__name__)

SECTIONS = ("grid", "terrain", "noise", "roads", "streamer", "path", "costs", "curves")


@dataclass(frozen=True)
class Settings:
    grid: GridParams = field(default_factory=GridParams)
    terrain: TerrainConfig = field(default_factory=TerrainConfig)
    roads: RoadParams = field(default_factory=RoadParams)
    streamer: StreamerParams = field(default_factory=StreamerParams)
    path: PathParams = field(default_factory=PathParams)
    costs: SurfaceCosts = field(default_factory=SurfaceCosts)
    curves: tuple[tuple[tuple[float, float, float], ...], ...] | None = None  # None = built-in demo road

    def validate(self) -> None:
        self.grid.validate()
        self.terrain.validate()
        self.roads.validate()
        self.streamer.validate()
        self.path.validate()
        self.costs.validate()


def _apply(obj: Any, section: str, values: Mapping[str, Any]) -> Any:
    """dataclasses.replace with a readable error for unknown keys."""
    if not isinstance(values, Mapping):
        raise ConfigError(f"settings section {section!r} must be an object")
    known = {f.name for f in fields(obj) if f.init}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"unknown option(s) in {section!r}: {', '.join(unknown)}")
    return replace(obj, **values)


def _height_curve(raw: Any) -> HeightCurve:
    if not isinstance(raw, Mapping):
        raise ConfigError("terrain.height_curve must be an object with 'keys'")
    keys = tuple((float(t), float(v)) for t, v in raw.get("keys", ((0.0, 0.0), (1.0, 1.0))))
    return HeightCurve(
        keys=keys,
        interpolation=str(raw.get("interpolation", "linear")),
        samples=int(raw.get("samples", HeightCurve().samples)),
    )


def _curves(raw: Any) -> tuple[tuple[tuple[float, float, float], ...], ...]:
    if not isinstance(raw, list):
        raise ConfigError("'curves' must be a list of point lists")
    out = []
    for i, pts in enumerate(raw):
        try:
            out.append(tuple((float(p[0]), float(p[1]), float(p[2])) for p in pts))
        except (TypeError, ValueError, IndexError) as e:
            raise ConfigError(f"curve {i} must be a list of [x, y, z] points") from e
    return tuple(out)


def settings_from_dict(data: Mapping[str, Any], base: Settings | None = None) -> Settings:
    """Overlay a parsed settings document on `base` (defaults when omitted)."""
    s = base or Settings()
    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise ConfigError(f"unknown settings section(s): {', '.join(unknown)}")

    terrain_raw = dict(data.get("terrain", {}))
    if "height_curve" in terrain_raw:
        terrain_raw["height_curve"] = _height_curve(terrain_raw["height_curve"])
    terrain = _apply(s.terrain, "terrain", terrain_raw)
    if "noise" in data:
        terrain = replace(terrain, noise=_apply(terrain.noise, "noise", data["noise"]))

    return Settings(
        grid=_apply(s.grid, "grid", data.get("grid", {})),
        terrain=terrain,
        roads=_apply(s.roads, "roads", data.get("roads", {})),
        streamer=_apply(s.streamer, "streamer", data.get("streamer", {})),
        path=_apply(s.path, "path", data.get("path", {})),
        costs=_apply(s.costs, "costs", data.get("costs", {})),
        curves=_curves(data["curves"]) if "curves" in data else s.curves,
    )


def load_settings(path: str | Path | None = None) -> Settings:
    """Defaults, overlaid with the JSON file at `path` when given."""
    if path is None:
        return Settings()
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"settings file not found: {p}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"settings file {p} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"settings file {p} must hold a JSON object")
    log.info("loaded settings from %s", p)
    return settings_from_dict(data)


def with_overrides(settings: Settings, section: str, **values: Any) -> Settings:
    """Replace the non-None `values` in one section, e.g. with_overrides(s, "grid", chunks_x=8)."""
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        return settings
    if section == "noise":
        return replace(settings, terrain=replace(settings.terrain, noise=_apply(settings.terrain.noise, "noise", values)))
    if section not in SECTIONS or section == "curves":
        raise ConfigError(f"cannot override settings section {section!r}")
    return replace(settings, **{section: _apply(getattr(settings, section), section, values)})
