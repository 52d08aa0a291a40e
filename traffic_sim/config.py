#!/usr/bin/env python3
"""
traffic_sim/config.py
=====================
Route and car-population configuration.

Both aggregates are frozen dataclasses so the engine can share them
between the host loop and the array-device workers without copying.
:func:`load_config` reads the two YAML documents (see ``configs/``),
builds the dataclasses and validates them; anything malformed raises
:class:`ConfigError` before a single tick runs.

Route document layout::

    route:
      name: ...
      geometry: {type: donut, center_x: 0, ..., lane_count: 3}
      entries: [{id: north, type: lane, lane: 1, angle: 90, ...}]
      exits:   [{id: south, type: lane, lane: 3, angle: 270, ...}]
      traffic_rules: {speed_limit: 30, min_speed: 5, ...}
      surface: {friction_coefficient: 0.8, banking_angle: 0}

Cars document layout mirrors :class:`CarsConfig` (``simulation``,
``car_types``, ``behavior``, ``collision_avoidance``, ``traffic_flow``,
``random``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any, Dict, Mapping, Optional, Tuple, Union, get_args, get_origin, get_type_hints,
)

import yaml

log = logging.getLogger("config")

GEOMETRY_TYPES: Tuple[str, ...] = ("donut", "cloverleaf")

# Car-type and behavior weights are percentages.
WEIGHT_TOTAL: int = 100


class ConfigError(ValueError):
    """Raised when a configuration document is missing or malformed."""


# ── Route ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RouteGeometry:
    """Road shape and lane layout.

    Attributes
    ----------
    type : str
        ``"donut"`` or ``"cloverleaf"``.
    center_x, center_y : float
        World-space centre of the ring or interchange.
    inner_radius, outer_radius : float
        Ring bounds (donut).  Validated for every geometry.
    lane_width : float
        Lateral width of one lane in metres.
    lane_count : int
        Total number of lanes.  A cloverleaf uses ``lane_count - 4``
        highway lanes (split evenly over four directions) plus four loop
        ramps numbered last.
    highway_width : float, optional
        Cloverleaf median width between opposing carriageways.
    highway_length : float, optional
        Cloverleaf length of every straight carriageway.
    loop_radius : float, optional
        Cloverleaf loop-ramp radius.
    """

    type: str
    center_x: float
    center_y: float
    inner_radius: float
    outer_radius: float
    lane_width: float
    lane_count: int
    highway_width: Optional[float] = None
    highway_length: Optional[float] = None
    loop_radius: Optional[float] = None


@dataclass(frozen=True)
class EntryPoint:
    id: str
    type: str
    lane: int
    angle: float = 0.0
    offset: float = 0.0
    position: str = ""
    merge_distance: float = 0.0


@dataclass(frozen=True)
class ExitPoint:
    id: str
    type: str
    lane: int
    angle: float = 0.0
    offset: float = 0.0
    position: str = ""
    exit_distance: float = 10.0


@dataclass(frozen=True)
class TrafficRules:
    speed_limit: float
    min_speed: float
    following_distance: float
    """Time headway in seconds."""
    lane_change_time: float
    """Seconds needed to complete one lane change."""


@dataclass(frozen=True)
class RoadSurface:
    friction_coefficient: float = 0.8
    banking_angle: float = 0.0


@dataclass(frozen=True)
class RouteConfig:
    name: str
    geometry: RouteGeometry
    entries: Tuple[EntryPoint, ...]
    exits: Tuple[ExitPoint, ...]
    traffic_rules: TrafficRules
    surface: RoadSurface = field(default_factory=RoadSurface)
    description: str = ""

    def entry(self, entry_id: str) -> EntryPoint:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        raise KeyError(entry_id)

    def highway_lane_count(self) -> int:
        """Number of non-ramp lanes (all lanes on a donut)."""
        if self.geometry.type == "cloverleaf":
            return self.geometry.lane_count - 4
        return self.geometry.lane_count


# ── Cars ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SimulationParams:
    total_cars: int
    """Population cap."""
    spawn_rate: float
    """Cars per second per entry when no interval is configured."""
    simulation_duration: float


@dataclass(frozen=True)
class CarType:
    id: str
    weight: int
    length: float
    width: float
    max_acceleration: float
    max_deceleration: float
    preferred_speed: float


@dataclass(frozen=True)
class DriverBehavior:
    name: str
    weight: int
    following_distance_factor: float
    lane_change_frequency: float
    """Lane changes per minute."""
    speed_variance: float
    reaction_time: float
    exit_probability: float


@dataclass(frozen=True)
class CollisionAvoidance:
    safety_margin: float
    emergency_brake_distance: float
    warning_distance: float
    lateral_safety_margin: float = 0.5


@dataclass(frozen=True)
class EntryInterval:
    entry_id: str
    min_interval: float
    max_interval: float


@dataclass(frozen=True)
class CarsConfig:
    simulation: SimulationParams
    car_types: Tuple[CarType, ...]
    behaviors: Dict[str, DriverBehavior]
    collision_avoidance: CollisionAvoidance
    entry_intervals: Tuple[EntryInterval, ...] = ()
    seed: Optional[int] = None

    def entry_interval(self, entry_id: str) -> Optional[EntryInterval]:
        for interval in self.entry_intervals:
            if interval.entry_id == entry_id:
                return interval
        return None


@dataclass(frozen=True)
class SimulationConfig:
    """Validated pair handed to the engine."""

    route: RouteConfig
    cars: CarsConfig


# ── Building from plain mappings ─────────────────────────────────────────────

def _section(doc: Mapping[str, Any], key: str, where: str) -> Any:
    if not isinstance(doc, Mapping) or key not in doc:
        raise ConfigError(f"{where}: missing required section '{key}'")
    return doc[key]


def _coerce(value: Any, hint: Any, where: str) -> Any:
    """Check one scalar against its annotation.

    Ints are accepted where a float is expected, and integral floats
    where an int is.
    """
    if get_origin(hint) is Union:
        if value is None:
            return None
        hint = next(a for a in get_args(hint) if a is not type(None))
    if hint is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where}: expected a number, got {value!r}")
        return float(value)
    if hint is int:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where}: expected an integer, got {value!r}")
        return value
    if hint is str and not isinstance(value, str):
        raise ConfigError(f"{where}: expected a string, got {value!r}")
    return value


def _build(cls, raw: Any, where: str):
    """Instantiate a dataclass from a mapping, reporting bad keys and values."""
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: expected a mapping, got {type(raw).__name__}")
    hints = get_type_hints(cls)
    values = {
        key: _coerce(value, hints[key], f"{where}.{key}") if key in hints else value
        for key, value in raw.items()
    }
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def route_from_dict(doc: Mapping[str, Any]) -> RouteConfig:
    """Build (without validating) a :class:`RouteConfig` from a parsed document."""
    route = _section(doc, "route", "route config")
    geometry = _build(RouteGeometry, _section(route, "geometry", "route"),
                      "route.geometry")
    entries = tuple(_build(EntryPoint, e, f"route.entries[{i}]")
                    for i, e in enumerate(route.get("entries") or []))
    exits = tuple(_build(ExitPoint, e, f"route.exits[{i}]")
                  for i, e in enumerate(route.get("exits") or []))
    rules = _build(TrafficRules, _section(route, "traffic_rules", "route"),
                   "route.traffic_rules")
    surface = _build(RoadSurface, route.get("surface") or {}, "route.surface")
    return RouteConfig(
        name=str(route.get("name", "")),
        description=str(route.get("description", "")),
        geometry=geometry,
        entries=entries,
        exits=exits,
        traffic_rules=rules,
        surface=surface,
    )


def cars_from_dict(doc: Mapping[str, Any]) -> CarsConfig:
    """Build (without validating) a :class:`CarsConfig` from a parsed document."""
    where = "cars config"
    simulation = _build(SimulationParams, _section(doc, "simulation", where),
                        "simulation")
    car_types = tuple(_build(CarType, c, f"car_types[{i}]")
                      for i, c in enumerate(_section(doc, "car_types", where) or []))

    behaviors: Dict[str, DriverBehavior] = {}
    raw_behaviors = _section(doc, "behavior", where) or {}
    if not isinstance(raw_behaviors, Mapping):
        raise ConfigError("behavior: expected a mapping of profile name to parameters")
    for name, raw in raw_behaviors.items():
        params = dict(raw or {})
        params.setdefault("name", str(name))
        behaviors[str(name)] = _build(DriverBehavior, params, f"behavior.{name}")

    collision = _build(CollisionAvoidance,
                       _section(doc, "collision_avoidance", where),
                       "collision_avoidance")
    flow = doc.get("traffic_flow") or {}
    intervals = tuple(_build(EntryInterval, e, f"traffic_flow.entry_intervals[{i}]")
                      for i, e in enumerate(flow.get("entry_intervals") or []))
    seed = _coerce((doc.get("random") or {}).get("seed"), Optional[int], "random.seed")
    return CarsConfig(
        simulation=simulation,
        car_types=car_types,
        behaviors=behaviors,
        collision_avoidance=collision,
        entry_intervals=intervals,
        seed=seed,
    )


# ── Validation ───────────────────────────────────────────────────────────────

def validate_route(route: RouteConfig) -> None:
    """Raise :class:`ConfigError` unless *route* is internally consistent."""
    geo = route.geometry
    if geo.type not in GEOMETRY_TYPES:
        raise ConfigError(
            f"Unknown geometry type {geo.type!r}; expected one of {GEOMETRY_TYPES}"
        )
    if geo.inner_radius >= geo.outer_radius:
        raise ConfigError("Inner radius must be less than outer radius")
    if geo.lane_width <= 0 or geo.lane_count <= 0:
        raise ConfigError("Lane width and count must be positive")

    if geo.type == "donut":
        if geo.inner_radius + geo.lane_count * geo.lane_width > geo.outer_radius + 1e-9:
            raise ConfigError(
                f"{geo.lane_count} lanes of {geo.lane_width} m do not fit "
                f"between radii {geo.inner_radius} and {geo.outer_radius}"
            )
    else:
        for name in ("highway_width", "highway_length", "loop_radius"):
            value = getattr(geo, name)
            if value is None or value <= 0:
                raise ConfigError(f"Cloverleaf geometry requires a positive {name}")
        highway_lanes = geo.lane_count - 4
        if highway_lanes <= 0 or highway_lanes % 4:
            raise ConfigError(
                "Cloverleaf lane_count must be 4 loop ramps plus a positive "
                f"multiple of 4 highway lanes, got {geo.lane_count}"
            )

    seen = set()
    for entry in route.entries:
        if entry.id in seen:
            raise ConfigError(f"Duplicate entry id {entry.id!r}")
        seen.add(entry.id)
        _check_point("Entry", entry.id, entry.lane, entry.angle, geo.lane_count)
    for ex in route.exits:
        _check_point("Exit", ex.id, ex.lane, ex.angle, geo.lane_count)
        if ex.exit_distance <= 0:
            raise ConfigError(f"Exit {ex.id!r} exit_distance must be positive")

    rules = route.traffic_rules
    if rules.speed_limit <= 0 or rules.min_speed <= 0:
        raise ConfigError("Speed limits must be positive")
    if rules.min_speed >= rules.speed_limit:
        raise ConfigError("Minimum speed must be less than speed limit")
    if rules.following_distance <= 0 or rules.lane_change_time <= 0:
        raise ConfigError("Following distance and lane change time must be positive")

    if not 0 < route.surface.friction_coefficient <= 1:
        raise ConfigError("Friction coefficient must be in range (0, 1]")


def _check_point(kind: str, point_id: str, lane: int, angle: float,
                 lane_count: int) -> None:
    if not 1 <= lane <= lane_count:
        raise ConfigError(
            f"{kind} {point_id!r} lane {lane} is out of range (1-{lane_count})"
        )
    if not 0 <= angle < 360:
        raise ConfigError(
            f"{kind} {point_id!r} angle {angle} must be in range [0, 360)"
        )


def validate_cars(cars: CarsConfig) -> None:
    """Raise :class:`ConfigError` unless *cars* is internally consistent."""
    sim = cars.simulation
    if sim.total_cars <= 0:
        raise ConfigError("Total cars must be greater than zero")
    if sim.spawn_rate <= 0:
        raise ConfigError("Spawn rate must be positive")
    if sim.simulation_duration <= 0:
        raise ConfigError("Simulation duration must be positive")

    if not cars.car_types:
        raise ConfigError("At least one car type must be defined")
    total = sum(ct.weight for ct in cars.car_types)
    if total != WEIGHT_TOTAL:
        raise ConfigError(f"Car type weights must sum to {WEIGHT_TOTAL}, got {total}")
    for ct in cars.car_types:
        if ct.length <= 0 or ct.width <= 0:
            raise ConfigError(f"Car type {ct.id!r} dimensions must be positive")
        if ct.max_acceleration <= 0 or ct.max_deceleration <= 0:
            raise ConfigError(f"Car type {ct.id!r} acceleration values must be positive")
        if ct.preferred_speed <= 0:
            raise ConfigError(f"Car type {ct.id!r} preferred speed must be positive")

    if not cars.behaviors:
        raise ConfigError("At least one behavior must be defined")
    total = sum(b.weight for b in cars.behaviors.values())
    if total != WEIGHT_TOTAL:
        raise ConfigError(f"Behavior weights must sum to {WEIGHT_TOTAL}, got {total}")
    for name, b in cars.behaviors.items():
        if b.following_distance_factor <= 0:
            raise ConfigError(f"Following distance factor for {name!r} must be positive")
        if b.lane_change_frequency < 0:
            raise ConfigError(f"Lane change frequency for {name!r} must be non-negative")
        if b.speed_variance <= 0:
            raise ConfigError(f"Speed variance for {name!r} must be positive")
        if b.reaction_time <= 0:
            raise ConfigError(f"Reaction time for {name!r} must be positive")
        if not 0 <= b.exit_probability <= 1:
            raise ConfigError(f"Exit probability for {name!r} must be in range [0, 1]")

    ca = cars.collision_avoidance
    if ca.safety_margin < 0:
        raise ConfigError("Safety margin must be non-negative")
    if ca.emergency_brake_distance <= 0 or ca.warning_distance <= 0:
        raise ConfigError("Brake distances must be positive")
    if ca.emergency_brake_distance >= ca.warning_distance:
        raise ConfigError("Emergency brake distance must be less than warning distance")

    for iv in cars.entry_intervals:
        if iv.min_interval <= 0 or iv.max_interval < iv.min_interval:
            raise ConfigError(
                f"Entry interval for {iv.entry_id!r} must satisfy 0 < min <= max"
            )


def validate(config: SimulationConfig) -> None:
    """Validate both halves plus the references between them."""
    validate_route(config.route)
    validate_cars(config.cars)
    entry_ids = {e.id for e in config.route.entries}
    for iv in config.cars.entry_intervals:
        if iv.entry_id not in entry_ids:
            raise ConfigError(f"Entry interval references unknown entry {iv.entry_id!r}")


# ── Loading ──────────────────────────────────────────────────────────────────

PathLike = Union[str, Path]


def _read_yaml(path: PathLike) -> Dict[str, Any]:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(doc, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return doc


def load_route(path: PathLike) -> RouteConfig:
    route = route_from_dict(_read_yaml(path))
    validate_route(route)
    return route


def load_cars(path: PathLike) -> CarsConfig:
    cars = cars_from_dict(_read_yaml(path))
    validate_cars(cars)
    return cars


def load_config(route_path: PathLike, cars_path: PathLike) -> SimulationConfig:
    """Load, build and validate the route and cars YAML documents.

    Raises
    ------
    ConfigError
        If either file is unreadable, malformed or inconsistent.
    """
    config = SimulationConfig(
        route=route_from_dict(_read_yaml(route_path)),
        cars=cars_from_dict(_read_yaml(cars_path)),
    )
    validate(config)
    log.info("Loaded route %r (%s, %d lanes) and %d car types / %d behaviors",
             config.route.name, config.route.geometry.type,
             config.route.geometry.lane_count,
             len(config.cars.car_types), len(config.cars.behaviors))
    return config

