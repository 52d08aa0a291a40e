"""
traffic_sim/network.py
======================
Road-network topology for the traffic engine.

Every lane is one of two shapes:

* **circular**: a circle around ``(cx, cy)`` with a fixed ``radius`` and
  turn direction ``sigma`` (+1 counter-clockwise, -1 clockwise).  Cars
  are located by their angle around the centre.
* **straight**: a directed line ``origin + s * u + lateral * n`` where
  ``u`` is the cardinal travel direction and ``n`` its right-hand
  normal.  Cars are located by ``s``.

A topology is a :class:`LaneTable` (one row per 1-based lane number)
plus the lane-adjacency rules.  :class:`DonutNetwork` is a ring of
concentric circular lanes; :class:`CloverleafNetwork` is four one-way
carriageways crossing at the centre plus four clockwise loop ramps, each
tangent to the outermost lane of the carriageway it feeds.

The table is the read-only route record shared with the numeric kernel
(:mod:`traffic_sim.kernel`); the methods below answer the host-side
per-car queries used by spawning, behavior and despawning.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from traffic_sim.config import ConfigError, EntryPoint, ExitPoint, RouteConfig
from traffic_sim.state import Car

CIRCULAR: int = 0
STRAIGHT: int = 1

TWO_PI: float = 2.0 * math.pi

# Cardinal carriageways: (travel direction u, label).  The right-hand
# normal n = (uy, -ux) puts each group on the correct side of the median.
_CARRIAGEWAYS: Tuple[Tuple[Tuple[float, float], str], ...] = (
    ((0.0, -1.0), "southbound"),
    ((0.0, 1.0), "northbound"),
    ((-1.0, 0.0), "westbound"),
    ((1.0, 0.0), "eastbound"),
)


def wrap_angle(theta: float) -> float:
    """Wrap to ``(-pi, pi]``."""
    theta = math.fmod(theta + math.pi, TWO_PI)
    if theta <= 0.0:
        theta += TWO_PI
    return theta - math.pi


# ── Lane table ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LaneTable:
    """Struct-of-arrays lane geometry, indexed by lane number (row 0 unused).

    Circular rows use ``cx, cy, radius, sigma``; straight rows use
    ``ox, oy, ux, uy, nx, ny, lateral, half_length``.  Loop ramps carry a
    ``merge_lane`` (0 for none), the world ``merge_angle`` around their
    centre where they touch that lane, and the ``merge_s`` coordinate of
    the touch point on it.
    """

    kind: np.ndarray
    cx: np.ndarray
    cy: np.ndarray
    radius: np.ndarray
    sigma: np.ndarray
    ox: np.ndarray
    oy: np.ndarray
    ux: np.ndarray
    uy: np.ndarray
    nx: np.ndarray
    ny: np.ndarray
    lateral: np.ndarray
    half_length: np.ndarray
    merge_lane: np.ndarray
    merge_angle: np.ndarray
    merge_s: np.ndarray

    @classmethod
    def allocate(cls, lane_count: int) -> "LaneTable":
        n = lane_count + 1
        floats = {name: np.zeros(n, dtype=np.float64) for name in (
            "cx", "cy", "radius", "sigma", "ox", "oy", "ux", "uy", "nx", "ny",
            "lateral", "half_length", "merge_angle", "merge_s",
        )}
        return cls(
            kind=np.zeros(n, dtype=np.int64),
            merge_lane=np.zeros(n, dtype=np.int64),
            **floats,
        )

    def set_circular(self, lane: int, cx: float, cy: float, radius: float,
                     sigma: float) -> None:
        self.kind[lane] = CIRCULAR
        self.cx[lane] = cx
        self.cy[lane] = cy
        self.radius[lane] = radius
        self.sigma[lane] = sigma

    def set_straight(self, lane: int, ox: float, oy: float,
                     u: Tuple[float, float], lateral: float,
                     half_length: float) -> None:
        self.kind[lane] = STRAIGHT
        self.ox[lane] = ox
        self.oy[lane] = oy
        self.ux[lane], self.uy[lane] = u
        self.nx[lane], self.ny[lane] = u[1], -u[0]
        self.lateral[lane] = lateral
        self.half_length[lane] = half_length


# ── Road network ─────────────────────────────────────────────────────────────

class RoadNetwork:
    """Geometry queries shared by both topologies.

    Subclasses fill :attr:`lanes` and implement :meth:`adjacent_lanes`
    and :meth:`lane_group`.
    """

    geometry_type: str = ""

    def __init__(self, route: RouteConfig) -> None:
        self.route = route
        self.lane_count: int = route.geometry.lane_count
        self.lanes = LaneTable.allocate(self.lane_count)

    # ── topology (per subclass) ───────────────────────────────────────────

    def adjacent_lanes(self, lane: int) -> List[int]:
        raise NotImplementedError

    def lane_group(self, lane: int) -> Tuple[int, ...]:
        """Lanes reachable from *lane* through lane changes (itself included)."""
        raise NotImplementedError

    # ── lane lookup ───────────────────────────────────────────────────────

    def check_lane(self, lane: int) -> int:
        if not 1 <= lane <= self.lane_count:
            raise ValueError(
                f"Lane {lane} is outside this {self.geometry_type} network "
                f"(1-{self.lane_count})"
            )
        return lane

    def is_circular(self, lane: int) -> bool:
        return int(self.lanes.kind[self.check_lane(lane)]) == CIRCULAR

    def coordinate(self, lane: int, x: float, y: float) -> float:
        """Angle (rad) around the lane centre, or ``s`` along a straight lane."""
        t = self.lanes
        if self.is_circular(lane):
            return math.atan2(y - t.cy[lane], x - t.cx[lane])
        return float((x - t.ox[lane]) * t.ux[lane] + (y - t.oy[lane]) * t.uy[lane])

    def point_at(self, lane: int, coord: float) -> Tuple[float, float]:
        t = self.lanes
        if self.is_circular(lane):
            r = t.radius[lane]
            return (float(t.cx[lane] + r * math.cos(coord)),
                    float(t.cy[lane] + r * math.sin(coord)))
        lat = t.lateral[lane]
        return (float(t.ox[lane] + coord * t.ux[lane] + lat * t.nx[lane]),
                float(t.oy[lane] + coord * t.uy[lane] + lat * t.ny[lane]))

    def tangent_at(self, lane: int, coord: float) -> Tuple[float, float]:
        """Unit direction of travel."""
        t = self.lanes
        if self.is_circular(lane):
            sigma = t.sigma[lane]
            return (float(-sigma * math.sin(coord)), float(sigma * math.cos(coord)))
        return (float(t.ux[lane]), float(t.uy[lane]))

    def entry_pose(self, entry: EntryPoint) -> Tuple[float, float, float, float]:
        """World ``(x, y, tx, ty)`` of an entry: position and unit tangent."""
        lane = self.check_lane(entry.lane)
        coord = math.radians(entry.angle) if self.is_circular(lane) else entry.offset
        x, y = self.point_at(lane, coord)
        tx, ty = self.tangent_at(lane, coord)
        return x, y, tx, ty

    # ── distances ─────────────────────────────────────────────────────────

    def along_lane_distance(self, lane: int, car: Car, other: Car) -> float:
        """Unsigned along-lane distance between two cars, measured on *lane*."""
        a = self.coordinate(lane, car.x, car.y)
        b = self.coordinate(lane, other.x, other.y)
        if self.is_circular(lane):
            return abs(wrap_angle(b - a)) * float(self.lanes.radius[lane])
        return abs(b - a)

    def distance_ahead(self, lane: int, x: float, y: float, car: Car) -> float:
        """Along-lane distance from ``(x, y)`` forward to *car*.

        ``inf`` when *car* is level with or behind the point, or more than
        half a lap ahead on a circular lane.
        """
        a = self.coordinate(lane, x, y)
        b = self.coordinate(lane, car.x, car.y)
        if self.is_circular(lane):
            ahead = (float(self.lanes.sigma[lane]) * (b - a)) % TWO_PI
            if 0.0 < ahead < math.pi:
                return ahead * float(self.lanes.radius[lane])
            return math.inf
        return b - a if b > a else math.inf

    def exit_offset(self, car: Car, ex: ExitPoint) -> float:
        """Unsigned offset from *car* to *ex* on the car's lane.

        Degrees on circular lanes, metres on straight ones.
        """
        lane = car.current_lane
        coord = self.coordinate(lane, car.x, car.y)
        if self.is_circular(lane):
            return abs(math.degrees(wrap_angle(math.radians(ex.angle) - coord)))
        return abs(ex.offset - coord)

    def near_exit(self, car: Car, ex: ExitPoint, tolerance_deg: float,
                  factor: float = 1.0) -> bool:
        """True when *car* is on the exit's lane and within tolerance of it.

        Circular lanes compare against ``tolerance_deg``; straight lanes
        against ``ex.exit_distance * factor`` metres.
        """
        if car.current_lane != ex.lane:
            return False
        offset = self.exit_offset(car, ex)
        if self.is_circular(car.current_lane):
            return offset <= tolerance_deg
        return offset <= ex.exit_distance * factor

    def has_left_network(self, car: Car) -> bool:
        """True once a car has driven past the end of a straight lane."""
        lane = car.current_lane
        if self.is_circular(lane):
            return False
        return self.coordinate(lane, car.x, car.y) > self.lanes.half_length[lane]


class DonutNetwork(RoadNetwork):
    """Concentric counter-clockwise ring lanes; lane 1 is innermost."""

    geometry_type = "donut"

    def __init__(self, route: RouteConfig) -> None:
        super().__init__(route)
        geo = route.geometry
        for lane in range(1, self.lane_count + 1):
            self.lanes.set_circular(lane, geo.center_x, geo.center_y,
                                    self.lane_radius(lane), 1.0)

    def lane_radius(self, lane: int) -> float:
        geo = self.route.geometry
        return geo.inner_radius + geo.lane_width / 2.0 + (lane - 1) * geo.lane_width

    def adjacent_lanes(self, lane: int) -> List[int]:
        self.check_lane(lane)
        return [l for l in (lane - 1, lane + 1) if 1 <= l <= self.lane_count]

    def lane_group(self, lane: int) -> Tuple[int, ...]:
        self.check_lane(lane)
        return tuple(range(1, self.lane_count + 1))


class CloverleafNetwork(RoadNetwork):
    """Four straight one-way carriageways plus four clockwise loop ramps.

    Highway lanes are numbered group by group (southbound, northbound,
    westbound, eastbound), innermost first; the last lane of each group
    is its merge lane.  Ramp ``k`` (lane ``highway_lanes + k + 1``) sits
    in the downstream right-hand quadrant of group ``k`` and merges into
    that group's merge lane.
    """

    geometry_type = "cloverleaf"

    def __init__(self, route: RouteConfig) -> None:
        super().__init__(route)
        geo = route.geometry
        self.highway_lanes: int = self.lane_count - 4
        self.lanes_per_group: int = self.highway_lanes // 4
        half_length = geo.highway_length / 2.0
        median = geo.highway_width / 2.0
        outer = median + self.lanes_per_group * geo.lane_width
        radius = geo.loop_radius
        if outer + 2.0 * radius >= half_length:
            raise ConfigError(
                f"highway_length {geo.highway_length} is too short for loop "
                f"ramps of radius {radius} beyond the crossing carriageways"
            )

        for g, (u, _label) in enumerate(_CARRIAGEWAYS):
            for i in range(self.lanes_per_group):
                lateral = median + (i + 0.5) * geo.lane_width
                self.lanes.set_straight(g * self.lanes_per_group + i + 1,
                                        geo.center_x, geo.center_y, u,
                                        lateral, half_length)

            merge = self.merge_lane(g)
            t = self.lanes
            s_touch = outer + radius
            px, py = self.point_at(merge, s_touch)
            nx, ny = float(t.nx[merge]), float(t.ny[merge])
            cx, cy = px + radius * nx, py + radius * ny
            # Direction of travel at the touch point must equal u.
            sigma = math.copysign(1.0, (-nx) * u[1] - (-ny) * u[0])
            ramp = self.highway_lanes + g + 1
            t.set_circular(ramp, cx, cy, radius, sigma)
            t.merge_lane[ramp] = merge
            t.merge_angle[ramp] = math.atan2(py - cy, px - cx)
            t.merge_s[ramp] = s_touch

    def merge_lane(self, group: int) -> int:
        return (group + 1) * self.lanes_per_group

    def is_ramp(self, lane: int) -> bool:
        return self.check_lane(lane) > self.highway_lanes

    def group_of(self, lane: int) -> int:
        if self.is_ramp(lane):
            return lane - self.highway_lanes - 1
        return (lane - 1) // self.lanes_per_group

    def adjacent_lanes(self, lane: int) -> List[int]:
        if self.is_ramp(lane):
            return []
        group = self.lane_group(lane)
        return [l for l in (lane - 1, lane + 1) if l in group]

    def lane_group(self, lane: int) -> Tuple[int, ...]:
        if self.is_ramp(lane):
            return (lane,)
        first = self.group_of(lane) * self.lanes_per_group + 1
        return tuple(range(first, first + self.lanes_per_group))


_TOPOLOGIES = {
    "donut": DonutNetwork,
    "cloverleaf": CloverleafNetwork,
}


def build_network(route: RouteConfig) -> RoadNetwork:
    """Instantiate the topology named by ``route.geometry.type``.

    Raises
    ------
    ConfigError
        For an unknown geometry type or an entry/exit lane outside it.
    """
    try:
        cls = _TOPOLOGIES[route.geometry.type]
    except KeyError:
        raise ConfigError(
            f"Unknown geometry type {route.geometry.type!r}; "
            f"expected one of {tuple(_TOPOLOGIES)}"
        ) from None
    network = cls(route)
    for point in tuple(route.entries) + tuple(route.exits):
        if not 1 <= point.lane <= network.lane_count:
            raise ConfigError(
                f"{point.id!r} lane {point.lane} is outside the network "
                f"(1-{network.lane_count})"
            )
    return network
