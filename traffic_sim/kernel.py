"""
traffic_sim/kernel.py
=====================
The kinematics kernel, defined once and shared by both compute backends.

:func:`step` advances the rows ``start:stop`` of a :class:`CarBatch`
(struct-of-arrays copy of every car) by one tick.  It only *reads* the
batch and the :class:`RouteParams` record and returns fresh arrays, so
any number of disjoint row ranges can run concurrently and the result is
independent of how the rows were split.  The sequential backend calls it
once over every row and writes results back in a plain loop; the parallel
backend dispatches it over row chunks.

Per row:

1. nearest car ahead in the same lane (and the target lane during a
   lane change, and the merge lane beyond a loop ramp's touch point), as
   arc length or linear offset;
2. target speed shaped by emergency / warning / following distance;
3. acceleration bounded by the car's limits;
4. integration along the lane, lane-change interpolation, ramp merges;
5. heading from the new velocity.

:func:`apply_result` writes one row back onto its :class:`Car`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from traffic_sim.config import CarsConfig, RouteConfig
from traffic_sim.network import CIRCULAR, TWO_PI, LaneTable, RoadNetwork
from traffic_sim.state import Car
from traffic_sim.traffic_policy import TrafficPolicy, following_distance_m


@dataclass(frozen=True)
class RouteParams:
    """Read-only per-run constants handed to every kernel invocation."""

    lanes: LaneTable
    lane_count: int
    speed_limit: float
    min_speed: float
    following_distance: float
    lane_change_time: float
    safety_margin: float
    emergency_brake_distance: float
    warning_distance: float
    stationary_speed: float = 0.1

    @classmethod
    def build(
        cls,
        route: RouteConfig,
        cars: CarsConfig,
        network: RoadNetwork,
        policy: Optional[TrafficPolicy] = None,
    ) -> "RouteParams":
        policy = policy or TrafficPolicy()
        rules = route.traffic_rules
        ca = cars.collision_avoidance
        return cls(
            lanes=network.lanes,
            lane_count=network.lane_count,
            speed_limit=rules.speed_limit,
            min_speed=rules.min_speed,
            following_distance=rules.following_distance,
            lane_change_time=rules.lane_change_time,
            safety_margin=ca.safety_margin,
            emergency_brake_distance=ca.emergency_brake_distance,
            warning_distance=ca.warning_distance,
            stationary_speed=policy.stationary_speed,
        )


# ── Car batch ────────────────────────────────────────────────────────────────

_FLOAT_FIELDS = ("x", "y", "vx", "vy", "progress", "max_acc", "max_dec",
                 "desired", "fdf")
_INT_FIELDS = ("lane", "target")


class CarBatch:
    """Struct-of-arrays view of the car population.

    Arrays are allocated once for ``capacity`` rows; :meth:`load` packs
    the current cars into the first ``size`` rows.  ``target`` uses 0 for
    "no lane change pending".
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"CarBatch capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.size = 0
        self._buffers = {name: np.zeros(capacity, dtype=np.float64)
                         for name in _FLOAT_FIELDS}
        self._buffers.update({name: np.zeros(capacity, dtype=np.int64)
                              for name in _INT_FIELDS})
        self._bind()

    def _bind(self) -> None:
        for name, buf in self._buffers.items():
            setattr(self, name, buf[:self.size])

    @classmethod
    def from_cars(cls, cars: Iterable[Car], lane_count: int) -> "CarBatch":
        cars = list(cars)
        batch = cls(max(1, len(cars)))
        batch.load(cars, lane_count)
        return batch

    def load(self, cars: Iterable[Car], lane_count: int) -> None:
        """Pack *cars* into the leading rows.

        Raises
        ------
        ValueError
            If there are more cars than rows or a lane is outside
            ``1..lane_count``.
        """
        cars = list(cars)
        if len(cars) > self.capacity:
            raise ValueError(
                f"{len(cars)} cars do not fit in a batch of {self.capacity}"
            )
        self.size = len(cars)
        self._bind()
        for i, car in enumerate(cars):
            self.x[i] = car.x
            self.y[i] = car.y
            self.vx[i] = car.vx
            self.vy[i] = car.vy
            self.progress[i] = car.lane_change_progress
            self.max_acc[i] = car.max_acceleration
            self.max_dec[i] = car.max_deceleration
            self.desired[i] = car.behavior.target_speed
            self.fdf[i] = car.behavior.following_distance_factor
            self.lane[i] = car.current_lane
            self.target[i] = car.target_lane or 0
        bad = (self.lane < 1) | (self.lane > lane_count) | \
              (self.target < 0) | (self.target > lane_count)
        if np.any(bad):
            i = int(np.argmax(bad))
            raise ValueError(
                f"Car {cars[i].id} has lane {cars[i].current_lane} / target "
                f"{cars[i].target_lane} outside the network (1-{lane_count})"
            )


@dataclass
class StepResult:
    """Kernel output for a contiguous row range."""

    x: np.ndarray
    y: np.ndarray
    vx: np.ndarray
    vy: np.ndarray
    ax: np.ndarray
    ay: np.ndarray
    heading: np.ndarray
    lane: np.ndarray
    target: np.ndarray
    progress: np.ndarray


# ── Kernel ───────────────────────────────────────────────────────────────────

def front_gaps(batch: CarBatch, params: RouteParams, start: int, stop: int):
    """Distance to and speed of the nearest car ahead for rows ``start:stop``.

    Returns ``(gap, lead_speed)``; ``gap`` is ``inf`` with no car ahead.
    """
    t = params.lanes
    rows = slice(start, stop)
    lane = batch.lane[rows]
    target = batch.target[rows]
    xi, yi = batch.x[rows], batch.y[rows]

    # Every candidate j measured in the frame of car i's lane.
    cx, cy = t.cx[lane][:, None], t.cy[lane][:, None]
    theta_i = np.arctan2(yi[:, None] - cy, xi[:, None] - cx)
    theta_j = np.arctan2(batch.y[None, :] - cy, batch.x[None, :] - cx)
    diff = np.mod(t.sigma[lane][:, None] * (theta_j - theta_i), TWO_PI)
    radius = np.hypot(xi[:, None] - cx, yi[:, None] - cy)
    arc = np.where((diff > 0.0) & (diff < np.pi), diff * radius, np.inf)

    ds = ((batch.x[None, :] - xi[:, None]) * t.ux[lane][:, None]
          + (batch.y[None, :] - yi[:, None]) * t.uy[lane][:, None])
    linear = np.where(ds > 0.0, ds, np.inf)

    gap = np.where((t.kind[lane] == CIRCULAR)[:, None], arc, linear)
    other_lane = batch.lane[None, :]
    candidate = (other_lane == lane[:, None]) | \
                ((target[:, None] != 0) & (other_lane == target[:, None]))
    gap = np.where(candidate, gap, np.inf)

    # Loop-ramp rows also see merge-lane cars past the touch point, at
    # (arc left to the touch point) + (their s beyond it).
    merge = t.merge_lane[lane]
    ramp = (t.kind[lane] == CIRCULAR) & (merge > 0)
    if np.any(ramp):
        theta0 = np.arctan2(yi - t.cy[lane], xi - t.cx[lane])
        past = np.mod(t.sigma[lane] * (theta0 - t.merge_angle[lane]), TWO_PI)
        to_merge = (TWO_PI - past) * np.hypot(xi - t.cx[lane], yi - t.cy[lane])
        s_j = ((batch.x[None, :] - t.ox[merge][:, None]) * t.ux[merge][:, None]
               + (batch.y[None, :] - t.oy[merge][:, None]) * t.uy[merge][:, None])
        beyond = s_j - t.merge_s[lane][:, None]
        on_merge = ramp[:, None] & (other_lane == merge[:, None]) & (beyond >= 0.0)
        gap = np.where(on_merge, to_merge[:, None] + beyond, gap)

    own = np.arange(stop - start)
    gap[own, own + start] = np.inf

    nearest = np.argmin(gap, axis=1)
    dist = gap[own, nearest]
    lead_speed = np.hypot(batch.vx[nearest], batch.vy[nearest])
    return dist, lead_speed


def target_speeds(batch: CarBatch, params: RouteParams, start: int, stop: int,
                  gap: np.ndarray, lead_speed: np.ndarray) -> np.ndarray:
    """Collision-avoidance shaping of each row's desired speed."""
    rows = slice(start, stop)
    desired = batch.desired[rows]
    speed = np.hypot(batch.vx[rows], batch.vy[rows])
    e = params.emergency_brake_distance
    w = params.warning_distance
    follow = following_distance_m(speed, params.following_distance,
                                  batch.fdf[rows], params.safety_margin)

    target = np.clip(desired, params.min_speed, params.speed_limit)
    target = np.where(gap < follow, np.minimum(lead_speed, desired), target)
    # inf gaps produce 0 * inf in the masked-out branch.
    with np.errstate(invalid="ignore"):
        band = desired * (gap - e) / (w - e)
    target = np.where(gap < w, band, target)
    return np.where(gap < e, 0.0, target)


def step(batch: CarBatch, params: RouteParams, dt: float,
         start: int = 0, stop: Optional[int] = None) -> StepResult:
    """Advance rows ``start:stop`` of *batch* by *dt* seconds."""
    if stop is None:
        stop = batch.size
    t = params.lanes
    rows = slice(start, stop)
    lane = batch.lane[rows]
    target = batch.target[rows]
    x, y = batch.x[rows], batch.y[rows]
    vx, vy = batch.vx[rows], batch.vy[rows]

    # ── speed ─────────────────────────────────────────────────────────
    gap, lead_speed = front_gaps(batch, params, start, stop)
    wanted = target_speeds(batch, params, start, stop, gap, lead_speed)
    speed = np.hypot(vx, vy)
    dv = (wanted - speed) / dt
    accel = np.where(dv > 0.0,
                     np.minimum(dv, batch.max_acc[rows]),
                     np.maximum(dv, -batch.max_dec[rows]))
    new_speed = np.maximum(0.0, speed + accel * dt)
    travel = new_speed * dt

    # ── lane change progress ──────────────────────────────────────────
    changing = target != 0
    progress = np.where(changing,
                        np.minimum(1.0, batch.progress[rows] + dt / params.lane_change_time),
                        batch.progress[rows])
    dest = np.where(changing, target, lane)

    # ── circular lanes ────────────────────────────────────────────────
    cx, cy = t.cx[lane], t.cy[lane]
    sigma = t.sigma[lane]
    r = t.radius[lane] + (t.radius[dest] - t.radius[lane]) * progress
    r = np.where(r > 0.0, r, 1.0)
    theta = np.arctan2(y - cy, x - cx)
    swept = travel / r
    theta_new = theta + sigma * swept
    circ_x = cx + r * np.cos(theta_new)
    circ_y = cy + r * np.sin(theta_new)
    circ_tx = -sigma * np.sin(theta_new)
    circ_ty = sigma * np.cos(theta_new)

    # ── straight lanes ────────────────────────────────────────────────
    ux, uy = t.ux[lane], t.uy[lane]
    s = (x - t.ox[lane]) * ux + (y - t.oy[lane]) * uy
    s_new = s + travel
    lateral = t.lateral[lane] + (t.lateral[dest] - t.lateral[lane]) * progress
    line_x = t.ox[lane] + s_new * ux + lateral * t.nx[lane]
    line_y = t.oy[lane] + s_new * uy + lateral * t.ny[lane]

    circular = t.kind[lane] == CIRCULAR
    new_x = np.where(circular, circ_x, line_x)
    new_y = np.where(circular, circ_y, line_y)
    tan_x = np.where(circular, circ_tx, ux)
    tan_y = np.where(circular, circ_ty, uy)
    new_lane = lane.copy()

    # ── ramp merges ───────────────────────────────────────────────────
    merge = t.merge_lane[lane]
    past = np.mod(sigma * (theta - t.merge_angle[lane]), TWO_PI)
    remaining = TWO_PI - past
    merging = circular & (merge > 0) & (swept >= remaining)
    if np.any(merging):
        m = np.where(merging, merge, lane)
        s_m = t.merge_s[lane] + (swept - remaining) * r
        new_x = np.where(merging, t.ox[m] + s_m * t.ux[m] + t.lateral[m] * t.nx[m], new_x)
        new_y = np.where(merging, t.oy[m] + s_m * t.uy[m] + t.lateral[m] * t.ny[m], new_y)
        tan_x = np.where(merging, t.ux[m], tan_x)
        tan_y = np.where(merging, t.uy[m], tan_y)
        new_lane = np.where(merging, merge, new_lane)

    # ── lane change completion ────────────────────────────────────────
    done = changing & (progress >= 1.0)
    new_lane = np.where(done, target, new_lane)
    new_target = np.where(done, 0, target)
    progress = np.where(done, 0.0, progress)

    new_vx = new_speed * tan_x
    new_vy = new_speed * tan_y
    heading = np.where(new_speed > params.stationary_speed,
                       np.arctan2(new_vy, new_vx),
                       np.arctan2(tan_y, tan_x))
    return StepResult(
        x=new_x,
        y=new_y,
        vx=new_vx,
        vy=new_vy,
        ax=(new_vx - vx) / dt,
        ay=(new_vy - vy) / dt,
        heading=heading,
        lane=new_lane,
        target=new_target,
        progress=progress,
    )


def apply_result(car: Car, result: StepResult, row: int) -> None:
    """Copy row *row* of *result* onto *car* and record its speed."""
    car.x = float(result.x[row])
    car.y = float(result.y[row])
    car.vx = float(result.vx[row])
    car.vy = float(result.vy[row])
    car.ax = float(result.ax[row])
    car.ay = float(result.ay[row])
    car.heading = float(result.heading[row])
    car.current_lane = int(result.lane[row])
    target = int(result.target[row])
    car.target_lane = target or None
    car.lane_change_progress = float(result.progress[row])
    car.update_speed_history()
