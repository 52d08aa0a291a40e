#!/usr/bin/env python3
"""
traffic_sim/state.py
====================
Entity store for the traffic engine.

:class:`SimulationState` owns every :class:`Car` keyed by its integer id
(dict insertion order is spawn order), plus the clock and the spawn
counters.  It has no behavior of its own beyond bookkeeping: cars are
created and destroyed by :mod:`traffic_sim.traffic`, intent fields are
written by :mod:`traffic_sim.behavior` and kinematic fields by
:mod:`traffic_sim.physics`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SPEED_HISTORY_LEN: int = 3


@dataclass
class BehaviorState:
    """Per-car driver parameters plus the mutable intent fields."""

    following_distance_factor: float = 1.0
    lane_change_frequency: float = 0.8
    """Lane changes per minute."""
    speed_variance: float = 1.0
    reaction_time: float = 1.2
    exit_probability: float = 0.25
    last_lane_change_time: float = 0.0
    target_speed: float = 0.0


@dataclass
class Car:
    """A single vehicle agent.

    Attributes
    ----------
    id : int
        Unique for the whole run, never reused.
    x, y : float
        World-space position in metres.
    vx, vy : float
        Velocity in m/s.
    ax, ay : float
        Acceleration of the last tick in m/s².
    heading : float
        Radians, counter-clockwise from +x.
    current_lane : int
        1-based lane number.
    target_lane : int, optional
        Destination of an in-progress lane change.
    lane_change_progress : float
        0..1 interpolation parameter of the lane change.
    exit_considered : str, optional
        Id of the exit whose intent window the car is inside and has
        already drawn for.  Cleared when the car leaves the window.
    """

    id: int
    x: float
    y: float
    vx: float = 0.0
    vy: float = 0.0
    ax: float = 0.0
    ay: float = 0.0
    heading: float = 0.0

    length: float = 4.5
    width: float = 1.8
    max_acceleration: float = 3.0
    max_deceleration: float = 6.0
    preferred_speed: float = 25.0

    current_lane: int = 1
    target_lane: Optional[int] = None
    lane_change_progress: float = 0.0

    behavior: BehaviorState = field(default_factory=BehaviorState)
    behavior_type: str = "normal"
    car_type: str = "sedan"

    speed_history: List[float] = field(
        default_factory=lambda: [0.0] * SPEED_HISTORY_LEN
    )
    marked_for_exit: bool = False
    spawn_time: float = 0.0
    exit_time: Optional[float] = None
    exit_considered: Optional[str] = None

    @property
    def speed(self) -> float:
        return math.hypot(self.vx, self.vy)

    def update_speed_history(self) -> None:
        """Shift the history left and append the current speed."""
        self.speed_history.pop(0)
        self.speed_history.append(self.speed)

    def average_speed(self) -> float:
        return sum(self.speed_history) / SPEED_HISTORY_LEN

    def distance_to(self, x: float, y: float) -> float:
        return math.hypot(self.x - x, self.y - y)

    def as_dict(self) -> Dict[str, Any]:
        """Plain, read-only view used by snapshots."""
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "vx": self.vx,
            "vy": self.vy,
            "speed": self.speed,
            "heading": self.heading,
            "lane": self.current_lane,
            "target_lane": self.target_lane,
            "lane_change_progress": self.lane_change_progress,
            "behavior_type": self.behavior_type,
            "car_type": self.car_type,
            "length": self.length,
            "width": self.width,
            "marked_for_exit": self.marked_for_exit,
        }


class SimulationState:
    """All cars plus the global clock and counters.

    Invariant: ``active_cars == len(cars)`` after every public call.
    """

    def __init__(self, dt: float) -> None:
        self.cars: Dict[int, Car] = {}
        self.time: float = 0.0
        self.dt: float = dt
        self.total_spawned: int = 0
        self.active_cars: int = 0

    def add_car(self, car: Car) -> None:
        if car.id in self.cars:
            raise ValueError(f"Car id {car.id} is already in use")
        self.cars[car.id] = car
        self.total_spawned += 1
        self.active_cars += 1

    def remove_car(self, car_id: int) -> bool:
        """Remove one car; returns False when the id is unknown."""
        if self.cars.pop(car_id, None) is None:
            return False
        self.active_cars -= 1
        return True

    def get_car(self, car_id: int) -> Optional[Car]:
        return self.cars.get(car_id)

    def car_list(self) -> List[Car]:
        """Cars in spawn order.  The list is a copy; the cars are not."""
        return list(self.cars.values())

    def mark_car_for_exit(self, behavior_type: str) -> bool:
        """Flag the first unflagged car with *behavior_type* for exit.

        Returns whether such a car was found.
        """
        for car in self.cars.values():
            if car.behavior_type == behavior_type and not car.marked_for_exit:
                car.marked_for_exit = True
                car.exit_time = self.time
                return True
        return False

    def behavior_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for car in self.cars.values():
            counts[car.behavior_type] = counts.get(car.behavior_type, 0) + 1
        return counts

    def velocity_distribution(self, num_buckets: int) -> List[int]:
        """Histogram of speeds over ``num_buckets`` equal bins up to the max."""
        buckets = [0] * num_buckets
        if not self.cars or num_buckets <= 0:
            return buckets
        speeds = [car.speed for car in self.cars.values()]
        top = max(speeds)
        if top == 0.0:
            return buckets
        size = top / num_buckets
        for s in speeds:
            buckets[min(int(s / size), num_buckets - 1)] += 1
        return buckets

    def snapshot(self) -> List[Dict[str, Any]]:
        return [car.as_dict() for car in self.cars.values()]
