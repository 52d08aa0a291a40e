#!/usr/bin/env python3
"""
traffic_sim/behavior.py
=======================
Stochastic driver decisions.

:class:`BehaviorEngine` owns one :class:`random.Random` stream and
consumes it in car iteration order, so a given seed always yields the
same sequence of decisions whichever compute backend runs the physics.
Every tick it first collects a :class:`Decision` per car from the
unchanged state and only then writes the intents back:

* **speed intent**: ``preferred_speed * speed_variance * noise``;
* **lane-change intent**: eligibility, probability, then a safety check
  against the target lane;
* **exit intent**: one probability draw per pass through an exit window.

Nothing here moves a car or removes one.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from traffic_sim.config import CarsConfig, DriverBehavior, RouteConfig
from traffic_sim.network import RoadNetwork
from traffic_sim.state import BehaviorState, Car, SimulationState
from traffic_sim.traffic_policy import TrafficPolicy

log = logging.getLogger("behavior")

# Used when neither the requested profile nor "normal" is configured.
_DEFAULT_BEHAVIOR = DriverBehavior(
    name="default",
    weight=100,
    following_distance_factor=1.0,
    lane_change_frequency=0.8,
    speed_variance=1.0,
    reaction_time=1.2,
    exit_probability=0.25,
)


@dataclass
class Decision:
    """Intents computed for one car during the gather phase."""

    target_speed: float
    target_lane: Optional[int] = None
    exit_intent: bool = False
    exit_considered: Optional[str] = None


class BehaviorEngine:
    """Per-tick intents for every car, drawn from one ordered PRNG stream.

    Parameters
    ----------
    route, cars : RouteConfig, CarsConfig
        Validated configuration.
    network : RoadNetwork
        Supplies adjacent lanes and along-lane distances.
    rng : random.Random
        Owned exclusively by this engine.
    policy : TrafficPolicy, optional
        Exit windows and lane-change safety distance.
    """

    def __init__(
        self,
        route: RouteConfig,
        cars: CarsConfig,
        network: RoadNetwork,
        rng: random.Random,
        policy: Optional[TrafficPolicy] = None,
    ) -> None:
        self.route = route
        self.cars = cars
        self.network = network
        self.rng = rng
        self.policy = policy or TrafficPolicy()

    # ── per tick ──────────────────────────────────────────────────────────

    def update(self, state: SimulationState) -> None:
        cars = state.car_list()
        decisions = [self.decide(car, cars, state) for car in cars]
        for car, decision in zip(cars, decisions):
            self.apply(car, decision, state.time)

    def decide(self, car: Car, cars: Sequence[Car], state: SimulationState) -> Decision:
        """Gather phase for one car; reads state, mutates nothing but the PRNG."""
        decision = Decision(target_speed=self.speed_intent(car))
        decision.target_lane = self.lane_change_intent(car, cars, state)
        self._exit_intent(car, decision)
        return decision

    def apply(self, car: Car, decision: Decision, now: float) -> None:
        car.behavior.target_speed = decision.target_speed
        if decision.target_lane is not None:
            log.debug("car %d starts lane change %d -> %d",
                      car.id, car.current_lane, decision.target_lane)
            car.target_lane = decision.target_lane
            car.lane_change_progress = 0.0
            car.behavior.last_lane_change_time = now
        if decision.exit_intent:
            log.debug("car %d (%s) intends to exit", car.id, car.behavior_type)
            car.marked_for_exit = True
            car.exit_time = now
        car.exit_considered = decision.exit_considered

    # ── speed ─────────────────────────────────────────────────────────────

    def speed_intent(self, car: Car) -> float:
        """Noisy desired speed clamped to the route's legal range."""
        variance = car.behavior.speed_variance
        noise = 1.0
        if variance != 1.0:
            noise = self.rng.gauss(1.0, abs(variance - 1.0) * 0.1)
        rules = self.route.traffic_rules
        speed = car.preferred_speed * variance * noise
        return min(max(speed, rules.min_speed), rules.speed_limit)

    # ── lane changes ──────────────────────────────────────────────────────

    def lane_change_intent(
        self, car: Car, cars: Sequence[Car], state: SimulationState,
    ) -> Optional[int]:
        """Return the lane *car* should start moving to, or ``None``."""
        if car.target_lane is not None:
            return None
        freq = car.behavior.lane_change_frequency
        if freq <= 0.0:
            return None
        if state.time - car.behavior.last_lane_change_time < 60.0 / freq:
            return None
        options = self.network.adjacent_lanes(car.current_lane)
        if not options:
            return None
        if self.rng.random() >= freq / 60.0 * state.dt:
            return None

        if car.marked_for_exit:
            lane = self._lane_toward_exit(car, options)
            if lane is None:
                return None
        elif len(options) == 1:
            lane = options[0]
        else:
            lane = options[self.rng.randrange(len(options))]

        if not self.lane_is_clear(car, lane, cars):
            log.debug("car %d lane change to %d rejected: lane occupied",
                      car.id, lane)
            return None
        return lane

    def lane_is_clear(self, car: Car, lane: int, cars: Sequence[Car]) -> bool:
        """True when no other car in (or entering) *lane* is within the
        safety distance of *car*, measured along that lane."""
        safety = car.length + self.policy.lane_change_safety_extra_m
        for other in cars:
            if other is car:
                continue
            if other.current_lane != lane and other.target_lane != lane:
                continue
            if self.network.along_lane_distance(lane, car, other) < safety:
                return False
        return True

    def _lane_toward_exit(self, car: Car, options: List[int]) -> Optional[int]:
        group = self.network.lane_group(car.current_lane)
        exit_lanes = [ex.lane for ex in self.route.exits if ex.lane in group]
        if not exit_lanes or car.current_lane in exit_lanes:
            return None

        def distance(lane: int) -> int:
            return min(abs(lane - e) for e in exit_lanes)

        best = min(options, key=distance)
        if distance(best) >= distance(car.current_lane):
            return None
        return best

    # ── exits ─────────────────────────────────────────────────────────────

    def _exit_intent(self, car: Car, decision: Decision) -> None:
        """One draw per pass through the intent window of an exit on the car's lane."""
        for ex in self.route.exits:
            if not self.network.near_exit(car, ex,
                                          self.policy.exit_intent_window_deg,
                                          self.policy.exit_intent_window_factor):
                continue
            decision.exit_considered = ex.id
            if car.marked_for_exit or car.exit_considered == ex.id:
                return
            decision.exit_intent = self.rng.random() < car.behavior.exit_probability
            return

    # ── spawn-time selection ──────────────────────────────────────────────

    def select_behavior(self) -> str:
        """Weighted pick of a profile name."""
        profiles = list(self.cars.behaviors.values())
        return self._weighted(profiles, [b.weight for b in profiles]).name

    def select_car_type(self):
        """Weighted pick of a :class:`~traffic_sim.config.CarType`."""
        types = list(self.cars.car_types)
        return self._weighted(types, [t.weight for t in types])

    def _weighted(self, items, weights):
        total = sum(weights)
        roll = self.rng.randrange(total)
        for item, weight in zip(items, weights):
            if roll < weight:
                return item
            roll -= weight
        return items[0]

    def resolve_behavior(self, name: str) -> str:
        """Configured profile name to use for *name*.

        Unknown names fall back to ``"normal"`` and then to the built-in
        ``"default"`` profile.
        """
        if name in self.cars.behaviors:
            return name
        fallback = "normal" if "normal" in self.cars.behaviors else _DEFAULT_BEHAVIOR.name
        log.warning("Unknown behavior %r, using %r", name, fallback)
        return fallback

    def create_behavior_state(self, name: str) -> BehaviorState:
        """Fresh :class:`BehaviorState` for profile *name* (see :meth:`resolve_behavior`)."""
        profile = self.cars.behaviors.get(self.resolve_behavior(name), _DEFAULT_BEHAVIOR)
        return BehaviorState(
            following_distance_factor=profile.following_distance_factor,
            lane_change_frequency=profile.lane_change_frequency,
            speed_variance=profile.speed_variance,
            reaction_time=profile.reaction_time,
            exit_probability=profile.exit_probability,
            last_lane_change_time=0.0,
            target_speed=0.0,
        )
