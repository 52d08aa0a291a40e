#!/usr/bin/env python3
"""
traffic_sim/traffic.py
======================
Car lifecycle: spawning, despawning and the operator side channels.

Per tick :meth:`TrafficManager.update` runs, in order,

1. the :class:`~traffic_sim.behavior.BehaviorEngine` (intents only);
2. **spawning**: one countdown timer per entry.  An expired timer
   spawns when the entry is clear; otherwise, with gap forcing enabled,
   approaching traffic is slowed and the spawn goes ahead once nobody is
   inside the hard floor.  A blocked entry stays *pending* and retries
   every tick, the timer is re-armed only after a successful spawn.  A
   new car never enters faster than it could stop behind the car ahead
   of the entry;
3. **despawning**: cars at a matching exit (see
   :class:`~traffic_sim.traffic_policy.ExitPolicy`), cars that drove off
   the end of a straight lane, and probabilistic eviction of cars whose
   residency exceeds the limit.

The manager is the only component that creates or destroys cars, and the
only owner of car ids.
"""

from __future__ import annotations

import logging
import math
import random
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from traffic_sim.behavior import BehaviorEngine
from traffic_sim.config import CarsConfig, EntryPoint, RouteConfig
from traffic_sim.network import RoadNetwork
from traffic_sim.state import SPEED_HISTORY_LEN, Car, SimulationState
from traffic_sim.traffic_policy import ExitPolicy, TrafficPolicy

log = logging.getLogger("traffic")

# Removal reasons recorded in TrafficManager.removals
EXITED = "exit"
LEFT_NETWORK = "left_network"
EVICTED = "evicted"

_REMOVAL_LOG_LEN = 1000


class TrafficManager:
    """Spawns, steers (through the behavior engine) and removes cars.

    Parameters
    ----------
    route, cars : RouteConfig, CarsConfig
        Validated configuration.
    network : RoadNetwork
        Entry poses, exit proximity and lane ends.
    seed : int, optional
        Seeds the manager's PRNG; the behavior engine's stream is derived
        from it.  ``None`` draws from system entropy.
    policy : TrafficPolicy, optional
        Spawn, gap-forcing, exit and residency constants.
    """

    def __init__(
        self,
        route: RouteConfig,
        cars: CarsConfig,
        network: RoadNetwork,
        seed: Optional[int] = None,
        policy: Optional[TrafficPolicy] = None,
    ) -> None:
        self.route = route
        self.cars = cars
        self.network = network
        self.policy = policy or TrafficPolicy()
        self.rng = random.Random(seed)
        self.behavior = BehaviorEngine(
            route, cars, network,
            random.Random(self.rng.getrandbits(64)),
            self.policy,
        )
        self._next_id: int = 0
        self.spawn_timers: Dict[str, float] = {
            entry.id: self._interval(entry.id) for entry in route.entries
        }
        self.removal_counts: Dict[str, int] = {EXITED: 0, LEFT_NETWORK: 0, EVICTED: 0}
        self.removals: Deque[Tuple[float, int, str]] = deque(maxlen=_REMOVAL_LOG_LEN)
        self.forced_spawns: int = 0

    # ── per tick ──────────────────────────────────────────────────────────

    def update(self, state: SimulationState) -> None:
        self.behavior.update(state)
        self._update_spawning(state)
        self._update_despawning(state)

    # ── spawning ──────────────────────────────────────────────────────────

    def _interval(self, entry_id: str) -> float:
        """Next countdown for *entry_id*: uniform in its interval, else 1/spawn_rate."""
        interval = self.cars.entry_interval(entry_id)
        if interval is None:
            return 1.0 / self.cars.simulation.spawn_rate
        return self.rng.uniform(interval.min_interval, interval.max_interval)

    def _update_spawning(self, state: SimulationState) -> None:
        cap = self.cars.simulation.total_cars
        for entry in self.route.entries:
            self.spawn_timers[entry.id] -= state.dt
            if self.spawn_timers[entry.id] > 0.0:
                continue
            if state.active_cars >= cap:
                self.spawn_timers[entry.id] = self._interval(entry.id)
                continue
            if self._try_spawn(entry, state) is not None:
                self.spawn_timers[entry.id] = self._interval(entry.id)

    def _try_spawn(self, entry: EntryPoint, state: SimulationState) -> Optional[int]:
        x, y, _, _ = self.network.entry_pose(entry)
        if self.nearest_distance(state, x, y) >= self.policy.spawn_clearance_m:
            return self._spawn_at(entry, state, self.spawn_speed(state, x, y))
        if not self.policy.force_spawn_gap:
            log.debug("entry %s blocked, spawn pending", entry.id)
            return None
        if not self.force_gap(entry, state):
            return None
        self.forced_spawns += 1
        car_id = self._spawn_at(entry, state, self.spawn_speed(state, x, y))
        log.info("forced spawn of car %d at entry %s", car_id, entry.id)
        return car_id

    def force_gap(self, entry: EntryPoint, state: SimulationState) -> bool:
        """Slow traffic approaching a blocked entry.

        Cars within ``force_gap_radius_m`` that are moving towards the
        entry get their target speed scaled by ``0.3 + 0.7 * d / R``, and
        inside ``force_gap_brake_zone * R`` an immediate speed cut.
        Returns whether the hard floor around the entry is clear, i.e.
        whether the spawn may go ahead now.
        """
        p = self.policy
        x, y, _, _ = self.network.entry_pose(entry)
        radius = p.force_gap_radius_m
        floor_clear = True
        slowed = 0
        for car in state.car_list():
            d = car.distance_to(x, y)
            if d < p.force_gap_floor_m:
                floor_clear = False
            if d >= radius or not self._approaching(car, x, y):
                continue
            scale = 0.3 + 0.7 * (d / radius)
            car.behavior.target_speed = max(car.behavior.target_speed * scale,
                                            p.force_gap_min_speed)
            if d < radius * p.force_gap_brake_zone:
                self._cut_speed(car, p.force_gap_brake_share * car.max_deceleration * state.dt)
            slowed += 1
        log.debug("entry %s blocked: slowed %d cars, floor %s",
                  entry.id, slowed, "clear" if floor_clear else "occupied")
        return floor_clear

    @staticmethod
    def _approaching(car: Car, x: float, y: float) -> bool:
        return (car.x - x) * car.vx + (car.y - y) * car.vy <= 0.0

    def _cut_speed(self, car: Car, cut: float) -> None:
        speed = car.speed
        if speed <= 0.0:
            return
        if speed > cut:
            new_speed = speed - cut
        else:
            new_speed = min(speed, self.policy.force_gap_crawl_speed)
        car.vx *= new_speed / speed
        car.vy *= new_speed / speed

    @staticmethod
    def nearest_distance(state: SimulationState, x: float, y: float) -> float:
        return min((car.distance_to(x, y) for car in state.cars.values()),
                   default=math.inf)

    def spawn_speed(self, state: SimulationState, x: float, y: float) -> float:
        """Mean speed of traffic near ``(x, y)``, clamped to a safe range."""
        p = self.policy
        nearby = [c.speed for c in state.cars.values()
                  if c.distance_to(x, y) < p.spawn_speed_radius_m]
        if not nearby:
            speed = p.default_spawn_speed
        else:
            speed = min(max(sum(nearby) / len(nearby), p.spawn_speed_min),
                        p.spawn_speed_max)
        return min(speed, self.route.traffic_rules.speed_limit)

    def entry_leader(self, entry: EntryPoint, state: SimulationState) -> Tuple[float, float]:
        """Along-lane gap to, and speed of, the nearest car ahead of *entry*.

        Cars changing into the entry lane count.  The gap is ``inf`` when
        nobody is ahead.
        """
        x, y, _, _ = self.network.entry_pose(entry)
        gap, lead_speed = math.inf, 0.0
        for car in state.cars.values():
            if entry.lane not in (car.current_lane, car.target_lane):
                continue
            d = self.network.distance_ahead(entry.lane, x, y, car)
            if d < gap:
                gap, lead_speed = d, car.speed
        return gap, lead_speed

    def safe_entry_speed(self, entry: EntryPoint, state: SimulationState,
                         max_deceleration: float) -> float:
        """Fastest entry speed that can still stop behind the car ahead.

        ``lead_speed + sqrt(2 * max_deceleration * (gap - emergency))``,
        with the room beyond the emergency distance floored at zero.
        """
        gap, lead_speed = self.entry_leader(entry, state)
        if math.isinf(gap):
            return math.inf
        room = max(0.0, gap - self.cars.collision_avoidance.emergency_brake_distance)
        return lead_speed + math.sqrt(2.0 * max_deceleration * room)

    def manual_spawn_speed(self, state: SimulationState, x: float, y: float) -> float:
        """Slowest speed near ``(x, y)``, clamped to the conservative range."""
        p = self.policy
        nearby = [c.speed for c in state.cars.values()
                  if c.distance_to(x, y) < p.manual_spawn_speed_radius_m]
        if not nearby:
            speed = p.default_spawn_speed
        else:
            speed = min(max(min(nearby), p.manual_spawn_speed_min),
                        p.manual_spawn_speed_max)
        return min(speed, self.route.traffic_rules.speed_limit)

    def _spawn_at(self, entry: EntryPoint, state: SimulationState, speed: float,
                  behavior_name: Optional[str] = None) -> int:
        car_type = self.behavior.select_car_type()
        if behavior_name is None:
            behavior_name = self.behavior.select_behavior()
        else:
            behavior_name = self.behavior.resolve_behavior(behavior_name)
        behavior = self.behavior.create_behavior_state(behavior_name)
        safe = self.safe_entry_speed(entry, state, car_type.max_deceleration)
        if safe < speed:
            log.debug("entry %s: speed %.1f capped to %.1f m/s behind the car ahead",
                      entry.id, speed, safe)
            speed = safe
        behavior.target_speed = speed

        x, y, tx, ty = self.network.entry_pose(entry)
        car = Car(
            id=self._next_id,
            x=x,
            y=y,
            vx=tx * speed,
            vy=ty * speed,
            heading=math.atan2(ty, tx),
            length=car_type.length,
            width=car_type.width,
            max_acceleration=car_type.max_acceleration,
            max_deceleration=car_type.max_deceleration,
            preferred_speed=car_type.preferred_speed,
            current_lane=entry.lane,
            behavior=behavior,
            behavior_type=behavior_name,
            car_type=car_type.id,
            speed_history=[speed] * SPEED_HISTORY_LEN,
            spawn_time=state.time,
        )
        self._next_id += 1
        state.add_car(car)
        log.debug("spawned car %d (%s, %s) at entry %s lane %d, %.1f m/s",
                  car.id, car.car_type, car.behavior_type, entry.id,
                  entry.lane, speed)
        return car.id

    # ── despawning ────────────────────────────────────────────────────────

    def _update_despawning(self, state: SimulationState) -> None:
        p = self.policy
        removals: List[Tuple[int, str]] = []
        for car in state.car_list():
            if self.network.has_left_network(car):
                removals.append((car.id, LEFT_NETWORK))
            elif self.should_exit(car):
                removals.append((car.id, EXITED))
            elif (state.time - car.spawn_time > p.max_residency_s
                  and self.rng.random() < p.residency_eviction_probability):
                removals.append((car.id, EVICTED))

        for car_id, reason in removals:
            if state.remove_car(car_id):
                self.removal_counts[reason] += 1
                self.removals.append((state.time, car_id, reason))
                log.debug("removed car %d (%s) at t=%.2f", car_id, reason, state.time)

    def should_exit(self, car: Car) -> bool:
        """True when *car* is at an exit on its lane and the exit policy takes it."""
        p = self.policy
        for ex in self.route.exits:
            if self.network.near_exit(car, ex, p.exit_removal_tolerance_deg):
                return p.exit_policy is ExitPolicy.ALWAYS or car.marked_for_exit
        return False

    # ── operator side channels ────────────────────────────────────────────

    def spawn_manual_car(self, behavior_name: str, state: SimulationState) -> Optional[int]:
        """Spawn one car with profile *behavior_name* at the first entry.

        Uses the permissive clearance and the conservative spawn speed,
        and respects the population cap.  Returns the new id, or ``None``
        when nothing was spawned.
        """
        if not self.route.entries:
            log.warning("No entry points available for manual spawn")
            return None
        if state.active_cars >= self.cars.simulation.total_cars:
            log.info("Manual spawn refused: population cap %d reached",
                     self.cars.simulation.total_cars)
            return None
        entry = self.route.entries[0]
        x, y, _, _ = self.network.entry_pose(entry)
        if self.nearest_distance(state, x, y) < self.policy.manual_spawn_clearance_m:
            log.info("Manual spawn refused: entry %s congested", entry.id)
            return None
        car_id = self._spawn_at(entry, state, self.manual_spawn_speed(state, x, y),
                                behavior_name)
        log.info("Manually spawned %s car %d", state.cars[car_id].behavior_type, car_id)
        return car_id

    def mark_car_for_exit(self, behavior_type: str, state: SimulationState) -> bool:
        marked = state.mark_car_for_exit(behavior_type)
        if marked:
            log.info("Marked a %s car for exit at t=%.2f", behavior_type, state.time)
        else:
            log.info("No unflagged %s car to mark for exit", behavior_type)
        return marked
