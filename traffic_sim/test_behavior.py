#!/usr/bin/env python3
"""
Driver decision tests: speed intent, lane-change safety, exit intent and
profile selection.
"""

from __future__ import annotations

import math
import random
import unittest

from traffic_sim.behavior import BehaviorEngine
from traffic_sim.config import DriverBehavior
from traffic_sim.network import build_network
from traffic_sim.state import BehaviorState, SimulationState
from traffic_sim.testing import DT, cars_config, donut_route, make_car


def _profile(name: str, weight: int, **overrides) -> DriverBehavior:
    params = dict(following_distance_factor=1.0, lane_change_frequency=1.0,
                  speed_variance=1.0, reaction_time=1.0, exit_probability=0.5)
    params.update(overrides)
    return DriverBehavior(name=name, weight=weight, **params)


class _BehaviorCase(unittest.TestCase):
    behaviors = None

    def setUp(self) -> None:
        self.route = donut_route()
        self.cars = cars_config(behaviors=self.behaviors)
        self.net = build_network(self.route)
        self.engine = BehaviorEngine(self.route, self.cars, self.net, random.Random(7))
        self.state = SimulationState(dt=DT)

    def _add(self, car_id: int, lane: int, angle: float, **kw):
        car = make_car(self.net, car_id, lane, angle, 10.0, **kw)
        self.state.add_car(car)
        return car


class SpeedIntentTests(_BehaviorCase):
    def test_clamped_to_speed_limit_and_minimum(self) -> None:
        fast = self._add(0, 1, 0.0, preferred_speed=40.0)
        slow = self._add(1, 1, 90.0, preferred_speed=1.0)
        self.assertEqual(self.engine.speed_intent(fast), 30.0)
        self.assertEqual(self.engine.speed_intent(slow), 2.0)

    def test_unit_variance_draws_no_noise(self) -> None:
        car = self._add(0, 1, 0.0)
        before = self.engine.rng.getstate()
        self.assertEqual(self.engine.speed_intent(car), car.preferred_speed)
        self.assertEqual(self.engine.rng.getstate(), before)

    def test_variance_scales_and_draws_noise(self) -> None:
        car = self._add(0, 1, 0.0, preferred_speed=20.0,
                        behavior=BehaviorState(speed_variance=1.2))
        before = self.engine.rng.getstate()
        speed = self.engine.speed_intent(car)
        self.assertNotEqual(self.engine.rng.getstate(), before)
        # noise sigma is 0.02, so 24 m/s give or take a few percent
        self.assertGreater(speed, 20.0)
        self.assertLessEqual(speed, 30.0)

    def test_update_writes_target_speed(self) -> None:
        car = self._add(0, 1, 0.0, target_speed=0.0)
        self.engine.update(self.state)
        self.assertEqual(car.behavior.target_speed, car.preferred_speed)


class LaneChangeTests(_BehaviorCase):
    def _eager(self, **kw) -> BehaviorState:
        # 3600 per minute: the per-tick probability is exactly 1.
        return BehaviorState(lane_change_frequency=3600.0, **kw)

    def setUp(self) -> None:
        super().setUp()
        self.state.time = 10.0

    def test_rejected_when_target_lane_occupied(self) -> None:
        car = self._add(0, 1, 0.0, behavior=self._eager())
        self._add(1, 2, 2.0)
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))

    def test_rejected_when_a_car_is_entering_the_target_lane(self) -> None:
        car = self._add(0, 1, 0.0, behavior=self._eager())
        self._add(1, 3, -2.0, target_lane=2)
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))

    def test_accepted_when_clear(self) -> None:
        car = self._add(0, 1, 0.0, behavior=self._eager())
        self._add(1, 2, 30.0)
        self.assertEqual(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state), 2)

    def test_update_starts_the_change(self) -> None:
        car = self._add(0, 1, 0.0, behavior=self._eager())
        self.engine.update(self.state)
        self.assertEqual(car.target_lane, 2)
        self.assertEqual(car.lane_change_progress, 0.0)
        self.assertEqual(car.behavior.last_lane_change_time, 10.0)
        self.assertEqual(car.current_lane, 1)

    def test_not_eligible_before_interval(self) -> None:
        # 2 per minute: one change per 30 s at most
        car = self._add(0, 1, 0.0,
                        behavior=BehaviorState(lane_change_frequency=2.0,
                                               last_lane_change_time=0.0))
        before = self.engine.rng.getstate()
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))
        self.assertEqual(self.engine.rng.getstate(), before)

    def test_pending_change_blocks_new_ones(self) -> None:
        car = self._add(0, 1, 0.0, behavior=self._eager(), target_lane=2)
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))

    def test_zero_frequency_never_changes(self) -> None:
        car = self._add(0, 2, 0.0, behavior=BehaviorState(lane_change_frequency=0.0))
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))

    def test_marked_car_heads_for_exit_lane(self) -> None:
        car = self._add(0, 2, 0.0, behavior=self._eager(), marked_for_exit=True)
        for _ in range(20):
            self.assertEqual(
                self.engine.lane_change_intent(car, self.state.car_list(), self.state), 3)

    def test_marked_car_on_exit_lane_stays(self) -> None:
        car = self._add(0, 3, 0.0, behavior=self._eager(), marked_for_exit=True)
        self.assertIsNone(
            self.engine.lane_change_intent(car, self.state.car_list(), self.state))

    def test_no_started_change_has_a_car_inside_safety_distance(self) -> None:
        rng = random.Random(99)
        for i in range(30):
            self._add(i, rng.randint(1, 3), rng.uniform(0.0, 360.0),
                      behavior=self._eager())
        cars = self.state.car_list()
        for car in cars:
            lane = self.engine.lane_change_intent(car, cars, self.state)
            if lane is None:
                continue
            for other in cars:
                if other is car or lane not in (other.current_lane, other.target_lane):
                    continue
                self.assertGreaterEqual(self.net.along_lane_distance(lane, car, other),
                                        car.length + 10.0)


class ExitIntentTests(_BehaviorCase):
    def test_certain_exit_marks_car(self) -> None:
        car = self._add(0, 3, 80.0, behavior=BehaviorState(exit_probability=1.0))
        self.engine.update(self.state)
        self.assertTrue(car.marked_for_exit)
        self.assertEqual(car.exit_time, 0.0)
        self.assertEqual(car.exit_considered, "north")

    def test_one_draw_per_pass(self) -> None:
        car = self._add(0, 3, 80.0, behavior=BehaviorState(exit_probability=0.0))
        self.engine.update(self.state)
        self.assertFalse(car.marked_for_exit)
        self.assertEqual(car.exit_considered, "north")

        car.behavior.exit_probability = 1.0
        self.engine.update(self.state)
        self.assertFalse(car.marked_for_exit)

        # Leaving the window resets the pass; the next one draws again.
        car.x, car.y = self.net.point_at(3, math.radians(180.0))
        self.engine.update(self.state)
        self.assertIsNone(car.exit_considered)
        car.x, car.y = self.net.point_at(3, math.radians(85.0))
        self.engine.update(self.state)
        self.assertTrue(car.marked_for_exit)

    def test_other_lanes_do_not_draw(self) -> None:
        car = self._add(0, 1, 90.0, behavior=BehaviorState(exit_probability=1.0))
        self.engine.update(self.state)
        self.assertFalse(car.marked_for_exit)
        self.assertIsNone(car.exit_considered)


class DeterminismTests(_BehaviorCase):
    def test_same_seed_same_decisions(self) -> None:
        def picks(seed: int):
            engine = BehaviorEngine(self.route, self.cars, self.net, random.Random(seed))
            return [(engine.select_behavior(), engine.select_car_type().id)
                    for _ in range(50)]

        self.assertEqual(picks(3), picks(3))
        self.assertNotEqual(picks(3), picks(4))


class ProfileTests(_BehaviorCase):
    behaviors = {
        "normal": _profile("normal", 100, following_distance_factor=1.1),
        "aggressive": _profile("aggressive", 0, following_distance_factor=0.7),
    }

    def test_zero_weight_is_never_selected(self) -> None:
        self.assertEqual({self.engine.select_behavior() for _ in range(200)}, {"normal"})

    def test_create_behavior_state_copies_profile(self) -> None:
        state = self.engine.create_behavior_state("aggressive")
        self.assertEqual(state.following_distance_factor, 0.7)
        self.assertEqual(state.last_lane_change_time, 0.0)
        self.assertEqual(state.target_speed, 0.0)

    def test_unknown_profile_falls_back_to_normal(self) -> None:
        with self.assertLogs("behavior", level="WARNING"):
            self.assertEqual(self.engine.resolve_behavior("reckless"), "normal")
        self.assertEqual(
            self.engine.create_behavior_state("reckless").following_distance_factor, 1.1)


class DefaultProfileTests(_BehaviorCase):
    behaviors = {"calm": _profile("calm", 100)}

    def test_missing_normal_uses_builtin_default(self) -> None:
        with self.assertLogs("behavior", level="WARNING"):
            state = self.engine.create_behavior_state("reckless")
        self.assertEqual(state.lane_change_frequency, 0.8)
        self.assertEqual(state.exit_probability, 0.25)


if __name__ == "__main__":
    unittest.main()
