#!/usr/bin/env python3
"""
Bookkeeping tests for the entity store.
"""

from __future__ import annotations

import unittest

from traffic_sim.state import Car, SimulationState


class SimulationStateTests(unittest.TestCase):
    def _state_with(self, *behaviors: str) -> SimulationState:
        state = SimulationState(dt=0.1)
        for i, behavior in enumerate(behaviors):
            state.add_car(Car(id=i, x=float(i), y=0.0, behavior_type=behavior))
        return state

    def test_add_and_remove_keep_counts_in_sync(self) -> None:
        state = self._state_with("normal", "normal", "aggressive")
        self.assertEqual(state.active_cars, 3)
        self.assertEqual(state.total_spawned, 3)

        self.assertTrue(state.remove_car(1))
        self.assertFalse(state.remove_car(1))
        self.assertEqual(state.active_cars, 2)
        self.assertEqual(state.active_cars, len(state.cars))
        self.assertEqual(state.total_spawned, 3)

    def test_duplicate_id_is_rejected(self) -> None:
        state = self._state_with("normal")
        with self.assertRaises(ValueError):
            state.add_car(Car(id=0, x=0.0, y=0.0))
        self.assertEqual(state.active_cars, 1)

    def test_car_list_is_spawn_order(self) -> None:
        state = self._state_with("a", "b", "c")
        self.assertEqual([c.id for c in state.car_list()], [0, 1, 2])

    def test_mark_car_for_exit_flags_first_unflagged_match(self) -> None:
        state = self._state_with("normal", "aggressive", "normal")
        state.time = 12.5

        self.assertTrue(state.mark_car_for_exit("aggressive"))
        car = state.get_car(1)
        self.assertTrue(car.marked_for_exit)
        self.assertEqual(car.exit_time, 12.5)

        # The only aggressive car is already flagged.
        self.assertFalse(state.mark_car_for_exit("aggressive"))

        self.assertTrue(state.mark_car_for_exit("normal"))
        self.assertTrue(state.get_car(0).marked_for_exit)
        self.assertFalse(state.get_car(2).marked_for_exit)

    def test_behavior_counts(self) -> None:
        state = self._state_with("normal", "aggressive", "normal")
        self.assertEqual(state.behavior_counts(), {"normal": 2, "aggressive": 1})

    def test_velocity_distribution(self) -> None:
        state = SimulationState(dt=0.1)
        self.assertEqual(state.velocity_distribution(4), [0, 0, 0, 0])
        for i, speed in enumerate((0.0, 5.0, 10.0, 20.0)):
            state.add_car(Car(id=i, x=0.0, y=0.0, vx=speed))
        # bucket size 5: 0 -> 0, 5 -> 1, 10 -> 2, 20 -> clamped to 3
        self.assertEqual(state.velocity_distribution(4), [1, 1, 1, 1])

    def test_speed_history_shifts(self) -> None:
        car = Car(id=0, x=0.0, y=0.0, vx=3.0, vy=4.0)
        car.update_speed_history()
        self.assertEqual(car.speed_history, [0.0, 0.0, 5.0])
        self.assertAlmostEqual(car.average_speed(), 5.0 / 3.0)

    def test_snapshot_is_detached(self) -> None:
        state = self._state_with("normal")
        snap = state.snapshot()
        snap[0]["x"] = 999.0
        self.assertEqual(state.get_car(0).x, 0.0)
        self.assertEqual(snap[0]["behavior_type"], "normal")


if __name__ == "__main__":
    unittest.main()
