#!/usr/bin/env python3
"""
Backend contract tests: cross-backend consistency, device errors and the
fallback in :func:`create_backend`.
"""

from __future__ import annotations

import unittest

from traffic_sim.compute import (
    ArrayDevice,
    BackendError,
    BackendInitError,
    ParallelBackend,
    SequentialBackend,
    create_backend,
)
from traffic_sim.config import ConfigError
from traffic_sim.network import build_network
from traffic_sim.state import SimulationState
from traffic_sim.testing import DT, cars_config, cloverleaf_route, donut_route, make_car

SEED = 12345
REL_TOL = 0.01


def _run(backend, seconds: float) -> SimulationState:
    state = SimulationState(dt=DT)
    try:
        for _ in range(int(round(seconds / DT))):
            backend.update(state)
    finally:
        backend.close()
    return state


class CrossBackendTests(unittest.TestCase):
    def _assert_close(self, a: float, b: float, what: str) -> None:
        tol = REL_TOL * max(1.0, abs(a), abs(b))
        self.assertLessEqual(abs(a - b), tol, msg=f"{what}: {a} vs {b}")

    def _compare(self, route, cars, seconds: float) -> None:
        cpu = _run(SequentialBackend(route, cars, SEED), seconds)
        par = _run(ParallelBackend(route, cars, SEED, chunk_size=4), seconds)

        self.assertEqual(cpu.total_spawned, par.total_spawned)
        self.assertEqual(cpu.active_cars, par.active_cars)
        self.assertEqual(list(cpu.cars), list(par.cars))
        self.assertAlmostEqual(cpu.time, par.time)
        for car_id, a in cpu.cars.items():
            b = par.cars[car_id]
            self.assertEqual(a.current_lane, b.current_lane)
            self.assertEqual(a.target_lane, b.target_lane)
            self.assertEqual(a.behavior_type, b.behavior_type)
            self.assertEqual(a.marked_for_exit, b.marked_for_exit)
            for name in ("x", "y", "vx", "vy"):
                self._assert_close(getattr(a, name), getattr(b, name),
                                   f"car {car_id} {name}")

    def test_donut_five_seconds(self) -> None:
        self._compare(donut_route(), cars_config(), 5.0)

    def test_cloverleaf_five_seconds(self) -> None:
        self._compare(cloverleaf_route(), cars_config(), 5.0)

    def test_chunking_does_not_change_results(self) -> None:
        route, cars = donut_route(), cars_config()
        one = _run(ParallelBackend(route, cars, SEED, chunk_size=1, workers=3), 3.0)
        big = _run(ParallelBackend(route, cars, SEED, chunk_size=64, workers=1), 3.0)
        self.assertEqual(list(one.cars), list(big.cars))
        for car_id, a in one.cars.items():
            b = big.cars[car_id]
            self.assertAlmostEqual(a.x, b.x, places=9)
            self.assertAlmostEqual(a.y, b.y, places=9)


class ParallelBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.route = donut_route()
        self.cars = cars_config()

    def test_zero_cars_still_advances_clock(self) -> None:
        backend = ParallelBackend(self.route, self.cars, SEED)
        state = _run(backend, DT)
        self.assertEqual(state.active_cars, 0)
        self.assertAlmostEqual(state.time, DT)

    def test_reports_name_and_parallelism(self) -> None:
        backend = ParallelBackend(self.route, self.cars, SEED)
        try:
            self.assertEqual(backend.name(), "numpy array device")
            self.assertTrue(backend.supports_parallel())
        finally:
            backend.close()
        sequential = SequentialBackend(self.route, self.cars, SEED)
        self.assertEqual(sequential.name(), "CPU")
        self.assertFalse(sequential.supports_parallel())

    def test_unknown_device(self) -> None:
        with self.assertRaises(BackendInitError):
            ParallelBackend(self.route, self.cars, SEED, device="cuda")

    def test_bad_device_sizes(self) -> None:
        with self.assertRaises(BackendInitError):
            ArrayDevice(capacity=0)
        with self.assertRaises(BackendInitError):
            ArrayDevice(capacity=4, chunk_size=0)

    def test_upload_overflow(self) -> None:
        net = build_network(self.route)
        device = ArrayDevice(capacity=1, workers=1)
        try:
            cars = [make_car(net, 0, 1, 0.0), make_car(net, 1, 1, 90.0)]
            with self.assertRaises(BackendError):
                device.upload(cars, net.lane_count)
        finally:
            device.close()

    def test_lane_outside_network_raises(self) -> None:
        net = build_network(self.route)
        backend = ParallelBackend(self.route, self.cars, SEED)
        state = SimulationState(dt=DT)
        state.add_car(make_car(net, 0, 1, 0.0))
        state.get_car(0).current_lane = 9
        try:
            with self.assertRaises(ValueError):
                backend.update(state)
        finally:
            backend.close()

    def test_side_channels(self) -> None:
        backend = ParallelBackend(self.route, self.cars, SEED)
        state = SimulationState(dt=DT)
        try:
            car_id = backend.spawn_manual_car("normal", state)
            self.assertEqual(car_id, 0)
            self.assertTrue(backend.mark_car_for_exit("normal", state))
            self.assertFalse(backend.mark_car_for_exit("normal", state))
        finally:
            backend.close()


class CreateBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.route = donut_route()
        self.cars = cars_config()

    def test_kinds(self) -> None:
        cpu = create_backend("cpu", self.route, self.cars)
        self.assertIsInstance(cpu, SequentialBackend)
        parallel = create_backend("Parallel", self.route, self.cars)
        try:
            self.assertIsInstance(parallel, ParallelBackend)
        finally:
            parallel.close()

    def test_unknown_kind(self) -> None:
        with self.assertRaises(ConfigError):
            create_backend("quantum", self.route, self.cars)

    def test_falls_back_to_cpu(self) -> None:
        with self.assertLogs("compute", level="WARNING"):
            backend = create_backend("gpu", self.route, self.cars, device="cuda")
        self.assertIsInstance(backend, SequentialBackend)
        self.assertEqual(backend.name(), "CPU")

    def test_fallback_can_be_disabled(self) -> None:
        with self.assertRaises(BackendInitError):
            create_backend("gpu", self.route, self.cars, fallback=False, device="cuda")

    def test_seed_defaults_to_config(self) -> None:
        a = _run(create_backend("cpu", self.route, self.cars), 3.0)
        b = _run(create_backend("cpu", self.route, self.cars, seed=SEED), 3.0)
        self.assertEqual(a.snapshot(), b.snapshot())


if __name__ == "__main__":
    unittest.main()
