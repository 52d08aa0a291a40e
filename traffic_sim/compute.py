#!/usr/bin/env python3
"""
traffic_sim/compute.py
======================
Compute backends: the execution strategies that advance one tick.

Both backends satisfy the same small contract (:class:`ComputeBackend`):
``update(state)``, ``name()``, ``supports_parallel()`` and the two
operator side channels.  Both run the
:class:`~traffic_sim.traffic.TrafficManager` on the host, in car order,
so the PRNG stream is consumed identically; they differ only in how the
shared kernel (:func:`traffic_sim.kernel.step`) is executed.

* :class:`SequentialBackend`: the plain per-car loop of
  :class:`~traffic_sim.physics.PhysicsEngine`.
* :class:`ParallelBackend`: uploads the population into the
  preallocated buffers of an :class:`ArrayDevice`, dispatches the kernel
  over row chunks on a thread pool and downloads the results.

:func:`create_backend` picks one by name and, when the array device
cannot be brought up, falls back to the sequential backend.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence

import numpy as np

from traffic_sim.config import CarsConfig, ConfigError, RouteConfig
from traffic_sim.kernel import CarBatch, RouteParams, StepResult, apply_result, step
from traffic_sim.network import build_network
from traffic_sim.physics import PhysicsEngine
from traffic_sim.state import Car, SimulationState
from traffic_sim.traffic import TrafficManager
from traffic_sim.traffic_policy import TrafficPolicy

log = logging.getLogger("compute")

SUPPORTED_DEVICES = ("numpy",)

SEQUENTIAL_KINDS = ("cpu", "sequential")
PARALLEL_KINDS = ("parallel", "array", "gpu")

DEFAULT_CHUNK_SIZE: int = 64


class BackendError(RuntimeError):
    """A backend failed while running; the state it touched is not trustworthy."""


class BackendInitError(BackendError):
    """A backend could not be constructed."""


class ComputeBackend(Protocol):
    """Contract shared by every execution strategy."""

    def update(self, state: SimulationState) -> None: ...

    def name(self) -> str: ...

    def supports_parallel(self) -> bool: ...

    def spawn_manual_car(self, behavior_name: str,
                         state: SimulationState) -> Optional[int]: ...

    def mark_car_for_exit(self, behavior_type: str,
                          state: SimulationState) -> bool: ...

    def close(self) -> None: ...


def _seed(seed: Optional[int], cars: CarsConfig) -> Optional[int]:
    return seed if seed is not None else cars.seed


# ── Sequential ───────────────────────────────────────────────────────────────

class SequentialBackend:
    """Traffic manager then the per-car physics loop, all on the caller's thread."""

    def __init__(
        self,
        route: RouteConfig,
        cars: CarsConfig,
        seed: Optional[int] = None,
        policy: Optional[TrafficPolicy] = None,
    ) -> None:
        self.network = build_network(route)
        self.traffic = TrafficManager(route, cars, self.network,
                                      _seed(seed, cars), policy)
        self.physics = PhysicsEngine(route, cars, self.network, policy)

    def update(self, state: SimulationState) -> None:
        self.traffic.update(state)
        self.physics.update(state)

    def name(self) -> str:
        return "CPU"

    def supports_parallel(self) -> bool:
        return False

    def spawn_manual_car(self, behavior_name: str,
                         state: SimulationState) -> Optional[int]:
        return self.traffic.spawn_manual_car(behavior_name, state)

    def mark_car_for_exit(self, behavior_type: str, state: SimulationState) -> bool:
        return self.traffic.mark_car_for_exit(behavior_type, state)

    def close(self) -> None:
        pass


# ── Array device ─────────────────────────────────────────────────────────────

class ArrayDevice:
    """Preallocated struct-of-arrays buffers plus a worker pool.

    Parameters
    ----------
    capacity : int
        Maximum number of cars (the population cap).
    workers : int, optional
        Pool size; defaults to ``min(4, cpu_count)``.
    chunk_size : int
        Rows per dispatched task.
    device : str
        Must be one of :data:`SUPPORTED_DEVICES`.

    Raises
    ------
    BackendInitError
        On an unknown device, bad sizes, allocation failure or a failed
        probe of the worker pool.
    """

    def __init__(
        self,
        capacity: int,
        workers: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        device: str = "numpy",
    ) -> None:
        if device not in SUPPORTED_DEVICES:
            raise BackendInitError(
                f"No array device {device!r}; available: {SUPPORTED_DEVICES}"
            )
        if workers is None:
            workers = min(4, os.cpu_count() or 1)
        if capacity <= 0 or workers <= 0 or chunk_size <= 0:
            raise BackendInitError(
                f"Invalid device sizes: capacity={capacity}, workers={workers}, "
                f"chunk_size={chunk_size}"
            )
        self.device = device
        self.capacity = capacity
        self.workers = workers
        self.chunk_size = chunk_size
        try:
            self.batch = CarBatch(capacity)
            self._out = StepResult(
                **{name: np.zeros(capacity, dtype=np.float64) for name in (
                    "x", "y", "vx", "vy", "ax", "ay", "heading", "progress")},
                lane=np.zeros(capacity, dtype=np.int64),
                target=np.zeros(capacity, dtype=np.int64),
            )
        except MemoryError as exc:
            raise BackendInitError(
                f"Could not allocate device buffers for {capacity} cars"
            ) from exc
        self.pool = ThreadPoolExecutor(max_workers=workers,
                                       thread_name_prefix="array-device")
        try:
            self.pool.submit(np.zeros, 1).result()
        except Exception as exc:
            self.pool.shutdown(wait=False)
            raise BackendInitError("Array device worker pool failed to start") from exc

    def upload(self, cars: Sequence[Car], lane_count: int) -> None:
        if len(cars) > self.capacity:
            raise BackendError(
                f"{len(cars)} cars exceed device capacity {self.capacity}"
            )
        self.batch.load(cars, lane_count)

    def chunks(self) -> List[range]:
        n = self.batch.size
        return [range(start, min(start + self.chunk_size, n))
                for start in range(0, n, self.chunk_size)]

    def dispatch(self, params: RouteParams, dt: float) -> None:
        """Run the kernel over every uploaded row; blocks until all chunks finish."""
        futures = [self.pool.submit(self._run_chunk, params, dt, rows.start, rows.stop)
                   for rows in self.chunks()]
        for future in futures:
            try:
                future.result()
            except Exception as exc:
                raise BackendError("Kernel dispatch failed on the array device") from exc

    def _run_chunk(self, params: RouteParams, dt: float, start: int, stop: int) -> None:
        result = step(self.batch, params, dt, start, stop)
        for name, values in vars(result).items():
            getattr(self._out, name)[start:stop] = values

    def download(self) -> StepResult:
        """Views of the output rows for the last dispatch."""
        n = self.batch.size
        return StepResult(**{name: values[:n] for name, values in vars(self._out).items()})

    def close(self) -> None:
        self.pool.shutdown(wait=True)


# ── Parallel ─────────────────────────────────────────────────────────────────

class ParallelBackend:
    """Host-side traffic manager, kernel on the :class:`ArrayDevice`."""

    def __init__(
        self,
        route: RouteConfig,
        cars: CarsConfig,
        seed: Optional[int] = None,
        policy: Optional[TrafficPolicy] = None,
        device: str = "numpy",
        workers: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.network = build_network(route)
        self.traffic = TrafficManager(route, cars, self.network,
                                      _seed(seed, cars), policy)
        self.params = RouteParams.build(route, cars, self.network, policy)
        self.device = ArrayDevice(cars.simulation.total_cars, workers,
                                  chunk_size, device)
        log.info("Array device %r ready: %d rows, %d workers, chunks of %d",
                 device, self.device.capacity, self.device.workers,
                 self.device.chunk_size)

    def update(self, state: SimulationState) -> None:
        self.traffic.update(state)
        cars = state.car_list()
        if cars:
            self.device.upload(cars, self.params.lane_count)
            self.device.dispatch(self.params, state.dt)
            result = self.device.download()
            for row, car in enumerate(cars):
                apply_result(car, result, row)
        PhysicsEngine.advance_clock(state)

    def name(self) -> str:
        return f"{self.device.device} array device"

    def supports_parallel(self) -> bool:
        return True

    def spawn_manual_car(self, behavior_name: str,
                         state: SimulationState) -> Optional[int]:
        return self.traffic.spawn_manual_car(behavior_name, state)

    def mark_car_for_exit(self, behavior_type: str, state: SimulationState) -> bool:
        return self.traffic.mark_car_for_exit(behavior_type, state)

    def close(self) -> None:
        self.device.close()


# ── Factory ──────────────────────────────────────────────────────────────────

def create_backend(
    kind: str,
    route: RouteConfig,
    cars: CarsConfig,
    seed: Optional[int] = None,
    policy: Optional[TrafficPolicy] = None,
    fallback: bool = True,
    **device_options,
) -> ComputeBackend:
    """Build the backend named *kind* (``"cpu"`` or ``"parallel"``).

    Extra keyword arguments go to :class:`ParallelBackend`.  When the
    parallel backend fails to initialise and *fallback* is set, a
    :class:`SequentialBackend` is returned instead.
    """
    kind = kind.lower()
    if kind in SEQUENTIAL_KINDS:
        backend: ComputeBackend = SequentialBackend(route, cars, seed, policy)
    elif kind in PARALLEL_KINDS:
        try:
            backend = ParallelBackend(route, cars, seed, policy, **device_options)
        except BackendInitError as exc:
            if not fallback:
                raise
            log.warning("Parallel backend unavailable (%s); falling back to CPU", exc)
            backend = SequentialBackend(route, cars, seed, policy)
    else:
        raise ConfigError(
            f"Unknown backend {kind!r}; expected one of "
            f"{SEQUENTIAL_KINDS + PARALLEL_KINDS}"
        )
    log.info("Using %s backend", backend.name())
    return backend
