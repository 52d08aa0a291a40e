"""
traffic_sim/sim_bridge.py
=========================
Orchestrator tying a compute backend to its :class:`SimulationState`.
Readers (a renderer, a dashboard, the console driver) poll the bridge for
the latest snapshot without ever touching engine entities.

The bridge can be stepped synchronously with :meth:`SimBridge.step`, or
run on a background thread with :meth:`SimBridge.start`.  While the
thread runs, operator commands (manual spawn, mark for exit, reset) are
queued and executed on the tick thread *between* ticks, so
``backend.update`` never overlaps itself.

Public API
----------
* ``get_vehicles()``               → ``List[dict]``
* ``get_stats()``                  → ``dict``
* ``spawn_manual_car(name)``       → ``Future[Optional[int]]``
* ``mark_car_for_exit(behavior)``  → ``Future[bool]``
* ``is_finished()``                → ``bool``
* ``reset()``                      → ``Future[None]``
* ``set_paused(bool)``             → ``None``
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Tuple

from traffic_sim.compute import ComputeBackend, create_backend
from traffic_sim.config import SimulationConfig
from traffic_sim.state import SimulationState
from traffic_sim.traffic_policy import TrafficPolicy

log = logging.getLogger("sim_bridge")

_Command = Tuple[Callable[[], Any], Future]


class SimBridge:
    """Simulation orchestrator, synchronous or on a background thread.

    Parameters
    ----------
    config : SimulationConfig
        Validated route and cars configuration.
    backend : str
        ``"cpu"`` or ``"parallel"`` (see :func:`~traffic_sim.compute.create_backend`).
    tick_rate_hz : float
        Ticks per simulated second; ``dt = 1 / tick_rate_hz``.
    seed : int or None
        Overrides ``config.cars.seed``.
    policy : TrafficPolicy or None
        Tunable constants.
    realtime : bool
        When True the background loop sleeps to hold ``tick_rate_hz``
        in wall-clock time; otherwise it runs as fast as it can.
    """

    def __init__(
        self,
        config: SimulationConfig,
        backend: str = "cpu",
        tick_rate_hz: float = 60.0,
        seed: Optional[int] = None,
        policy: Optional[TrafficPolicy] = None,
        realtime: bool = True,
        fallback: bool = True,
        **device_options: Any,
    ) -> None:
        if tick_rate_hz <= 0:
            raise ValueError(f"tick_rate_hz must be positive, got {tick_rate_hz}")
        self._config = config
        self._backend_kind = backend
        self._tick_rate_hz = tick_rate_hz
        self._seed = seed
        self._policy = policy
        self._realtime = realtime
        self._fallback = fallback
        self._device_options = device_options

        self._backend: ComputeBackend = self._make_backend()
        self._state = SimulationState(dt=1.0 / tick_rate_hz)

        self._lock = threading.Lock()
        self._commands: "queue.SimpleQueue[_Command]" = queue.SimpleQueue()

        # Cached state, written by the tick thread, read by anyone
        self._vehicles: List[Dict[str, Any]] = []
        self._stats: Dict[str, Any] = {}
        self._ticks = 0
        self._tick_seconds_total = 0.0

        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._paused = False
        self._error: Optional[BaseException] = None
        self._publish(0.0)

    def _make_backend(self) -> ComputeBackend:
        return create_backend(
            self._backend_kind,
            self._config.route,
            self._config.cars,
            seed=self._seed,
            policy=self._policy,
            fallback=self._fallback,
            **self._device_options,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the background simulation thread."""
        if self._running:
            return
        self.raise_if_failed()
        self._running = True
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name="SimBridge"
        )
        self._thread.start()
        log.info("SimBridge started at %.1f Hz on %s",
                 self._tick_rate_hz, self._backend.name())

    def stop(self) -> None:
        """Stop the thread, wait for it, and re-raise a failed tick."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._drain_commands()
        log.info("SimBridge stopped at t=%.2f", self._state.time)
        self.raise_if_failed()

    def close(self) -> None:
        """Stop and release backend resources."""
        try:
            self.stop()
        finally:
            self._backend.close()

    def raise_if_failed(self) -> None:
        if self._error is not None:
            raise self._error

    @property
    def running(self) -> bool:
        return self._running

    # ── Synchronous stepping ──────────────────────────────────────────────────

    def step(self, ticks: int = 1) -> None:
        """Advance *ticks* ticks on the caller's thread.

        Raises
        ------
        RuntimeError
            If the background thread is running.
        """
        if self._running:
            raise RuntimeError("SimBridge.step() while the background loop is running")
        self.raise_if_failed()
        for _ in range(ticks):
            self._tick()

    # ── Read API ──────────────────────────────────────────────────────────────

    def get_vehicles(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(v) for v in self._vehicles]

    def get_stats(self) -> Dict[str, Any]:
        """Counts, simulation time and tick timing of the last published tick."""
        with self._lock:
            return dict(self._stats)

    def is_finished(self) -> bool:
        """True once the configured simulation duration has elapsed."""
        return self._state.time >= self._config.cars.simulation.simulation_duration

    def set_paused(self, paused: bool) -> None:
        """Pause / unpause the background tick."""
        self._paused = paused

    # ── Operator commands ─────────────────────────────────────────────────────

    def spawn_manual_car(self, behavior_name: str) -> "Future[Optional[int]]":
        return self._submit(
            lambda: self._backend.spawn_manual_car(behavior_name, self._state)
        )

    def mark_car_for_exit(self, behavior_type: str) -> "Future[bool]":
        return self._submit(
            lambda: self._backend.mark_car_for_exit(behavior_type, self._state)
        )

    def reset(self) -> "Future[None]":
        """Rebuild backend and state so the scenario replays from t=0."""
        return self._submit(self._do_reset)

    def _do_reset(self) -> None:
        self._backend.close()
        self._backend = self._make_backend()
        self._state = SimulationState(dt=1.0 / self._tick_rate_hz)
        self._ticks = 0
        self._tick_seconds_total = 0.0
        self._publish(0.0)
        log.info("SimBridge reset")

    def _submit(self, fn: Callable[[], Any]) -> Future:
        """Run *fn* now when idle, else queue it for the tick thread."""
        future: Future = Future()
        if self._running:
            self._commands.put((fn, future))
            return future
        self._run_command(fn, future)
        self._publish(self._last_tick_s())
        return future

    @staticmethod
    def _run_command(fn: Callable[[], Any], future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except Exception as exc:
            log.exception("SimBridge command failed")
            future.set_exception(exc)

    def _drain_commands(self) -> None:
        while True:
            try:
                fn, future = self._commands.get_nowait()
            except queue.Empty:
                return
            self._run_command(fn, future)

    # ── Background loop ───────────────────────────────────────────────────────

    def _loop(self) -> None:
        dt = 1.0 / self._tick_rate_hz
        while self._running:
            t0 = time.perf_counter()
            self._drain_commands()
            idle = self._paused or self.is_finished()
            if not idle:
                try:
                    self._tick()
                except Exception as exc:
                    log.exception("SimBridge tick error at t=%.2f", self._state.time)
                    self._error = exc
                    self._running = False
                    break
            if self._realtime or idle:
                time.sleep(max(0.0, dt - (time.perf_counter() - t0)))

    # ── tick ──────────────────────────────────────────────────────────────────

    def _tick(self) -> None:
        t0 = time.perf_counter()
        self._backend.update(self._state)
        elapsed = time.perf_counter() - t0
        self._ticks += 1
        self._tick_seconds_total += elapsed
        self._publish(elapsed)

    def _last_tick_s(self) -> float:
        with self._lock:
            return float(self._stats.get("last_tick_s", 0.0))

    def _publish(self, last_tick_s: float) -> None:
        state = self._state
        vehicles = state.snapshot()
        stats: Dict[str, Any] = {
            "backend": self._backend.name(),
            "time": state.time,
            "ticks": self._ticks,
            "active_cars": state.active_cars,
            "total_spawned": state.total_spawned,
            "behavior_counts": state.behavior_counts(),
            "velocity_distribution": state.velocity_distribution(10),
            "last_tick_s": last_tick_s,
            "mean_tick_s": (self._tick_seconds_total / self._ticks
                            if self._ticks else 0.0),
        }
        # Atomic swap; readers only ever see a complete tick.
        with self._lock:
            self._vehicles = vehicles
            self._stats = stats
