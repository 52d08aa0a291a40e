#!/usr/bin/env python3
"""
main.py
=======
Headless driver: loads the route and cars documents, runs the simulation
through a :class:`~traffic_sim.sim_bridge.SimBridge` and logs a status
line every few simulated seconds.

Environment overrides (defaults in :mod:`config`)::

    TRAFFIC_SIM_ROUTE       route YAML path
    TRAFFIC_SIM_CARS        cars YAML path
    TRAFFIC_SIM_BACKEND     cpu | parallel
    TRAFFIC_SIM_DEVICE      array device for the parallel backend
    TRAFFIC_SIM_TICK_RATE   ticks per simulated second
    TRAFFIC_SIM_DURATION    simulated seconds to run
    TRAFFIC_SIM_SEED        PRNG seed
    TRAFFIC_SIM_REALTIME    1 to pace ticks in wall-clock time
    TRAFFIC_SIM_LOG_LEVEL   DEBUG, INFO, ...
"""

import logging
import os
import time

import config
from logging_setup import setup_logging
from traffic_sim.config import load_config
from traffic_sim.sim_bridge import SimBridge

project_root = os.path.abspath(os.path.dirname(__file__))


def _env(name: str, default):
    """``TRAFFIC_SIM_<name>`` converted to the type of *default*."""
    raw = os.environ.get(f"TRAFFIC_SIM_{name}")
    if raw is None:
        return default
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return type(default)(raw)


def _path(name: str, rel_path: str) -> str:
    path = _env(name, rel_path)
    return path if os.path.isabs(path) else os.path.join(project_root, path)


def main():
    setup_logging(getattr(logging, _env("LOG_LEVEL", "INFO").upper(), logging.INFO))
    log = logging.getLogger("main")

    sim_config = load_config(
        _path("ROUTE", config.ROUTE_CONFIG_REL_PATH),
        _path("CARS", config.CARS_CONFIG_REL_PATH),
    )
    tick_rate = _env("TICK_RATE", config.DEFAULT_TICK_RATE_HZ)
    duration = _env("DURATION", config.DEFAULT_DURATION_S)
    realtime = _env("REALTIME", False)

    bridge = SimBridge(
        sim_config,
        backend=_env("BACKEND", config.DEFAULT_BACKEND),
        tick_rate_hz=tick_rate,
        seed=_env("SEED", config.DEFAULT_SEED),
        realtime=realtime,
        device=_env("DEVICE", config.DEFAULT_DEVICE),
        chunk_size=config.DEFAULT_CHUNK_SIZE,
    )
    log.info("Starting %r on %s for %.0f s",
             sim_config.route.name, bridge.get_stats()["backend"], duration)

    ticks_per_report = max(1, int(round(config.REPORT_INTERVAL_S * tick_rate)))
    total_ticks = int(round(duration * tick_rate))
    wall_start = time.perf_counter()
    try:
        done = 0
        while done < total_ticks and not bridge.is_finished():
            batch = min(ticks_per_report, total_ticks - done)
            if realtime:
                for _ in range(batch):
                    bridge.step()
                    time.sleep(1.0 / tick_rate)
            else:
                bridge.step(batch)
            done += batch

            stats = bridge.get_stats()
            log.info("t=%6.1fs  cars=%3d  spawned=%4d  tick=%.2f ms  %s",
                     stats["time"], stats["active_cars"], stats["total_spawned"],
                     stats["mean_tick_s"] * 1000.0, stats["behavior_counts"])

    except KeyboardInterrupt:
        log.info("Shutting down...")
    finally:
        bridge.close()

    log.info("Finished %d ticks in %.1f s wall time",
             bridge.get_stats()["ticks"], time.perf_counter() - wall_start)


if __name__ == "__main__":
    main()
