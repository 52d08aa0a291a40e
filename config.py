#!/usr/bin/env python3
"""
config.py
=========
Application-wide configuration constants.

Values can be overridden via ``TRAFFIC_SIM_*`` environment variables
(see :mod:`main`).  This module is a thin, import-safe leaf; it never
imports from other project packages.
"""

# ── Simulation defaults ──────────────────────────────────────────────────────
DEFAULT_TICK_RATE_HZ: float = 60.0
DEFAULT_BACKEND: str = "cpu"
DEFAULT_DURATION_S: float = 60.0
DEFAULT_SEED: int = 12345

# ── Array device defaults ────────────────────────────────────────────────────
DEFAULT_DEVICE: str = "numpy"
DEFAULT_CHUNK_SIZE: int = 64

# ── Route / car documents (relative to project root) ─────────────────────────
ROUTE_CONFIG_REL_PATH: str = "configs/donut.yaml"
CARS_CONFIG_REL_PATH: str = "configs/cars.yaml"

# ── Console reporting ────────────────────────────────────────────────────────
REPORT_INTERVAL_S: float = 5.0
