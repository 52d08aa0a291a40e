#!/usr/bin/env python3
"""
traffic_sim/traffic_policy.py
=============================
Tunable spawn, exit and safety parameters for the traffic engine.  Every
constant lives in the frozen :class:`TrafficPolicy` dataclass so that
experiments can swap policies without touching code.

Also provides :func:`following_distance_m`, the speed- and behavior-scaled
safe gap (works on floats and numpy arrays alike).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ExitPolicy(str, Enum):
    """How the traffic manager treats cars that reach a matching exit."""

    INTENT = "intent"
    """Remove only cars flagged for exit (operator call or exit draw)."""

    ALWAYS = "always"
    """Remove every car that reaches an exit on its lane."""


@dataclass(frozen=True)
class TrafficPolicy:
    """Immutable bag of every tunable engine parameter.

    Groups: spawn clearance, gap forcing, spawn speed, exits,
    residency, lane changes.
    """

    # ── Spawn clearance ───────────────────────────────────────────────────
    spawn_clearance_m: float = 5.0
    """Strict clearance: no car may be this close to an entry."""

    manual_spawn_clearance_m: float = 2.0
    """Permissive clearance used for operator-triggered spawns."""

    # ── Gap forcing ───────────────────────────────────────────────────────
    force_spawn_gap: bool = True
    """Slow approaching traffic to open a gap when an entry is blocked."""

    force_gap_radius_m: float = 15.0
    """Cars closer than this to a blocked entry are slowed down."""

    force_gap_floor_m: float = 3.0
    """A car this close to the entry refuses the spawn even when forcing."""

    force_gap_min_speed: float = 2.0
    """Lower bound on the target speed of a slowed car (m/s)."""

    force_gap_brake_share: float = 0.7
    """Share of max deceleration applied immediately to very close cars."""

    force_gap_brake_zone: float = 0.6
    """Fraction of the gap radius inside which the immediate cut applies."""

    force_gap_crawl_speed: float = 1.0
    """Speed left to a car whose immediate cut would stop it (m/s)."""

    # ── Spawn speed ───────────────────────────────────────────────────────
    default_spawn_speed: float = 15.6
    """Entrance-ramp speed used when no traffic is nearby (m/s)."""

    spawn_speed_radius_m: float = 30.0
    """Radius sampled for the mean speed of nearby traffic."""

    spawn_speed_min: float = 10.0
    spawn_speed_max: float = 35.0

    manual_spawn_speed_radius_m: float = 25.0
    """Radius sampled for the slowest nearby car on manual spawns."""

    manual_spawn_speed_min: float = 5.0
    manual_spawn_speed_max: float = 30.0

    # ── Exits ─────────────────────────────────────────────────────────────
    exit_policy: ExitPolicy = ExitPolicy.INTENT
    """Which cars are removed at a matching exit."""

    exit_removal_tolerance_deg: float = 5.0
    """Angular tolerance for removal at an exit on a curved lane."""

    exit_intent_window_deg: float = 30.0
    """Angular window before an exit where the exit draw happens."""

    exit_intent_window_factor: float = 6.0
    """Multiplier on ``exit_distance`` for the straight-lane intent window."""

    # ── Residency ─────────────────────────────────────────────────────────
    max_residency_s: float = 600.0
    """Cars older than this become candidates for eviction."""

    residency_eviction_probability: float = 0.001
    """Per-tick chance that an over-age car is evicted."""

    # ── Lane changes ──────────────────────────────────────────────────────
    lane_change_safety_extra_m: float = 10.0
    """Added to car length to get the lane-change safety distance."""

    stationary_speed: float = 0.1
    """Below this speed the heading follows the lane tangent (m/s)."""


def following_distance_m(
    speed: float,
    following_distance_s: float,
    factor: float,
    safety_margin: float,
) -> float:
    """Minimum safe gap behind a lead car.

    Parameters
    ----------
    speed : float
        Current speed of the following car in m/s.
    following_distance_s : float
        Route following-distance rule in seconds.
    factor : float
        Behavior-specific following-distance factor.
    safety_margin : float
        Fixed margin added on top, in metres.
    """
    return following_distance_s * speed * factor + safety_margin

