"""
traffic_sim/testing.py
======================
Small, fully valid configurations and car factories shared by the
``test_*`` modules.  Everything here builds plain dataclasses, so tests
never depend on the YAML files under ``configs/``.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Dict, Optional, Sequence

from traffic_sim.config import (
    CarsConfig,
    CarType,
    CollisionAvoidance,
    DriverBehavior,
    EntryInterval,
    EntryPoint,
    ExitPoint,
    RouteConfig,
    RouteGeometry,
    SimulationConfig,
    SimulationParams,
    TrafficRules,
)
from traffic_sim.network import RoadNetwork
from traffic_sim.state import BehaviorState, Car

DT: float = 1.0 / 60.0


def donut_route(
    lane_count: int = 3,
    entries: Optional[Sequence[EntryPoint]] = None,
    exits: Optional[Sequence[ExitPoint]] = None,
    speed_limit: float = 30.0,
) -> RouteConfig:
    """Ring of ``lane_count`` lanes, 4 m wide, starting at radius 100 m."""
    if entries is None:
        entries = (
            EntryPoint(id="east", type="lane", lane=1, angle=0.0, position="east"),
            EntryPoint(id="west", type="lane", lane=1, angle=180.0, position="west"),
        )
    if exits is None:
        exits = (
            ExitPoint(id="north", type="lane", lane=lane_count, angle=90.0,
                      position="north"),
        )
    return RouteConfig(
        name="test donut",
        geometry=RouteGeometry(
            type="donut", center_x=0.0, center_y=0.0,
            inner_radius=100.0, outer_radius=100.0 + 4.0 * lane_count + 4.0,
            lane_width=4.0, lane_count=lane_count,
        ),
        entries=tuple(entries),
        exits=tuple(exits),
        traffic_rules=TrafficRules(speed_limit=speed_limit, min_speed=2.0,
                                   following_distance=2.0, lane_change_time=2.0),
    )


def cloverleaf_route(lanes_per_group: int = 2) -> RouteConfig:
    """Cloverleaf with ``4 * lanes_per_group`` highway lanes plus 4 ramps."""
    highway = 4 * lanes_per_group
    return RouteConfig(
        name="test cloverleaf",
        geometry=RouteGeometry(
            type="cloverleaf", center_x=0.0, center_y=0.0,
            inner_radius=10.0, outer_radius=300.0,
            lane_width=4.0, lane_count=highway + 4,
            highway_width=20.0, highway_length=400.0, loop_radius=25.0,
        ),
        entries=(
            EntryPoint(id="south_in", type="lane", lane=1, offset=-190.0,
                       position="north end"),
            EntryPoint(id="ramp_sw", type="loop_ramp", lane=highway + 1,
                       angle=90.0, position="south-west loop"),
        ),
        exits=(
            ExitPoint(id="south_out", type="lane", lane=lanes_per_group,
                      offset=150.0, position="south end", exit_distance=5.0),
        ),
        traffic_rules=TrafficRules(speed_limit=30.0, min_speed=2.0,
                                   following_distance=2.0, lane_change_time=2.0),
    )


def cars_config(
    total_cars: int = 20,
    behaviors: Optional[Dict[str, DriverBehavior]] = None,
    intervals: Sequence[EntryInterval] = (),
    seed: Optional[int] = 12345,
) -> CarsConfig:
    if behaviors is None:
        behaviors = {
            "normal": DriverBehavior(
                name="normal", weight=60, following_distance_factor=1.0,
                lane_change_frequency=2.0, speed_variance=1.0,
                reaction_time=1.2, exit_probability=0.3,
            ),
            "aggressive": DriverBehavior(
                name="aggressive", weight=40, following_distance_factor=0.7,
                lane_change_frequency=6.0, speed_variance=1.2,
                reaction_time=0.8, exit_probability=0.2,
            ),
        }
    return CarsConfig(
        simulation=SimulationParams(total_cars=total_cars, spawn_rate=1.0,
                                    simulation_duration=60.0),
        car_types=(
            CarType(id="sedan", weight=70, length=4.5, width=1.8,
                    max_acceleration=3.0, max_deceleration=6.0,
                    preferred_speed=25.0),
            CarType(id="truck", weight=30, length=8.0, width=2.5,
                    max_acceleration=1.5, max_deceleration=4.0,
                    preferred_speed=20.0),
        ),
        behaviors=behaviors,
        collision_avoidance=CollisionAvoidance(
            safety_margin=2.0, emergency_brake_distance=5.0,
            warning_distance=15.0, lateral_safety_margin=0.5,
        ),
        entry_intervals=tuple(intervals),
        seed=seed,
    )


def simulation_config(**kwargs) -> SimulationConfig:
    return SimulationConfig(route=donut_route(), cars=cars_config(**kwargs))


def make_car(
    network: RoadNetwork,
    car_id: int,
    lane: int,
    coord: float,
    speed: float = 0.0,
    *,
    target_speed: Optional[float] = None,
    behavior_type: str = "normal",
    **fields,
) -> Car:
    """A car on *lane* at *coord* (degrees on circular lanes, ``s`` on
    straight ones) moving along the lane at *speed*."""
    if network.is_circular(lane):
        coord = math.radians(coord)
    x, y = network.point_at(lane, coord)
    tx, ty = network.tangent_at(lane, coord)
    behavior = fields.pop("behavior", None) or BehaviorState()
    behavior = replace(behavior, target_speed=speed if target_speed is None
                       else target_speed)
    return Car(
        id=car_id, x=x, y=y, vx=tx * speed, vy=ty * speed,
        heading=math.atan2(ty, tx), current_lane=lane,
        behavior=behavior, behavior_type=behavior_type,
        speed_history=[speed] * 3, **fields,
    )
