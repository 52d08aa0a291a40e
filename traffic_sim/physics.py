#!/usr/bin/env python3
"""
traffic_sim/physics.py
======================
Sequential physics engine.

One tick is two phases: every car's update is computed from a read-only
:class:`~traffic_sim.kernel.CarBatch` snapshot of the whole population,
then all results are written back.  No car ever sees a neighbour that
has already moved this tick, so the outcome does not depend on the
iteration order.
"""

from __future__ import annotations

import logging
from typing import Optional

from traffic_sim.config import CarsConfig, RouteConfig
from traffic_sim.kernel import CarBatch, RouteParams, apply_result, step
from traffic_sim.network import RoadNetwork
from traffic_sim.state import SimulationState
from traffic_sim.traffic_policy import TrafficPolicy

log = logging.getLogger("physics")


class PhysicsEngine:
    """Per-car kinematics and collision-avoidance speed shaping.

    Parameters
    ----------
    route, cars : RouteConfig, CarsConfig
        Validated configuration.
    network : RoadNetwork
        Topology selected once at construction.
    policy : TrafficPolicy, optional
        Only ``stationary_speed`` is read here.
    """

    def __init__(
        self,
        route: RouteConfig,
        cars: CarsConfig,
        network: RoadNetwork,
        policy: Optional[TrafficPolicy] = None,
    ) -> None:
        self.network = network
        self.params = RouteParams.build(route, cars, network, policy)

    def update(self, state: SimulationState) -> None:
        """Move every car by ``state.dt`` and advance the clock once."""
        cars = state.car_list()
        if cars:
            batch = CarBatch.from_cars(cars, self.params.lane_count)
            result = step(batch, self.params, state.dt)
            for row, car in enumerate(cars):
                lane = car.current_lane
                apply_result(car, result, row)
                if car.current_lane != lane:
                    log.debug("car %d lane %d -> %d at t=%.2f",
                              car.id, lane, car.current_lane, state.time)
        self.advance_clock(state)

    @staticmethod
    def advance_clock(state: SimulationState) -> None:
        state.time += state.dt
