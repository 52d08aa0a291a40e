#!/usr/bin/env python3
"""
Geometry of the donut and cloverleaf topologies.
"""

from __future__ import annotations

import math
import unittest
from dataclasses import replace

from traffic_sim.config import ConfigError, EntryPoint
from traffic_sim.network import (
    CloverleafNetwork,
    DonutNetwork,
    build_network,
    wrap_angle,
)
from traffic_sim.testing import cloverleaf_route, donut_route, make_car


class WrapAngleTests(unittest.TestCase):
    def test_range(self) -> None:
        self.assertAlmostEqual(wrap_angle(3 * math.pi / 2), -math.pi / 2)
        self.assertAlmostEqual(wrap_angle(-3 * math.pi / 2), math.pi / 2)
        self.assertAlmostEqual(wrap_angle(math.pi), math.pi)
        self.assertAlmostEqual(wrap_angle(0.25), 0.25)


class DonutNetworkTests(unittest.TestCase):
    def setUp(self) -> None:
        self.net = build_network(donut_route())

    def test_lane_radii(self) -> None:
        self.assertIsInstance(self.net, DonutNetwork)
        self.assertEqual([self.net.lane_radius(l) for l in (1, 2, 3)],
                         [102.0, 106.0, 110.0])

    def test_entry_pose_is_counter_clockwise(self) -> None:
        x, y, tx, ty = self.net.entry_pose(donut_route().entry("east"))
        self.assertAlmostEqual(x, 102.0)
        self.assertAlmostEqual(y, 0.0)
        self.assertAlmostEqual(tx, 0.0)
        self.assertAlmostEqual(ty, 1.0)

    def test_adjacent_lanes(self) -> None:
        self.assertEqual(self.net.adjacent_lanes(1), [2])
        self.assertEqual(self.net.adjacent_lanes(2), [1, 3])
        self.assertEqual(self.net.adjacent_lanes(3), [2])
        self.assertEqual(self.net.lane_group(2), (1, 2, 3))

    def test_bad_lane_raises(self) -> None:
        with self.assertRaises(ValueError):
            self.net.adjacent_lanes(4)
        with self.assertRaises(ValueError):
            self.net.is_circular(0)

    def test_along_lane_distance_wraps(self) -> None:
        a = make_car(self.net, 0, 1, 359.0)
        b = make_car(self.net, 1, 1, 1.0)
        self.assertAlmostEqual(self.net.along_lane_distance(1, a, b),
                               math.radians(2.0) * 102.0, places=6)

    def test_distance_ahead_wraps_and_ignores_cars_behind(self) -> None:
        x, y = self.net.point_at(1, math.radians(359.0))
        ahead = make_car(self.net, 0, 1, 1.0)
        behind = make_car(self.net, 1, 1, 350.0)
        self.assertAlmostEqual(self.net.distance_ahead(1, x, y, ahead),
                               math.radians(2.0) * 102.0, places=6)
        self.assertEqual(self.net.distance_ahead(1, x, y, behind), math.inf)

    def test_near_exit_uses_degrees(self) -> None:
        ex = donut_route().exits[0]
        self.assertTrue(self.net.near_exit(make_car(self.net, 0, 3, 87.0), ex, 5.0))
        self.assertFalse(self.net.near_exit(make_car(self.net, 0, 3, 80.0), ex, 5.0))
        # wrong lane
        self.assertFalse(self.net.near_exit(make_car(self.net, 0, 2, 90.0), ex, 5.0))

    def test_never_leaves(self) -> None:
        self.assertFalse(self.net.has_left_network(make_car(self.net, 0, 1, 45.0)))


class CloverleafNetworkTests(unittest.TestCase):
    def setUp(self) -> None:
        self.route = cloverleaf_route()
        self.net = build_network(self.route)

    def test_lane_split(self) -> None:
        self.assertIsInstance(self.net, CloverleafNetwork)
        self.assertEqual(self.net.highway_lanes, 8)
        self.assertEqual(self.net.lanes_per_group, 2)
        self.assertEqual([self.net.merge_lane(g) for g in range(4)], [2, 4, 6, 8])

    def test_carriageway_sides_and_directions(self) -> None:
        # (lane, point at s=0, travel direction)
        expected = [
            (1, (-12.0, 0.0), (0.0, -1.0)),
            (2, (-16.0, 0.0), (0.0, -1.0)),
            (3, (12.0, 0.0), (0.0, 1.0)),
            (5, (0.0, 12.0), (-1.0, 0.0)),
            (7, (0.0, -12.0), (1.0, 0.0)),
        ]
        for lane, point, tangent in expected:
            with self.subTest(lane=lane):
                self.assertFalse(self.net.is_circular(lane))
                x, y = self.net.point_at(lane, 0.0)
                self.assertAlmostEqual(x, point[0])
                self.assertAlmostEqual(y, point[1])
                self.assertEqual(self.net.tangent_at(lane, 0.0), tangent)

    def test_ramps_are_tangent_to_their_merge_lane(self) -> None:
        t = self.net.lanes
        for g in range(4):
            ramp = self.net.highway_lanes + g + 1
            merge = self.net.merge_lane(g)
            with self.subTest(ramp=ramp):
                self.assertTrue(self.net.is_circular(ramp))
                self.assertEqual(int(t.merge_lane[ramp]), merge)
                self.assertEqual(float(t.sigma[ramp]), -1.0)
                angle = float(t.merge_angle[ramp])
                rx, ry = self.net.point_at(ramp, angle)
                mx, my = self.net.point_at(merge, float(t.merge_s[ramp]))
                self.assertAlmostEqual(rx, mx, places=9)
                self.assertAlmostEqual(ry, my, places=9)
                tx, ty = self.net.tangent_at(ramp, angle)
                ux, uy = self.net.tangent_at(merge, 0.0)
                self.assertAlmostEqual(tx, ux, places=9)
                self.assertAlmostEqual(ty, uy, places=9)

    def test_first_ramp_layout(self) -> None:
        t = self.net.lanes
        self.assertAlmostEqual(float(t.cx[9]), -41.0)
        self.assertAlmostEqual(float(t.cy[9]), -43.0)
        self.assertAlmostEqual(float(t.merge_angle[9]), 0.0)
        self.assertAlmostEqual(float(t.merge_s[9]), 43.0)

    def test_adjacency_stays_in_group(self) -> None:
        self.assertEqual(self.net.adjacent_lanes(1), [2])
        self.assertEqual(self.net.adjacent_lanes(2), [1])
        self.assertEqual(self.net.adjacent_lanes(3), [4])
        self.assertEqual(self.net.lane_group(6), (5, 6))
        for ramp in (9, 10, 11, 12):
            self.assertEqual(self.net.adjacent_lanes(ramp), [])
            self.assertEqual(self.net.lane_group(ramp), (ramp,))

    def test_entry_poses(self) -> None:
        x, y, tx, ty = self.net.entry_pose(self.route.entry("south_in"))
        self.assertAlmostEqual(x, -12.0)
        self.assertAlmostEqual(y, 190.0)
        self.assertEqual((tx, ty), (0.0, -1.0))
        x, y, _, _ = self.net.entry_pose(self.route.entry("ramp_sw"))
        self.assertAlmostEqual(x, -41.0)
        self.assertAlmostEqual(y, -18.0)

    def test_lane_end(self) -> None:
        self.assertFalse(self.net.has_left_network(make_car(self.net, 0, 1, 199.0)))
        self.assertTrue(self.net.has_left_network(make_car(self.net, 0, 1, 201.0)))
        self.assertFalse(self.net.has_left_network(make_car(self.net, 0, 9, 45.0)))

    def test_distance_ahead_on_straight_lane(self) -> None:
        x, y = self.net.point_at(1, 10.0)
        self.assertAlmostEqual(
            self.net.distance_ahead(1, x, y, make_car(self.net, 0, 1, 25.0)), 15.0)
        self.assertEqual(
            self.net.distance_ahead(1, x, y, make_car(self.net, 1, 1, 5.0)), math.inf)

    def test_near_exit_uses_metres(self) -> None:
        ex = self.route.exits[0]
        self.assertTrue(self.net.near_exit(make_car(self.net, 0, 2, 147.0), ex, 5.0))
        self.assertFalse(self.net.near_exit(make_car(self.net, 0, 2, 140.0), ex, 5.0))
        self.assertTrue(self.net.near_exit(make_car(self.net, 0, 2, 140.0), ex, 5.0,
                                           factor=6.0))

    def test_highway_too_short_for_ramps(self) -> None:
        route = replace(self.route, geometry=replace(self.route.geometry,
                                                     highway_length=100.0))
        with self.assertRaises(ConfigError):
            build_network(route)


class BuildNetworkTests(unittest.TestCase):
    def test_unknown_geometry(self) -> None:
        route = donut_route()
        route = replace(route, geometry=replace(route.geometry, type="grid"))
        with self.assertRaises(ConfigError):
            build_network(route)

    def test_entry_lane_outside_network(self) -> None:
        route = donut_route(entries=[EntryPoint(id="e", type="lane", lane=7)])
        with self.assertRaises(ConfigError):
            build_network(route)


if __name__ == "__main__":
    unittest.main()
