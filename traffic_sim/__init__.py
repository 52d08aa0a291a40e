"""
traffic_sim: traffic simulation engine
======================================

Modules
-------
config
    Route / cars dataclasses, YAML loading and validation.
traffic_policy
    :class:`TrafficPolicy` tunable constants and :class:`ExitPolicy`.
state
    :class:`Car` entities and the :class:`SimulationState` store.
network
    :class:`DonutNetwork` and :class:`CloverleafNetwork` lane geometry.
kernel
    The per-car kinematics kernel shared by both backends.
physics
    :class:`PhysicsEngine` sequential two-phase update.
behavior
    :class:`BehaviorEngine` stochastic driver intents.
traffic
    :class:`TrafficManager` spawning and despawning.
compute
    Sequential and parallel compute backends.
sim_bridge
    :class:`SimBridge` snapshot publisher and background loop.
testing
    Small configurations and car factories for the test suites.
"""
