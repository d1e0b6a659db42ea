import math

import numpy as np
import pytest

from city_world import KinematicBody
from drone_agent import (
    AvoidanceManeuver,
    DemandCommitted,
    DroneEncounter,
    DroneFlagsChanged,
    DroneParameters,
    FailedDelivery,
    FlightState,
    FlightStateChanged,
    SuccessfulDelivery,
    repulsion,
)


class PinnedBody(KinematicBody):
    """Body that ignores moves while pinned, as if wedged in traffic."""

    def __init__(self, position):
        super().__init__(position)
        self.pinned = True

    def move_to(self, position):
        if not self.pinned:
            super().move_to(position)


def record(bus, event_type):
    events = []
    bus.subscribe(event_type, events.append)
    return events


def test_repulsion_inverse_square_and_capped():
    assert repulsion(np.array([10.0, 0.0, 0.0]), 30.0, 30.0) == pytest.approx([0.3, 0.0, 0.0])
    assert repulsion(np.array([0.5, 0.0, 0.0]), 30.0, 30.0) == pytest.approx([30.0, 0.0, 0.0])
    assert repulsion(np.zeros(3), 30.0, 30.0) == pytest.approx([0.0, 0.0, 0.0])


def test_avoidance_force_from_nearby_drone(harness):
    agent = harness.spawn(1, (100.0, 100.0, 60.0), (300.0, 100.0, 0.0))
    harness.spawn(2, (110.0, 100.0, 60.0), (300.0, 120.0, 0.0))
    harness.spawn(3, (200.0, 100.0, 60.0), (300.0, 140.0, 0.0))

    force, avoided = agent.avoidance_force(harness.world.snapshot(), agent.position)

    assert avoided == [2]
    assert force == pytest.approx([-0.3, 0.0, 0.0])


def test_avoidance_force_from_building(block_harness):
    agent = block_harness.spawn(1, (180.0, 200.0, 20.0), (100.0, 100.0, 0.0))

    force, avoided = agent.avoidance_force(block_harness.world.snapshot(), agent.position)

    assert avoided == []
    assert force == pytest.approx([-0.1, 0.0, 0.0])


def test_straight_leg_reaches_threshold_in_bounded_ticks(harness):
    states = record(harness.bus, FlightStateChanged)
    agent = harness.spawn(1, (100.0, 100.0, 60.0), (150.0, 100.0, 0.0))
    dt = 0.02

    harness.tick(dt)
    assert agent.state is FlightState.MOVE_TO_TARGET

    bound = math.ceil((50.0 - 5.0) / (15.0 * dt))
    ticks = 0
    while agent.state is FlightState.MOVE_TO_TARGET and ticks < bound + 10:
        harness.tick(dt)
        ticks += 1

    assert ticks <= bound
    assert agent.position[2] == pytest.approx(60.0)
    assert [event.current for event in states] == [
        FlightState.ASCEND,
        FlightState.MOVE_TO_TARGET,
        FlightState.DESCEND_TO_HOVER,
    ]
    assert states[0].previous is None


def test_full_route_delivers_and_self_destroys(harness):
    harness.params = DroneParameters(flight_height=20.0, hover_height=5.0, delivery_time=1.0)
    states = record(harness.bus, FlightStateChanged)
    successes = record(harness.bus, SuccessfulDelivery)
    failures = record(harness.bus, FailedDelivery)
    committed = record(harness.bus, DemandCommitted)

    agent = harness.spawn(1, (100.0, 100.0, 0.0), (130.0, 100.0, 0.0))
    for _ in range(2000):
        if agent.destroyed:
            break
        harness.tick(0.05)

    assert agent.destroyed
    assert agent.delivered
    assert not agent.bottlenecked
    assert len(successes) == 1 and successes[0].agent is agent
    assert failures == []
    assert [event.demand.ident for event in committed] == [1]
    assert [event.current for event in states] == [
        FlightState.ASCEND,
        FlightState.MOVE_TO_TARGET,
        FlightState.DESCEND_TO_HOVER,
        FlightState.DELIVER,
        FlightState.ASCEND_BACK,
        FlightState.MOVE_TO_TRUCK,
        FlightState.DESCEND_BACK,
        FlightState.COMPLETED,
    ]
    assert np.linalg.norm(agent.position - np.array([100.0, 100.0, 0.0])) <= 5.0 + 1e-6
    assert agent.metrics.flight_time > 0.0
    assert agent.metrics.flight_time_in_proximity == 0.0


def test_delivery_wait_lasts_delivery_time(harness):
    harness.params = DroneParameters(flight_height=20.0, hover_height=5.0, delivery_time=1.0)
    agent = harness.spawn(1, (100.0, 100.0, 0.0), (130.0, 100.0, 0.0))

    while agent.state is not FlightState.DELIVER:
        harness.tick(0.05)
    entered = harness.scheduler.now
    while agent.state is FlightState.DELIVER:
        harness.tick(0.05)

    assert agent.delivered
    assert harness.scheduler.now - entered == pytest.approx(1.0, abs=0.05 + 1e-9)


def test_destroy_during_delivery_cancels_wait(harness):
    harness.params = DroneParameters(flight_height=20.0, hover_height=5.0, delivery_time=1.0)
    flags = record(harness.bus, DroneFlagsChanged)
    agent = harness.spawn(1, (100.0, 100.0, 0.0), (130.0, 100.0, 0.0))

    while agent.state is not FlightState.DELIVER:
        harness.tick(0.05)
    agent.destroy()
    agent.destroy()
    for _ in range(100):
        harness.tick(0.05)

    assert agent.state is FlightState.DELIVER
    assert not agent.delivered
    assert flags == []
    assert harness.scheduler.pending == 0


def test_stuck_drone_is_flagged_once_and_recovers_strength(harness):
    flags = record(harness.bus, DroneFlagsChanged)
    body = PinnedBody((100.0, 100.0, 60.0))
    agent = harness.spawn(1, (100.0, 100.0, 60.0), (300.0, 100.0, 0.0), body=body)
    dt = 0.25

    # First tick completes the ascent without moving; stuck checks start with the next leg.
    for _ in range(16):
        harness.tick(dt)
    assert agent.state is FlightState.MOVE_TO_TARGET
    assert agent.stuck_time == pytest.approx(3.0)
    assert not agent.bottlenecked

    harness.tick(dt)
    assert agent.bottlenecked
    assert agent.drone_avoidance_strength == pytest.approx(15.0)
    assert len(flags) == 1

    for _ in range(8):
        harness.tick(dt)
    assert agent.drone_avoidance_strength == pytest.approx(10.0)
    assert len(flags) == 1

    body.pinned = False
    for _ in range(4):
        harness.tick(dt)
    assert agent.stuck_time == 0.0
    assert agent.drone_avoidance_strength == pytest.approx(20.0)

    for _ in range(4):
        harness.tick(dt)
    assert agent.drone_avoidance_strength == pytest.approx(30.0)
    assert agent.bottlenecked
    assert len(flags) == 1


def test_proximity_metrics_and_encounters(harness):
    encounters = record(harness.bus, DroneEncounter)
    maneuvers = record(harness.bus, AvoidanceManeuver)
    first = harness.spawn(1, (100.0, 100.0, 60.0), (300.0, 100.0, 0.0))
    second = harness.spawn(2, (110.0, 100.0, 60.0), (300.0, 120.0, 0.0))
    dt = 0.1

    harness.tick(dt)
    m = first.metrics
    assert m.encountered == {2}
    assert second.metrics.encountered == {1}
    assert m.flight_time_vertical == pytest.approx(dt)
    assert m.flight_time_vertical_proximity == pytest.approx(dt)
    assert m.flight_time_in_proximity == pytest.approx(dt)
    assert m.avoidance_maneuvers == 0

    harness.tick(dt)
    assert m.unique_encounters == 1
    assert m.avoidance_maneuvers == 1
    assert m.flight_time_horizontal == pytest.approx(dt)
    assert m.flight_time == pytest.approx(2 * dt)
    assert len(encounters) == 2
    assert len(maneuvers) == 2

    for _ in range(50):
        harness.tick(dt)
    for agent in (first, second):
        assert agent.position[2] <= 60.0 + 1e-9


def test_agent_without_body_stays_inert(harness, caplog):
    agent = harness.spawn(1, (-50.0, -50.0, 0.0), (100.0, 100.0, 0.0))

    assert agent.inert
    assert agent.state is None
    assert not agent.active
    harness.tick(0.1)
    assert agent.metrics.flight_time == 0.0
    assert "No physics body attached" in caplog.text


class OscillatingBody(KinematicBody):
    """Body that bounces 1 m either side of where it started on every move."""

    def __init__(self, position):
        super().__init__(position)
        self._anchor = self.position.copy()
        self._side = 1.0

    def move_to(self, position):
        self._side = -self._side
        self.position = self._anchor + np.array([self._side, 0.0, 0.0])


def test_position_check_runs_every_interval_at_tenth_second_ticks(harness):
    agent = harness.spawn(1, (100.0, 100.0, 60.0), (300.0, 100.0, 0.0), body=PinnedBody((100.0, 100.0, 60.0)))

    # One tick to finish the ascent, then ten moves make one full check interval.
    for _ in range(11):
        harness.tick(0.1)
    assert agent.stuck_time == pytest.approx(1.0)

    for _ in range(10):
        harness.tick(0.1)
    assert agent.stuck_time == pytest.approx(2.0)


def test_drone_jittering_in_place_is_flagged_bottlenecked(harness):
    flags = record(harness.bus, DroneFlagsChanged)
    body = OscillatingBody((100.0, 100.0, 60.0))
    agent = harness.spawn(1, (100.0, 100.0, 60.0), (300.0, 100.0, 0.0), body=body)

    for _ in range(100):
        harness.tick(0.1)

    assert agent.state is FlightState.MOVE_TO_TARGET
    assert agent.bottlenecked
    assert agent.drone_avoidance_strength == pytest.approx(10.0)
    assert len(flags) == 1
