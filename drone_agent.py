"""
Per-drone delivery state machine with potential-field collision avoidance.

Flight plan per drone:
    ascend -> move to target -> descend to hover -> deliver -> ascend back
    -> move to truck -> descend back -> completed

Every tick is split in two so that agents never read a half-updated
neighbour: ``plan`` computes the next position against a frozen spatial
snapshot, ``commit`` applies it, updates metrics, runs stuck detection and
fires state transitions. Entry actions run once, from on-enter hooks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence, Set

import numpy as np

from city_world import HandleKind, KinematicBody, SpatialQuery
from demand_generator import DemandPoint
from sim_runtime import EventBus, Scheduler, TimerHandle

if TYPE_CHECKING:
    from fleet_config import SimulationConfig


BASE_LOGGER = logging.getLogger("drone_agent")

# Absorbs float drift from accumulating fixed-size steps.
ARRIVAL_TOLERANCE = 1e-6
TIMER_TOLERANCE = 1e-9


class DroneLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes every message with the drone ID."""

    def process(self, msg, kwargs):
        prefix = f"[Drone {self.extra['drone_id']}] "
        return f"{prefix}{msg}", kwargs


class FlightState(str, Enum):
    ASCEND = "Ascend"
    MOVE_TO_TARGET = "MoveToTarget"
    DESCEND_TO_HOVER = "DescendToHover"
    DELIVER = "Deliver"
    ASCEND_BACK = "AscendBack"
    MOVE_TO_TRUCK = "MoveToTruck"
    DESCEND_BACK = "DescendBack"
    COMPLETED = "Completed"


NEXT_STATE = {
    FlightState.ASCEND: FlightState.MOVE_TO_TARGET,
    FlightState.MOVE_TO_TARGET: FlightState.DESCEND_TO_HOVER,
    FlightState.DESCEND_TO_HOVER: FlightState.DELIVER,
    FlightState.ASCEND_BACK: FlightState.MOVE_TO_TRUCK,
    FlightState.MOVE_TO_TRUCK: FlightState.DESCEND_BACK,
    FlightState.DESCEND_BACK: FlightState.COMPLETED,
}
MOVEMENT_STATES = frozenset(NEXT_STATE)
HORIZONTAL_STATES = frozenset({FlightState.MOVE_TO_TARGET, FlightState.MOVE_TO_TRUCK})
VERTICAL_STATES = frozenset(
    {FlightState.ASCEND, FlightState.DESCEND_TO_HOVER, FlightState.ASCEND_BACK, FlightState.DESCEND_BACK}
)


# --- events ---


@dataclass(frozen=True, eq=False)
class SuccessfulDelivery:
    agent: "DroneAgent"


@dataclass(frozen=True, eq=False)
class FailedDelivery:
    agent: "DroneAgent"


@dataclass(frozen=True, eq=False)
class DroneEncounter:
    agent: "DroneAgent"
    other_id: int


@dataclass(frozen=True, eq=False)
class AvoidanceManeuver:
    agent: "DroneAgent"
    other_id: int


@dataclass(frozen=True, eq=False)
class FlightTimeUpdate:
    agent: "DroneAgent"
    total: float


@dataclass(frozen=True, eq=False)
class FlightTimeInProximityUpdate:
    agent: "DroneAgent"
    total: float


@dataclass(frozen=True, eq=False)
class DroneFlagsChanged:
    """``delivered`` or ``bottlenecked`` changed; the drone's category needs re-evaluating."""

    agent: "DroneAgent"


@dataclass(frozen=True, eq=False)
class DemandCommitted:
    """The drone started delivering; its demand point is consumed."""

    agent: "DroneAgent"
    demand: DemandPoint


@dataclass(frozen=True, eq=False)
class FlightStateChanged:
    agent: "DroneAgent"
    previous: Optional[FlightState]
    current: FlightState


# --- parameters and counters ---


@dataclass
class DroneParameters:
    flight_height: float = 60.0
    hover_height: float = 15.0
    speed: float = 15.0
    delivery_time: float = 10.0
    delivery_distance_threshold: float = 5.0
    avoidance_radius: float = 30.0
    drone_avoidance_strength: float = 30.0
    building_avoidance_strength: float = 10.0
    max_avoidance_force: float = 30.0
    proximity_radius: float = 60.0
    position_check_interval: float = 1.0
    stuck_displacement: float = 0.5
    stuck_time_threshold: float = 3.0
    min_drone_avoidance_strength: float = 10.0

    @classmethod
    def from_config(cls, config: "SimulationConfig") -> "DroneParameters":
        return cls(
            flight_height=config.flight_height,
            hover_height=config.hover_height,
            speed=config.speed,
            delivery_time=config.delivery_time,
            delivery_distance_threshold=config.delivery_distance_threshold,
            avoidance_radius=config.avoidance_radius,
            drone_avoidance_strength=config.drone_avoidance_strength,
            building_avoidance_strength=config.building_avoidance_strength,
            max_avoidance_force=config.max_avoidance_force,
            proximity_radius=config.proximity_radius,
            position_check_interval=config.position_check_interval,
            stuck_displacement=config.stuck_displacement,
            stuck_time_threshold=config.stuck_time_threshold,
            min_drone_avoidance_strength=config.min_drone_avoidance_strength,
        )


@dataclass
class DroneMetrics:
    encountered: Set[int] = field(default_factory=set)
    avoidance_maneuvers: int = 0
    flight_time: float = 0.0
    flight_time_in_proximity: float = 0.0
    flight_time_horizontal: float = 0.0
    flight_time_horizontal_proximity: float = 0.0
    flight_time_vertical: float = 0.0
    flight_time_vertical_proximity: float = 0.0

    @property
    def unique_encounters(self) -> int:
        return len(self.encountered)


@dataclass
class StepPlan:
    """Result of the read-only half of a tick."""

    new_position: Optional[np.ndarray]
    arrived: bool
    avoided: List[int]
    neighbours: List[int]


def repulsion(offset: np.ndarray, strength: float, max_force: float) -> np.ndarray:
    """Inverse-square push along ``offset`` (pointing away from the source), capped at ``max_force``."""

    distance = float(np.linalg.norm(offset))
    if distance <= 0.0:
        return np.zeros(3)
    magnitude = min(strength / (distance * distance), max_force)
    return offset / distance * magnitude


class DroneAgent:
    """One delivery drone flying a single out-and-back route from its truck."""

    def __init__(
        self,
        ident: int,
        body: Optional[KinematicBody],
        demand: DemandPoint,
        truck_position: Sequence[float],
        params: DroneParameters,
        scheduler: Scheduler,
        bus: EventBus,
        rng: np.random.Generator,
    ):
        self.ident = ident
        self.body = body
        self.demand = demand
        self.target_position = np.asarray(demand.position, dtype=float)
        self.truck_position = np.asarray(truck_position, dtype=float)
        self.params = params
        self.scheduler = scheduler
        self.bus = bus
        self.rng = rng
        self.logger = DroneLoggerAdapter(BASE_LOGGER, {"drone_id": ident})

        self.state: Optional[FlightState] = None
        self.delivered = False
        self.bottlenecked = False
        self.destroyed = False
        self.metrics = DroneMetrics()

        self.drone_avoidance_strength = params.drone_avoidance_strength
        self._initial_drone_avoidance_strength = params.drone_avoidance_strength
        self.stuck_time = 0.0
        self._check_timer = 0.0
        self._last_check_position = self.position.copy() if body is not None else None

        self._delivery_timer: Optional[TimerHandle] = None
        self._destroy_timer: Optional[TimerHandle] = None
        self._entry_hooks = {
            FlightState.DELIVER: self._on_enter_deliver,
            FlightState.COMPLETED: self._on_enter_completed,
        }

    @property
    def position(self) -> np.ndarray:
        return self.body.position

    @property
    def inert(self) -> bool:
        return self.body is None

    @property
    def active(self) -> bool:
        return not self.destroyed and not self.inert and self.state is not None

    def start(self) -> None:
        if self.inert:
            self.logger.error("No physics body attached; drone stays inert.")
            return
        self._enter(FlightState.ASCEND)

    # --- tick: read-only half ---

    def plan(self, snapshot: SpatialQuery, dt: float) -> Optional[StepPlan]:
        if not self.active:
            return None

        position = self.position
        neighbours = [
            handle.ident
            for handle in snapshot.nearby(position, self.params.proximity_radius, HandleKind.DRONE)
            if handle.ident != self.ident
        ]
        if self.state not in MOVEMENT_STATES:
            return StepPlan(None, False, [], neighbours)

        target = self.leg_target()
        offset = target - position
        distance = float(np.linalg.norm(offset))
        if distance <= self.params.delivery_distance_threshold + ARRIVAL_TOLERANCE:
            return StepPlan(None, True, [], neighbours)

        avoidance, avoided = self.avoidance_force(snapshot, position)
        heading = offset / distance + avoidance
        norm = float(np.linalg.norm(heading))
        heading = heading / norm if norm > 0.0 else np.zeros(3)

        step = self.params.speed * dt
        if heading[2] > 0 and position[2] + heading[2] * step > self.params.flight_height:
            heading[2] = 0.0
        ground = snapshot.ground_height(position)
        if heading[2] < 0 and position[2] + heading[2] * step < (ground if ground is not None else 0.0):
            heading[2] = 0.0

        if self.stuck_time > self.params.stuck_time_threshold:
            heading = heading + np.array([self.rng.uniform(-1.0, 1.0), self.rng.uniform(-1.0, 1.0), 0.0])

        return StepPlan(position + heading * step, False, avoided, neighbours)

    def leg_target(self) -> np.ndarray:
        """Point the current flight leg is heading for."""

        p = self.params
        target = self.target_position
        truck = self.truck_position
        if self.state is FlightState.ASCEND:
            return np.array([self.position[0], self.position[1], p.flight_height])
        if self.state in (FlightState.MOVE_TO_TARGET, FlightState.ASCEND_BACK):
            return np.array([target[0], target[1], p.flight_height])
        if self.state is FlightState.DESCEND_TO_HOVER:
            return np.array([target[0], target[1], target[2] + p.hover_height])
        if self.state is FlightState.MOVE_TO_TRUCK:
            return np.array([truck[0], truck[1], p.flight_height])
        if self.state is FlightState.DESCEND_BACK:
            return truck.copy()
        raise RuntimeError(f"State {self.state} has no flight leg.")

    def avoidance_force(self, snapshot: SpatialQuery, position: np.ndarray):
        """Summed repulsion from drones and obstacles in range, plus the IDs of drones avoided."""

        p = self.params
        total = np.zeros(3)
        avoided: List[int] = []
        for handle in snapshot.nearby(position, p.avoidance_radius, HandleKind.DRONE):
            if handle.ident == self.ident:
                continue
            total += repulsion(position - handle.position, self.drone_avoidance_strength, p.max_avoidance_force)
            avoided.append(handle.ident)
        for handle in snapshot.nearby(position, p.avoidance_radius, HandleKind.OBSTACLE):
            total += repulsion(position - handle.position, p.building_avoidance_strength, p.max_avoidance_force)
        return total, avoided

    # --- tick: mutating half ---

    def commit(self, plan: Optional[StepPlan], dt: float) -> None:
        if plan is None or not self.active:
            return

        phase = self.state
        for other_id in plan.avoided:
            self.metrics.avoidance_maneuvers += 1
            self.bus.publish(AvoidanceManeuver(self, other_id))

        if plan.new_position is not None:
            self.body.move_to(plan.new_position)
            self._update_stuck_detection(dt)

        self._track_proximity(phase, plan.neighbours, dt)
        if self.destroyed:
            return

        arrived = plan.arrived
        if not arrived and phase in MOVEMENT_STATES and self.state is phase:
            remaining = float(np.linalg.norm(self.leg_target() - self.position))
            arrived = remaining <= self.params.delivery_distance_threshold + ARRIVAL_TOLERANCE
        if arrived and self.state is phase:
            self._enter(NEXT_STATE[phase])

    def _update_stuck_detection(self, dt: float) -> None:
        p = self.params
        self._check_timer += dt
        if self._check_timer + TIMER_TOLERANCE < p.position_check_interval:
            return

        displacement = float(np.linalg.norm(self.position - self._last_check_position))
        if self.state is not FlightState.DELIVER and displacement < p.stuck_displacement:
            self.stuck_time += self._check_timer
            if self.stuck_time > p.stuck_time_threshold:
                if not self.bottlenecked:
                    self.bottlenecked = True
                    self.logger.warning("Stuck for %.1f s; marking bottlenecked.", self.stuck_time)
                    self.bus.publish(DroneFlagsChanged(self))
                self.drone_avoidance_strength = max(
                    self.drone_avoidance_strength * 0.5,
                    p.min_drone_avoidance_strength,
                )
                self.logger.debug("Avoidance strength decayed to %.2f.", self.drone_avoidance_strength)
        else:
            self.stuck_time = 0.0
            self.drone_avoidance_strength = min(
                self.drone_avoidance_strength / 0.5,
                self._initial_drone_avoidance_strength,
            )

        self._last_check_position = self.position.copy()
        self._check_timer = 0.0

    def _track_proximity(self, phase: FlightState, neighbours: List[int], dt: float) -> None:
        m = self.metrics
        in_proximity = bool(neighbours)
        for other_id in neighbours:
            if other_id not in m.encountered:
                m.encountered.add(other_id)
                self.bus.publish(DroneEncounter(self, other_id))

        if phase in HORIZONTAL_STATES:
            m.flight_time_horizontal += dt
            if in_proximity:
                m.flight_time_horizontal_proximity += dt
        elif phase in VERTICAL_STATES:
            m.flight_time_vertical += dt
            if in_proximity:
                m.flight_time_vertical_proximity += dt

        m.flight_time += dt
        if in_proximity:
            m.flight_time_in_proximity += dt

        self.bus.publish(FlightTimeUpdate(self, m.flight_time))
        if in_proximity:
            self.bus.publish(FlightTimeInProximityUpdate(self, m.flight_time_in_proximity))

    # --- state machine ---

    def _enter(self, state: FlightState) -> None:
        previous = self.state
        self.state = state
        self.logger.debug("%s -> %s", previous.value if previous else "-", state.value)
        self.bus.publish(FlightStateChanged(self, previous, state))
        hook = self._entry_hooks.get(state)
        if hook is not None and not self.destroyed:
            hook()

    def _on_enter_deliver(self) -> None:
        self.logger.debug(
            "Delivering at (%.1f, %.1f, %.1f).",
            self.target_position[0],
            self.target_position[1],
            self.target_position[2],
        )
        self.bus.publish(DemandCommitted(self, self.demand))
        self._delivery_timer = self.scheduler.call_later(
            self.params.delivery_time,
            self._finish_delivery,
            label=f"deliver-{self.ident}",
        )

    def _finish_delivery(self) -> None:
        self._delivery_timer = None
        if self.destroyed:
            return
        self.delivered = True
        self.bus.publish(DroneFlagsChanged(self))
        self._enter(FlightState.ASCEND_BACK)

    def _on_enter_completed(self) -> None:
        self.bus.publish(DroneFlagsChanged(self))
        if self.destroyed:
            return
        if self.delivered:
            self.logger.debug("Returned to truck after delivery.")
            self.bus.publish(SuccessfulDelivery(self))
        else:
            self.logger.info("Returned to truck without delivering.")
            self.bus.publish(FailedDelivery(self))
        if not self.destroyed:
            self._destroy_timer = self.scheduler.call_soon(self.destroy, label=f"destroy-{self.ident}")

    def destroy(self) -> None:
        """Stop the drone for good and cancel anything it is waiting on."""

        if self.destroyed:
            return
        self.destroyed = True
        for timer in (self._delivery_timer, self._destroy_timer):
            if timer is not None:
                timer.cancel()
        self._delivery_timer = None
        self._destroy_timer = None
