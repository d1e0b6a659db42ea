"""
Spatial world the fleet flies in.

``CityWorld`` answers the two queries every other component relies on:
``nearby`` (drones or obstacles within a radius of a point) and
``ground_height`` (height of the ground directly below a point, or ``None``
when there is no ground there). Buildings are shapely footprints extruded to
a height and indexed with an ``STRtree``; drone neighbour queries run against
a frozen ``SpatialSnapshot`` backed by a scipy ``cKDTree`` so that every
agent in a tick sees the same positions.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import numpy as np
import shapely
from scipy.spatial import cKDTree
from shapely import affinity
from shapely.geometry import Point, Polygon, box
from shapely.ops import nearest_points
from shapely.strtree import STRtree


LOGGER = logging.getLogger("city_world")


class HandleKind(str, Enum):
    DRONE = "drone"
    OBSTACLE = "obstacle"


@dataclass(frozen=True, eq=False)
class Handle:
    """Result of a spatial query: what was found and where it is."""

    kind: HandleKind
    ident: int
    position: np.ndarray


class SpatialQuery(Protocol):
    """Read-only spatial queries consumed by demand generation, placement and agents."""

    def nearby(self, point: Sequence[float], radius: float, kind: HandleKind) -> List[Handle]:
        ...

    def ground_height(self, point: Sequence[float]) -> Optional[float]:
        ...


@dataclass
class Building:
    ident: int
    footprint: Polygon
    height: float

    @property
    def base_position(self) -> np.ndarray:
        centroid = self.footprint.centroid
        return np.array([centroid.x, centroid.y, 0.0])

    def closest_point(self, point: np.ndarray) -> np.ndarray:
        """Closest point of the extruded footprint to ``point``."""

        nearest, _ = nearest_points(self.footprint, Point(point[0], point[1]))
        z = min(max(point[2], 0.0), self.height)
        return np.array([nearest.x, nearest.y, z])


class KinematicBody:
    """Position holder standing in for the external physics integrator."""

    def __init__(self, position: Sequence[float]):
        self.position = np.asarray(position, dtype=float).copy()

    def move_to(self, position: np.ndarray) -> None:
        self.position = np.asarray(position, dtype=float).copy()


class CityWorld:
    """Buildings on a bounded ground plane, plus the drone bodies flying above it."""

    def __init__(
        self,
        buildings: Iterable[Building],
        ground: Polygon,
        ground_level: float = 0.0,
        demand_sources: Optional[Iterable[Sequence[float]]] = None,
    ):
        self.buildings: List[Building] = list(buildings)
        self.ground = ground
        self.ground_level = ground_level
        self._demand_sources = (
            [np.asarray(source, dtype=float) for source in demand_sources] if demand_sources is not None else None
        )
        shapely.prepare(self.ground)
        self._building_index = STRtree([b.footprint for b in self.buildings]) if self.buildings else None
        self._drone_bodies: Dict[int, KinematicBody] = {}

    @classmethod
    def generate(
        cls,
        rng: np.random.Generator,
        map_size: float = 2000.0,
        building_count: int = 60,
        min_size: float = 15.0,
        max_size: float = 40.0,
        min_height: float = 10.0,
        max_height: float = 45.0,
        spacing: float = 5.0,
    ) -> "CityWorld":
        """Scatter non-overlapping, randomly rotated rectangular buildings over a square map."""

        ground = box(0.0, 0.0, map_size, map_size)
        margin = max_size
        buildings: List[Building] = []
        attempts = 0
        max_attempts = max(1, building_count) * 20
        while len(buildings) < building_count and attempts < max_attempts:
            attempts += 1
            cx, cy = rng.uniform(margin, map_size - margin, size=2)
            width, depth = rng.uniform(min_size, max_size, size=2)
            footprint = box(cx - width / 2.0, cy - depth / 2.0, cx + width / 2.0, cy + depth / 2.0)
            footprint = affinity.rotate(footprint, float(rng.uniform(0.0, 90.0)), origin="centroid")
            clearance = footprint.buffer(spacing)
            if any(clearance.intersects(other.footprint) for other in buildings):
                continue
            height = float(rng.uniform(min_height, max_height))
            buildings.append(Building(ident=len(buildings), footprint=footprint, height=height))

        if len(buildings) < building_count:
            LOGGER.warning(
                "Placed only %d of %d buildings after %d attempts.",
                len(buildings),
                building_count,
                attempts,
            )
        else:
            LOGGER.debug("Generated city with %d buildings on a %.0f m map.", len(buildings), map_size)
        return cls(buildings, ground)

    # --- SpatialQuery ---

    def nearby(self, point: Sequence[float], radius: float, kind: HandleKind) -> List[Handle]:
        if kind is HandleKind.DRONE:
            return self.snapshot().nearby(point, radius, kind)
        return self._nearby_obstacles(np.asarray(point, dtype=float), radius)

    def ground_height(self, point: Sequence[float]) -> Optional[float]:
        if shapely.intersects_xy(self.ground, float(point[0]), float(point[1])):
            return self.ground_level
        return None

    # --- extended queries ---

    def sources(self) -> List[np.ndarray]:
        """Demand sources: explicit ones if given, otherwise building base positions."""

        if self._demand_sources is not None:
            return list(self._demand_sources)
        return [b.base_position for b in self.buildings]

    def nearest_ground_position(self, point: Sequence[float], search_radius: float) -> Optional[np.ndarray]:
        """Closest ground position to ``point`` within ``search_radius``, snapped to ground height."""

        point = np.asarray(point, dtype=float)
        height = self.ground_height(point)
        if height is not None:
            return np.array([point[0], point[1], height])
        query = Point(point[0], point[1])
        if self.ground.distance(query) > search_radius:
            return None
        nearest, _ = nearest_points(self.ground, query)
        return np.array([nearest.x, nearest.y, self.ground_level])

    # --- drone bodies ---

    def add_drone_body(self, ident: int, position: Sequence[float]) -> Optional[KinematicBody]:
        """Body for a drone launched at ``position``; None if there is no ground to launch from."""

        if self.ground_height(position) is None:
            LOGGER.error(
                "Cannot create body for drone %d at (%.1f, %.1f): no ground below.",
                ident,
                position[0],
                position[1],
            )
            return None
        return self.attach_drone_body(ident, KinematicBody(position))

    def attach_drone_body(self, ident: int, body: KinematicBody) -> KinematicBody:
        """Track a body supplied by an external integrator."""

        self._drone_bodies[ident] = body
        return body

    def remove_drone_body(self, ident: int) -> None:
        self._drone_bodies.pop(ident, None)

    def clear_drone_bodies(self) -> None:
        self._drone_bodies.clear()

    @property
    def drone_count(self) -> int:
        return len(self._drone_bodies)

    def snapshot(self) -> "SpatialSnapshot":
        """Freeze current drone positions for one tick of planning."""

        ids = np.fromiter(self._drone_bodies.keys(), dtype=int, count=len(self._drone_bodies))
        if len(ids):
            positions = np.vstack([body.position for body in self._drone_bodies.values()])
        else:
            positions = np.empty((0, 3))
        return SpatialSnapshot(self, ids, positions)

    def _nearby_obstacles(self, point: np.ndarray, radius: float) -> List[Handle]:
        if self._building_index is None:
            return []
        indices = self._building_index.query(Point(point[0], point[1]), predicate="dwithin", distance=radius)
        handles = []
        for index in np.sort(indices):
            building = self.buildings[int(index)]
            closest = building.closest_point(point)
            if math.dist(closest, point) <= radius:
                handles.append(Handle(HandleKind.OBSTACLE, building.ident, closest))
        return handles


class SpatialSnapshot:
    """Read-only view of drone positions at the start of a tick."""

    def __init__(self, world: CityWorld, ids: np.ndarray, positions: np.ndarray):
        self._world = world
        self.ids = ids
        self.positions = positions
        self._tree = cKDTree(positions) if len(positions) else None

    def nearby(self, point: Sequence[float], radius: float, kind: HandleKind) -> List[Handle]:
        if kind is HandleKind.OBSTACLE:
            return self._world.nearby(point, radius, kind)
        if self._tree is None:
            return []
        indices = sorted(self._tree.query_ball_point(np.asarray(point, dtype=float), r=radius))
        return [Handle(HandleKind.DRONE, int(self.ids[i]), self.positions[i]) for i in indices]

    def ground_height(self, point: Sequence[float]) -> Optional[float]:
        return self._world.ground_height(point)

    def position_of(self, ident: int) -> Optional[np.ndarray]:
        matches = np.flatnonzero(self.ids == ident)
        if not len(matches):
            return None
        return self.positions[matches[0]]
