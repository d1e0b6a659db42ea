"""
Partitioning of demand points among trucks, and truck placement.

Two partition methods are supported:

* ``KMeans`` - centroid clustering. Initial centers are sampled from the
  points with replacement, so duplicate centers and clusters that never
  receive a member are possible; empty clusters simply keep their center.
* ``Random`` - Fisher-Yates shuffle, equal contiguous chunks, remainder points
  handed to random trucks. Models several independent operators sharing a
  city.

Each resulting center is then turned into a ``Truck`` at a ground-valid
position that keeps ``min_distance`` from trucks already placed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from city_world import CityWorld
from demand_generator import DemandPoint
from fleet_config import PlacementMethod


LOGGER = logging.getLogger("truck_clustering")


class ClusteringError(RuntimeError):
    """Clustering produced output the trial cannot be built from."""


@dataclass
class ClusterResult:
    centers: List[Optional[np.ndarray]]
    assignment: List[List[DemandPoint]]
    iterations: int = 0
    converged: bool = True


@dataclass
class Truck:
    """Launch point for the drones serving its assigned demand."""

    ident: int
    position: np.ndarray
    assigned: List[DemandPoint] = field(default_factory=list)

    def deployment_order(self) -> List[DemandPoint]:
        """Assigned points sorted farthest-first, so long flights launch earliest."""

        return sorted(
            self.assigned,
            key=lambda point: float(np.linalg.norm(point.position - self.position)),
            reverse=True,
        )


def kmeans_step(
    positions: np.ndarray,
    centers: np.ndarray,
    epsilon: float,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    One assignment/update round.

    Returns (updated centers, labels, largest center shift). A center is only
    replaced when its cluster mean moved by more than ``epsilon``; empty
    clusters keep their center.
    """

    distances = np.linalg.norm(positions[:, None, :] - centers[None, :, :], axis=2)
    # argmin keeps the first minimum, so ties go to the lowest center index.
    labels = np.argmin(distances, axis=1)
    updated = centers.copy()
    max_shift = 0.0
    for index in range(len(centers)):
        members = positions[labels == index]
        if not len(members):
            continue
        mean = members.mean(axis=0)
        shift = float(np.linalg.norm(mean - centers[index]))
        max_shift = max(max_shift, shift)
        if shift > epsilon:
            updated[index] = mean
    return updated, labels, max_shift


def kmeans_clustering(
    positions: np.ndarray,
    k: int,
    rng: np.random.Generator,
    epsilon: float = 0.1,
    max_iterations: int = 1000,
) -> Tuple[np.ndarray, np.ndarray, int, bool]:
    """Cluster ``positions`` into ``k`` groups. Returns (centers, labels, iterations, converged)."""

    if k < 1:
        raise ValueError("k must be at least 1.")
    if not len(positions):
        raise ClusteringError("Cannot cluster an empty set of points.")

    centers = positions[rng.integers(len(positions), size=k)].astype(float)
    labels = np.zeros(len(positions), dtype=int)
    for iteration in range(1, max_iterations + 1):
        updated, labels, max_shift = kmeans_step(positions, centers, epsilon)
        if max_shift <= epsilon:
            return centers, labels, iteration, True
        centers = updated

    LOGGER.warning("K-means did not converge within %d iterations; using last centers.", max_iterations)
    return centers, labels, max_iterations, False


def fisher_yates_order(count: int, rng: np.random.Generator) -> List[int]:
    order = list(range(count))
    for i in range(count):
        j = int(rng.integers(i, count))
        order[i], order[j] = order[j], order[i]
    return order


def random_partition(count: int, k: int, rng: np.random.Generator) -> List[List[int]]:
    """Split indices ``0..count-1`` into ``k`` groups of near-equal size at random."""

    if k < 1:
        raise ValueError("k must be at least 1.")
    order = fisher_yates_order(count, rng)
    per_truck = count // k
    groups = [order[i * per_truck:(i + 1) * per_truck] for i in range(k)]
    for index in order[per_truck * k:]:
        groups[int(rng.integers(k))].append(index)
    return groups


def cluster(
    points: Sequence[DemandPoint],
    k: int,
    method: PlacementMethod,
    rng: np.random.Generator,
    epsilon: float = 0.1,
    max_iterations: int = 1000,
) -> ClusterResult:
    """Partition ``points`` among ``k`` trucks using ``method``."""

    positions = np.array([point.position for point in points], dtype=float).reshape(-1, 3)

    if method is PlacementMethod.KMEANS:
        centers, labels, iterations, converged = kmeans_clustering(positions, k, rng, epsilon, max_iterations)
        assignment = [[points[i] for i in np.flatnonzero(labels == index)] for index in range(k)]
        LOGGER.info(
            "K-means %s after %d iterations (%d points, %d clusters, %d empty).",
            "converged" if converged else "stopped",
            iterations,
            len(points),
            k,
            sum(1 for group in assignment if not group),
        )
        return ClusterResult(list(centers), assignment, iterations, converged)

    if method is PlacementMethod.RANDOM:
        groups = random_partition(len(points), k, rng)
        assignment = [[points[i] for i in group] for group in groups]
        centers = [positions[group].mean(axis=0) if group else None for group in groups]
        LOGGER.info("Random partition of %d points among %d trucks.", len(points), k)
        return ClusterResult(centers, assignment)

    raise ValueError(f"Unknown placement method {method!r}")


def _too_close(position: np.ndarray, placed: Sequence[Truck], min_distance: float) -> bool:
    return any(np.linalg.norm(position - truck.position) < min_distance for truck in placed)


def place_trucks(
    world: CityWorld,
    result: ClusterResult,
    rng: np.random.Generator,
    min_distance: float = 15.0,
    max_attempts: int = 10,
    jitter: float = 100.0,
    search_radius: float = 500.0,
) -> List[Truck]:
    """Create one truck per center that can be placed; the rest are dropped with a warning."""

    if len(result.centers) != len(result.assignment):
        raise ClusteringError(
            f"Mismatch between truck positions ({len(result.centers)}) "
            f"and demand assignments ({len(result.assignment)})."
        )

    trucks: List[Truck] = []
    for index, (center, assigned) in enumerate(zip(result.centers, result.assignment)):
        if center is None:
            LOGGER.debug("Truck slot %d has no assigned demand; skipping placement.", index)
            continue

        candidate = np.asarray(center, dtype=float)
        attempts = 0
        while (world.ground_height(candidate) is None or _too_close(candidate, trucks, min_distance)) and (
            attempts < max_attempts
        ):
            candidate = candidate + np.array([rng.uniform(-jitter, jitter), rng.uniform(-jitter, jitter), 0.0])
            attempts += 1

        if world.ground_height(candidate) is None or _too_close(candidate, trucks, min_distance):
            fallback = world.nearest_ground_position(candidate, search_radius)
            if fallback is None:
                LOGGER.warning(
                    "No ground within %.0f m of (%.1f, %.1f) for truck %d; slot dropped.",
                    search_radius,
                    candidate[0],
                    candidate[1],
                    index,
                )
                continue
            LOGGER.warning(
                "Could not find a valid position for truck %d within %d attempts; using nearest ground (%.1f, %.1f).",
                index,
                max_attempts,
                fallback[0],
                fallback[1],
            )
            candidate = fallback

        if _too_close(candidate, trucks, min_distance):
            LOGGER.warning("Truck %d position (%.1f, %.1f) too close to another truck; slot dropped.", index, candidate[0], candidate[1])
            continue

        position = np.array([candidate[0], candidate[1], world.ground_height(candidate)])
        trucks.append(Truck(ident=index, position=position, assigned=list(assigned)))
        LOGGER.debug(
            "Truck %d placed at (%.1f, %.1f) after %d attempts with %d deliveries.",
            index,
            position[0],
            position[1],
            attempts,
            len(assigned),
        )

    LOGGER.info("Placed %d of %d trucks.", len(trucks), len(result.centers))
    return trucks
