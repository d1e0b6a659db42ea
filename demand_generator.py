"""
Demand point generation by rejection sampling around source locations.

A candidate is drawn uniformly from a horizontal disk around a randomly
chosen source and accepted only if there is ground directly below it and no
obstacle within the clearance distance. Falling short of the requested count
is reported, not raised: a partial demand set is still a valid trial.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

import numpy as np

from city_world import HandleKind, SpatialQuery


LOGGER = logging.getLogger("demand_generator")

MAX_RETRIES_PER_POINT = 100
ATTEMPTS_PER_POINT = 10


@dataclass(frozen=True, eq=False)
class DemandPoint:
    """A delivery destination on the ground."""

    ident: int
    position: np.ndarray

    def __post_init__(self):
        position = np.array(self.position, dtype=float)
        position.setflags(write=False)
        object.__setattr__(self, "position", position)


class DemandGenerator:
    def __init__(
        self,
        world: SpatialQuery,
        rng: np.random.Generator,
        clearance: float = 1.0,
        max_retries: int = MAX_RETRIES_PER_POINT,
    ):
        self.world = world
        self.rng = rng
        self.clearance = clearance
        self.max_retries = max_retries

    def generate(self, sources: Sequence[Sequence[float]], count: int, radius: float) -> List[DemandPoint]:
        """Return up to ``count`` ground-snapped, obstacle-free, distinct demand points."""

        if count <= 0:
            return []
        if not len(sources):
            LOGGER.error("No demand sources available; cannot place %d demand points.", count)
            return []

        points: List[DemandPoint] = []
        seen: Set[Tuple[float, float]] = set()
        attempts = 0
        max_attempts = count * ATTEMPTS_PER_POINT
        while len(points) < count and attempts < max_attempts:
            attempts += 1
            source = np.asarray(sources[int(self.rng.integers(len(sources)))], dtype=float)
            candidate = self._sample_near(source, radius)
            accepted = self._validate(candidate)
            if accepted is None:
                continue
            key = (round(float(accepted[0]), 6), round(float(accepted[1]), 6))
            if key in seen:
                continue
            seen.add(key)
            points.append(DemandPoint(ident=len(points), position=accepted))

        if len(points) < count:
            LOGGER.warning(
                "Could not find enough valid demand positions: placed %d of %d after %d attempts.",
                len(points),
                count,
                attempts,
            )
        else:
            LOGGER.debug("Placed %d demand points in %d attempts.", len(points), attempts)
        return points

    def _sample_near(self, source: np.ndarray, radius: float) -> np.ndarray:
        """Resample around ``source`` until a valid spot is found or retries run out."""

        candidate = source
        for _ in range(self.max_retries):
            distance = radius * math.sqrt(self.rng.random())
            angle = self.rng.uniform(0.0, 2.0 * math.pi)
            candidate = source + np.array([distance * math.cos(angle), distance * math.sin(angle), 0.0])
            if self._validate(candidate) is not None:
                return candidate
        LOGGER.warning(
            "Could not find a valid position near source (%.1f, %.1f) after %d attempts.",
            source[0],
            source[1],
            self.max_retries,
        )
        return candidate

    def _validate(self, candidate: np.ndarray) -> Optional[np.ndarray]:
        """Ground-snapped copy of ``candidate`` if it is a legal drop site, else None."""

        height = self.world.ground_height(candidate)
        if height is None:
            return None
        snapped = np.array([candidate[0], candidate[1], height])
        if self.world.nearby(snapped, self.clearance, HandleKind.OBSTACLE):
            return None
        return snapped
