"""
Outcome categories, per-trial metric aggregation, and the CSV report.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from drone_agent import DroneAgent
    from fleet_coordinator import TrialConfig


LOGGER = logging.getLogger("trial_metrics")


class Category(str, Enum):
    """Outcome of a drone: delivered or not, bottlenecked or not."""

    SUCCESS_NO_BOTTLENECK = "SuccessfulNoBottlenecks"
    SUCCESS_BOTTLENECK = "SuccessfulBottlenecks"
    FAIL_NO_BOTTLENECK = "UnsuccessfulNoBottlenecks"
    FAIL_BOTTLENECK = "UnsuccessfulBottlenecks"

    @classmethod
    def classify(cls, delivered: bool, bottlenecked: bool) -> "Category":
        if delivered:
            return cls.SUCCESS_BOTTLENECK if bottlenecked else cls.SUCCESS_NO_BOTTLENECK
        return cls.FAIL_BOTTLENECK if bottlenecked else cls.FAIL_NO_BOTTLENECK

    @property
    def successful(self) -> bool:
        return self in (Category.SUCCESS_NO_BOTTLENECK, Category.SUCCESS_BOTTLENECK)


CATEGORY_ORDER = [
    Category.SUCCESS_NO_BOTTLENECK,
    Category.SUCCESS_BOTTLENECK,
    Category.FAIL_NO_BOTTLENECK,
    Category.FAIL_BOTTLENECK,
]
METRIC_COLUMNS = [
    "Count",
    "Encounters",
    "UniqueDrones",
    "AvoidanceManeuvers",
    "FlightTime",
    "FlightTimeInProximity",
    "FlightTimeHorizontal",
    "FlightTimeHorizontalProximity",
    "FlightTimeVertical",
    "FlightTimeVerticalProximity",
]
CSV_HEADER = ["TotalDrones", "TotalTrucks", "Method"] + [
    f"{category.value}_{column}" for category in CATEGORY_ORDER for column in METRIC_COLUMNS
]


class CategoryLedger:
    """
    Category membership for every drone spawned in the current trial.

    Each drone lives in exactly one bucket. Moves are remove-then-add on the
    same call, and only the coordinator calls in here.
    """

    def __init__(self):
        self._buckets: Dict[Category, Dict[int, "DroneAgent"]] = {category: {} for category in CATEGORY_ORDER}
        self._category_of: Dict[int, Category] = {}

    def register(self, agent: "DroneAgent") -> None:
        if agent.ident in self._category_of:
            raise ValueError(f"Drone {agent.ident} is already categorised.")
        self._buckets[Category.FAIL_NO_BOTTLENECK][agent.ident] = agent
        self._category_of[agent.ident] = Category.FAIL_NO_BOTTLENECK

    def reevaluate(self, agent: "DroneAgent") -> Category:
        current = self._category_of[agent.ident]
        updated = Category.classify(agent.delivered, agent.bottlenecked)
        if updated is not current:
            del self._buckets[current][agent.ident]
            self._buckets[updated][agent.ident] = agent
            self._category_of[agent.ident] = updated
            LOGGER.debug("Drone %d moved from %s to %s.", agent.ident, current.value, updated.value)
        return updated

    def category_of(self, ident: int) -> Optional[Category]:
        return self._category_of.get(ident)

    def members(self, category: Category) -> List["DroneAgent"]:
        return list(self._buckets[category].values())

    def counts(self) -> Dict[Category, int]:
        return {category: len(self._buckets[category]) for category in CATEGORY_ORDER}

    @property
    def total(self) -> int:
        return len(self._category_of)

    @property
    def success_count(self) -> int:
        return sum(len(bucket) for category, bucket in self._buckets.items() if category.successful)

    def reset(self) -> None:
        for bucket in self._buckets.values():
            bucket.clear()
        self._category_of.clear()


@dataclass
class CategoryTotals:
    count: int = 0
    encounters: int = 0
    unique_drones: int = 0
    avoidance_maneuvers: int = 0
    flight_time: float = 0.0
    flight_time_in_proximity: float = 0.0
    flight_time_horizontal: float = 0.0
    flight_time_horizontal_proximity: float = 0.0
    flight_time_vertical: float = 0.0
    flight_time_vertical_proximity: float = 0.0

    @classmethod
    def accumulate(cls, agents: Iterable["DroneAgent"]) -> "CategoryTotals":
        totals = cls()
        for agent in agents:
            m = agent.metrics
            totals.count += 1
            totals.encounters += m.unique_encounters
            totals.unique_drones += len(m.encountered)
            totals.avoidance_maneuvers += m.avoidance_maneuvers
            totals.flight_time += m.flight_time
            totals.flight_time_in_proximity += m.flight_time_in_proximity
            totals.flight_time_horizontal += m.flight_time_horizontal
            totals.flight_time_horizontal_proximity += m.flight_time_horizontal_proximity
            totals.flight_time_vertical += m.flight_time_vertical
            totals.flight_time_vertical_proximity += m.flight_time_vertical_proximity
        return totals

    def as_row(self) -> list:
        return [
            self.count,
            self.encounters,
            self.unique_drones,
            self.avoidance_maneuvers,
            self.flight_time,
            self.flight_time_in_proximity,
            self.flight_time_horizontal,
            self.flight_time_horizontal_proximity,
            self.flight_time_vertical,
            self.flight_time_vertical_proximity,
        ]


@dataclass
class TrialMetrics:
    """One aggregated report row."""

    demand_count: int
    truck_count: int
    method: str
    run_index: int
    drones_spawned: int
    timed_out: bool = False
    categories: Dict[Category, CategoryTotals] = field(
        default_factory=lambda: {category: CategoryTotals() for category in CATEGORY_ORDER}
    )

    @classmethod
    def from_ledger(
        cls,
        trial: "TrialConfig",
        ledger: CategoryLedger,
        drones_spawned: int,
        timed_out: bool = False,
    ) -> "TrialMetrics":
        categories = {category: CategoryTotals.accumulate(ledger.members(category)) for category in CATEGORY_ORDER}
        return cls(
            demand_count=trial.demand_count,
            truck_count=trial.truck_count,
            method=trial.method.value,
            run_index=trial.run_index,
            drones_spawned=drones_spawned,
            timed_out=timed_out,
            categories=categories,
        )

    @property
    def category_total(self) -> int:
        return sum(totals.count for totals in self.categories.values())

    def to_row(self) -> list:
        row = [self.demand_count, self.truck_count, self.method]
        for category in CATEGORY_ORDER:
            row.extend(self.categories[category].as_row())
        return row


class ResultsTable:
    """Rows recorded during a sweep, exportable as CSV at any point."""

    def __init__(self):
        self.rows: List[TrialMetrics] = []

    def record(self, metrics: TrialMetrics) -> None:
        self.rows.append(metrics)

    def __len__(self) -> int:
        return len(self.rows)

    def export_csv(self, directory: str, timestamp: Optional[datetime] = None) -> Path:
        stamp = (timestamp or datetime.now()).strftime("%Y%m%d_%H%M%S")
        path = Path(directory) / f"SimulationResults_{stamp}.csv"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(CSV_HEADER)
            for metrics in self.rows:
                writer.writerow(metrics.to_row())
        LOGGER.info("Results exported to %s (%d rows).", path, len(self.rows))
        return path
