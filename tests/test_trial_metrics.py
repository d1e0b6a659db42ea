import csv
from datetime import datetime
from types import SimpleNamespace

import pytest

from drone_agent import DroneMetrics
from fleet_config import PlacementMethod
from fleet_coordinator import TrialConfig
from trial_metrics import (
    CATEGORY_ORDER,
    CSV_HEADER,
    Category,
    CategoryLedger,
    CategoryTotals,
    ResultsTable,
    TrialMetrics,
)


def fake_agent(ident, delivered=False, bottlenecked=False, **metrics):
    return SimpleNamespace(
        ident=ident,
        delivered=delivered,
        bottlenecked=bottlenecked,
        metrics=DroneMetrics(**metrics),
    )


@pytest.mark.parametrize(
    "delivered,bottlenecked,expected",
    [
        (True, False, Category.SUCCESS_NO_BOTTLENECK),
        (True, True, Category.SUCCESS_BOTTLENECK),
        (False, False, Category.FAIL_NO_BOTTLENECK),
        (False, True, Category.FAIL_BOTTLENECK),
    ],
)
def test_classify(delivered, bottlenecked, expected):
    assert Category.classify(delivered, bottlenecked) is expected


def test_new_drone_starts_unsuccessful_without_bottleneck():
    ledger = CategoryLedger()
    agent = fake_agent(1)
    ledger.register(agent)

    assert ledger.category_of(1) is Category.FAIL_NO_BOTTLENECK
    assert ledger.total == 1
    with pytest.raises(ValueError):
        ledger.register(agent)


def test_reevaluate_moves_between_buckets():
    ledger = CategoryLedger()
    agent = fake_agent(1)
    ledger.register(agent)

    agent.bottlenecked = True
    assert ledger.reevaluate(agent) is Category.FAIL_BOTTLENECK
    agent.delivered = True
    assert ledger.reevaluate(agent) is Category.SUCCESS_BOTTLENECK
    assert ledger.reevaluate(agent) is Category.SUCCESS_BOTTLENECK

    counts = ledger.counts()
    assert counts[Category.SUCCESS_BOTTLENECK] == 1
    assert sum(counts.values()) == 1
    assert ledger.success_count == 1
    assert ledger.members(Category.SUCCESS_BOTTLENECK) == [agent]


def test_reset_empties_every_bucket():
    ledger = CategoryLedger()
    for ident in range(3):
        ledger.register(fake_agent(ident))
    ledger.reset()

    assert ledger.total == 0
    assert all(count == 0 for count in ledger.counts().values())
    assert ledger.category_of(0) is None


def test_totals_sum_per_drone_metrics():
    agents = [
        fake_agent(1, encountered={2, 3}, avoidance_maneuvers=4, flight_time=10.0, flight_time_horizontal=6.0),
        fake_agent(2, encountered={1}, avoidance_maneuvers=1, flight_time=5.0, flight_time_in_proximity=2.0),
    ]
    totals = CategoryTotals.accumulate(agents)

    assert totals.count == 2
    assert totals.encounters == 3
    assert totals.unique_drones == 3
    assert totals.avoidance_maneuvers == 5
    assert totals.flight_time == pytest.approx(15.0)
    assert totals.flight_time_in_proximity == pytest.approx(2.0)
    assert totals.flight_time_horizontal == pytest.approx(6.0)


def test_header_layout():
    assert CSV_HEADER[:3] == ["TotalDrones", "TotalTrucks", "Method"]
    assert len(CSV_HEADER) == 3 + 4 * 10
    assert CSV_HEADER[3] == "SuccessfulNoBottlenecks_Count"
    assert CSV_HEADER[-1] == "UnsuccessfulBottlenecks_FlightTimeVerticalProximity"


def test_trial_row_from_ledger():
    ledger = CategoryLedger()
    delivered = fake_agent(1, flight_time=30.0)
    stranded = fake_agent(2, flight_time=12.0)
    for agent in (delivered, stranded):
        ledger.register(agent)
    delivered.delivered = True
    ledger.reevaluate(delivered)

    trial = TrialConfig(demand_count=5, truck_count=2, method=PlacementMethod.RANDOM, run_index=0)
    metrics = TrialMetrics.from_ledger(trial, ledger, drones_spawned=2)
    row = metrics.to_row()

    assert metrics.category_total == 2
    assert row[:3] == [5, 2, "Random"]
    assert len(row) == len(CSV_HEADER)
    assert row[3] == 1
    assert row[CSV_HEADER.index("SuccessfulNoBottlenecks_FlightTime")] == pytest.approx(30.0)
    assert row[CSV_HEADER.index("UnsuccessfulNoBottlenecks_Count")] == 1
    assert row[CSV_HEADER.index("UnsuccessfulBottlenecks_Count")] == 0


def test_export_writes_header_and_rows(tmp_path):
    table = ResultsTable()
    trial = TrialConfig(demand_count=3, truck_count=1, method=PlacementMethod.KMEANS, run_index=0)
    table.record(TrialMetrics.from_ledger(trial, CategoryLedger(), drones_spawned=0))

    path = table.export_csv(str(tmp_path / "out"), timestamp=datetime(2024, 5, 6, 7, 8, 9))

    assert path.name == "SimulationResults_20240506_070809.csv"
    with open(path, newline="", encoding="utf-8") as handle:
        rows = list(csv.reader(handle))
    assert rows[0] == CSV_HEADER
    assert rows[1][:3] == ["3", "1", "KMeans"]
    assert len(rows) == 2


def test_category_order_matches_report_columns():
    assert [category.value for category in CATEGORY_ORDER] == [
        "SuccessfulNoBottlenecks",
        "SuccessfulBottlenecks",
        "UnsuccessfulNoBottlenecks",
        "UnsuccessfulBottlenecks",
    ]


def test_success_count_tracks_successful_categories():
    ledger = CategoryLedger()
    agents = [fake_agent(ident) for ident in range(3)]
    for agent in agents:
        ledger.register(agent)
    agents[0].delivered = True
    agents[1].delivered = True
    agents[1].bottlenecked = True
    for agent in agents:
        ledger.reevaluate(agent)

    assert [category for category in CATEGORY_ORDER if category.successful] == [
        Category.SUCCESS_NO_BOTTLENECK,
        Category.SUCCESS_BOTTLENECK,
    ]
    assert ledger.success_count == 2
