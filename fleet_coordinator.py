"""
Fleet coordinator - runs the experiment sweep.

For every (method, run, truck count, demand count) combination the
coordinator generates demand, clusters it among trucks, launches one drone
per demand point with a staggered delay, and steps the simulation until every
scheduled drone has returned successfully or the trial times out. One metrics
row is recorded per trial; the table is exported as CSV when the sweep ends,
or best-effort when it is interrupted.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from city_world import CityWorld
from demand_generator import DemandGenerator, DemandPoint
from drone_agent import (
    DemandCommitted,
    DroneAgent,
    DroneFlagsChanged,
    DroneParameters,
    FailedDelivery,
    SuccessfulDelivery,
)
from fleet_config import PlacementMethod, SimulationConfig, parse_args
from sim_runtime import EventBus, Scheduler, SubscriptionScope, TimerHandle
from trial_metrics import CATEGORY_ORDER, CategoryLedger, ResultsTable, TrialMetrics
from truck_clustering import ClusteringError, Truck, cluster, place_trucks


LOGGER = logging.getLogger("fleet_coordinator")

TIMEOUT_CHECK_INTERVAL = 1.0
METHOD_ORDER = (PlacementMethod.KMEANS, PlacementMethod.RANDOM)


@dataclass(frozen=True)
class TrialConfig:
    demand_count: int
    truck_count: int
    method: PlacementMethod
    run_index: int


def sweep_order(config: SimulationConfig) -> Iterator[TrialConfig]:
    """Demand count varies fastest, then truck count, then run, then method."""

    for method in METHOD_ORDER:
        for run_index in range(config.number_of_runs):
            for truck_count in config.truck_counts:
                for demand_count in config.demand_counts:
                    yield TrialConfig(demand_count, truck_count, method, run_index)


@dataclass
class Trial:
    """Everything scoped to one trial; torn down as a unit."""

    config: TrialConfig
    scheduler: Scheduler
    scope: SubscriptionScope
    demand: Dict[int, DemandPoint] = field(default_factory=dict)
    trucks: List[Truck] = field(default_factory=list)
    agents: Dict[int, DroneAgent] = field(default_factory=dict)
    expected_drones: int = 0
    drones_spawned: int = 0
    completing: bool = False
    finished: bool = False
    timed_out: bool = False
    aborted: bool = False
    timeout_timer: Optional[TimerHandle] = None
    metrics: Optional[TrialMetrics] = None

    @property
    def elapsed(self) -> float:
        return self.scheduler.now


class FleetCoordinator:
    def __init__(
        self,
        config: SimulationConfig,
        world: Optional[CityWorld] = None,
        rng: Optional[np.random.Generator] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)
        self.world = world if world is not None else CityWorld.generate(
            self.rng,
            map_size=config.map_size,
            building_count=config.building_count,
            min_size=config.building_min_size,
            max_size=config.building_max_size,
            min_height=config.building_min_height,
            max_height=config.building_max_height,
        )
        self.bus = bus if bus is not None else EventBus()
        self.drone_params = DroneParameters.from_config(config)
        self.ledger = CategoryLedger()
        self.results = ResultsTable()
        self.trial: Optional[Trial] = None
        self.exported_path: Optional[Path] = None
        self._drone_ids = itertools.count(1)

    # --- sweep ---

    def trials(self) -> List[TrialConfig]:
        return list(sweep_order(self.config))

    async def run(self) -> Path:
        """Run the whole sweep and export the results table."""

        plan = self.trials()
        LOGGER.info("Starting sweep of %d trials.", len(plan))
        for index, trial_config in enumerate(plan, start=1):
            LOGGER.info(
                "Progress: %d/%d - %d demand points, %d trucks, %s, run %d.",
                index,
                len(plan),
                trial_config.demand_count,
                trial_config.truck_count,
                trial_config.method.value,
                trial_config.run_index + 1,
            )
            await self.run_trial(trial_config)
            if index < len(plan) and self.config.trial_cooldown > 0:
                await asyncio.sleep(self.config.trial_cooldown)

        LOGGER.info("All simulations completed.")
        return self.export_results()

    async def run_trial(self, trial_config: TrialConfig) -> TrialMetrics:
        try:
            trial = self.start_trial(trial_config)
            while not trial.finished:
                self.step()
                await self._pace()
        except asyncio.CancelledError:
            self._abandon_trial("cancelled")
            raise
        except Exception:
            LOGGER.exception("Trial %s failed; recording partial results and moving on.", trial_config)
            self._abandon_trial("error")
        return self.results.rows[-1]

    async def _pace(self) -> None:
        if self.config.realtime_factor > 0:
            await asyncio.sleep(self.config.tick / self.config.realtime_factor)
        else:
            await asyncio.sleep(0)

    # --- trial lifecycle ---

    def start_trial(self, trial_config: TrialConfig) -> Trial:
        if self.trial is not None and not self.trial.finished:
            raise RuntimeError("Previous trial is still running.")

        self.ledger.reset()
        trial = Trial(config=trial_config, scheduler=Scheduler(), scope=self.bus.scope())
        self.trial = trial
        trial.scope.subscribe(SuccessfulDelivery, self._on_delivery_finished)
        trial.scope.subscribe(FailedDelivery, self._on_delivery_finished)
        trial.scope.subscribe(DroneFlagsChanged, self._on_flags_changed)
        trial.scope.subscribe(DemandCommitted, self._on_demand_committed)

        generator = DemandGenerator(self.world, self.rng, clearance=self.config.obstacle_clearance)
        points = generator.generate(self.world.sources(), trial_config.demand_count, self.config.spawn_radius)
        trial.demand = {point.ident: point for point in points}

        try:
            result = cluster(
                points,
                trial_config.truck_count,
                trial_config.method,
                self.rng,
                epsilon=self.config.kmeans_epsilon,
                max_iterations=self.config.kmeans_max_iterations,
            )
            trial.trucks = place_trucks(
                self.world,
                result,
                self.rng,
                min_distance=self.config.min_distance_between_trucks,
                max_attempts=self.config.max_attempts,
                jitter=self.config.truck_jitter,
                search_radius=self.config.truck_search_radius,
            )
        except ClusteringError as exc:
            LOGGER.error("Trial aborted before launch: %s", exc)
            trial.aborted = True
            self.complete_trial("aborted")
            return trial

        for truck in trial.trucks:
            for order, demand in enumerate(truck.deployment_order()):
                trial.scheduler.call_later(
                    order * self.config.deployment_delay,
                    self._deploy_drone,
                    truck,
                    demand,
                    label=f"deploy-truck{truck.ident}-{order}",
                )
                trial.expected_drones += 1

        LOGGER.info(
            "Trial ready: %d demand points, %d trucks placed, %d drones scheduled.",
            len(points),
            len(trial.trucks),
            trial.expected_drones,
        )
        if trial.expected_drones == 0:
            LOGGER.warning("No drones to launch in this trial.")
            self.complete_trial("empty")
            return trial

        trial.timeout_timer = trial.scheduler.call_every(
            TIMEOUT_CHECK_INTERVAL,
            self._check_timeout,
            label="timeout-check",
        )
        return trial

    def step(self) -> None:
        """Advance the active trial by one tick."""

        trial = self.trial
        if trial is None or trial.finished:
            return
        dt = self.config.tick
        trial.scheduler.advance(dt)
        if trial.finished:
            return
        self._prune_destroyed(trial)

        snapshot = self.world.snapshot()
        agents = list(trial.agents.values())
        plans = [agent.plan(snapshot, dt) for agent in agents]
        for agent, plan in zip(agents, plans):
            if trial.finished:
                return
            agent.commit(plan, dt)
        self._prune_destroyed(trial)

    def complete_trial(self, reason: str) -> Optional[TrialMetrics]:
        """Record the trial's row and tear everything down. Safe to call more than once."""

        trial = self.trial
        if trial is None or trial.completing or trial.finished:
            return None
        trial.completing = True
        trial.scope.close()

        metrics = TrialMetrics.from_ledger(
            trial.config,
            self.ledger,
            drones_spawned=trial.drones_spawned,
            timed_out=trial.timed_out,
        )
        if metrics.category_total != trial.drones_spawned:
            LOGGER.error(
                "Category total %d does not match %d drones spawned.",
                metrics.category_total,
                trial.drones_spawned,
            )
        self.results.record(metrics)
        trial.metrics = metrics

        counts = self.ledger.counts()
        LOGGER.info(
            "Trial complete (%s) at t=%.1f s: %s",
            reason,
            trial.elapsed,
            ", ".join(f"{category.value}={counts[category]}" for category in CATEGORY_ORDER),
        )
        self._teardown(trial)
        trial.completing = False
        trial.finished = True
        return metrics

    def _teardown(self, trial: Trial) -> None:
        trial.scheduler.cancel_all()
        for agent in trial.agents.values():
            agent.destroy()
            self.world.remove_drone_body(agent.ident)
        trial.agents.clear()
        self.world.clear_drone_bodies()
        trial.demand.clear()
        trial.trucks.clear()

    def _abandon_trial(self, reason: str) -> None:
        trial = self.trial
        if trial is None or trial.finished:
            return
        if trial.completing:
            # Completion itself failed; just release what the trial holds.
            self._teardown(trial)
            trial.finished = True
            return
        self.complete_trial(reason)

    def _prune_destroyed(self, trial: Trial) -> None:
        for ident in [ident for ident, agent in trial.agents.items() if agent.destroyed]:
            del trial.agents[ident]
            self.world.remove_drone_body(ident)

    # --- scheduled continuations ---

    def _deploy_drone(self, truck: Truck, demand: DemandPoint) -> None:
        trial = self.trial
        ident = next(self._drone_ids)
        body = self.world.add_drone_body(ident, truck.position)
        agent = DroneAgent(
            ident=ident,
            body=body,
            demand=demand,
            truck_position=truck.position,
            params=self.drone_params,
            scheduler=trial.scheduler,
            bus=self.bus,
            rng=self.rng,
        )
        self.ledger.register(agent)
        trial.agents[ident] = agent
        trial.drones_spawned += 1
        agent.start()

    def _check_timeout(self) -> None:
        trial = self.trial
        if trial is None or trial.completing or trial.finished:
            return
        if trial.elapsed > self.config.max_simulation_time:
            LOGGER.warning(
                "Simulation timeout reached after %.1f s with %d/%d successful deliveries. Moving to next simulation.",
                trial.elapsed,
                self.ledger.success_count,
                trial.expected_drones,
            )
            trial.timed_out = True
            self.complete_trial("timeout")

    # --- event handlers ---

    def _on_flags_changed(self, event: DroneFlagsChanged) -> None:
        self.ledger.reevaluate(event.agent)

    def _on_demand_committed(self, event: DemandCommitted) -> None:
        trial = self.trial
        if trial is not None and trial.demand.pop(event.demand.ident, None) is not None:
            LOGGER.debug("Demand point %d delivered by drone %d.", event.demand.ident, event.agent.ident)

    def _on_delivery_finished(self, event) -> None:
        self.ledger.reevaluate(event.agent)
        trial = self.trial
        if trial is None or trial.completing or trial.finished:
            return
        if self.ledger.success_count >= trial.expected_drones:
            self.complete_trial("all deliveries completed")

    # --- export ---

    def export_results(self) -> Path:
        self.exported_path = self.results.export_csv(self.config.output_dir)
        return self.exported_path

    def flush_results(self) -> Optional[Path]:
        """Export whatever has been recorded, unless the sweep already exported."""

        if self.exported_path is not None:
            return self.exported_path
        try:
            return self.export_results()
        except OSError:
            LOGGER.exception("Could not write partial results.")
            return None


async def async_main(argv: Optional[Sequence[str]] = None) -> None:
    """Async entrypoint with error handling."""

    config = parse_args(argv)
    coordinator = FleetCoordinator(config)
    _cancel_on_sigterm()
    try:
        await coordinator.run()
    except asyncio.CancelledError:
        LOGGER.warning("Sweep cancelled after %d trials.", len(coordinator.results))
        raise
    except Exception:
        LOGGER.exception("Sweep failed due to an unexpected error.")
        raise
    finally:
        coordinator.flush_results()


def _cancel_on_sigterm() -> None:
    """Turn SIGTERM into cancellation of the running sweep so partial results are flushed."""

    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform or outside the main thread.
        LOGGER.debug("SIGTERM handler not installed; termination will not flush results.")


def main() -> None:
    """Synchronous entrypoint to run the asyncio program."""

    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        LOGGER.warning("Sweep interrupted by user.")
    except asyncio.CancelledError:
        LOGGER.warning("Sweep terminated.")


if __name__ == "__main__":
    main()
