"""
Runtime configuration for the truck-launched drone fleet simulator.

All tunables live in a single ``SimulationConfig`` dataclass. The command line
mirrors its fields one to one; a JSON file passed with ``--config`` provides a
base that explicit flags override.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence


LOGGER = logging.getLogger("fleet_config")


class PlacementMethod(str, Enum):
    """Truck positioning strategy for a trial."""

    KMEANS = "KMeans"
    RANDOM = "Random"


@dataclass
class SimulationConfig:
    """Sweep, world, and per-drone parameters."""

    # sweep
    demand_counts: List[int] = field(default_factory=lambda: [100, 150, 200, 250, 300])
    truck_counts: List[int] = field(default_factory=lambda: [20, 25, 30, 35, 40])
    number_of_runs: int = 15
    max_simulation_time: float = 600.0
    trial_cooldown: float = 1.0
    tick: float = 0.02
    realtime_factor: float = 0.0
    seed: Optional[int] = None
    output_dir: str = "."

    # demand generation
    spawn_radius: float = 100.0
    obstacle_clearance: float = 1.0

    # truck placement
    min_distance_between_trucks: float = 15.0
    max_attempts: int = 10
    truck_jitter: float = 100.0
    truck_search_radius: float = 500.0
    deployment_delay: float = 15.0
    kmeans_epsilon: float = 0.1
    kmeans_max_iterations: int = 1000

    # drone flight
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

    # stuck detection
    position_check_interval: float = 1.0
    stuck_displacement: float = 0.5
    stuck_time_threshold: float = 3.0
    min_drone_avoidance_strength: float = 10.0

    # generated city
    map_size: float = 2000.0
    building_count: int = 60
    building_min_size: float = 15.0
    building_max_size: float = 40.0
    building_min_height: float = 10.0
    building_max_height: float = 45.0

    @property
    def total_trials(self) -> int:
        return 2 * len(self.demand_counts) * len(self.truck_counts) * self.number_of_runs

    def validate(self) -> None:
        """Raise ValueError when the configuration cannot drive a sweep."""

        if not self.demand_counts or any(count < 0 for count in self.demand_counts):
            raise ValueError("demand_counts must be a non-empty list of non-negative integers.")
        if not self.truck_counts or any(count < 1 for count in self.truck_counts):
            raise ValueError("truck_counts must be a non-empty list of positive integers.")
        if self.number_of_runs < 1:
            raise ValueError("number_of_runs must be at least 1.")
        if self.tick <= 0:
            raise ValueError("tick must be positive.")
        if self.speed <= 0:
            raise ValueError("speed must be positive.")
        if self.max_simulation_time <= 0:
            raise ValueError("max_simulation_time must be positive.")
        if self.hover_height > self.flight_height:
            raise ValueError("hover_height cannot exceed flight_height.")
        if self.building_min_size > self.building_max_size:
            raise ValueError("building_min_size cannot exceed building_max_size.")
        if self.building_min_height > self.building_max_height:
            raise ValueError("building_min_height cannot exceed building_max_height.")

    def to_dict(self) -> dict:
        return asdict(self)


def load_config_file(path: str) -> SimulationConfig:
    """Load a JSON object whose keys are SimulationConfig field names."""

    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except OSError as exc:
        raise ValueError(f"Cannot read config file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file '{path}' is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config file '{path}' must contain a JSON object.")

    known = {f.name for f in fields(SimulationConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in '{path}': {', '.join(unknown)}")
    return SimulationConfig(**payload)


def _int_list(value: str) -> List[int]:
    """Parse a comma-separated list of integers."""

    items = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            items.append(int(token))
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"'{token}' is not an integer.") from exc
    if not items:
        raise argparse.ArgumentTypeError("Expected at least one integer.")
    return items


def build_parser() -> argparse.ArgumentParser:
    # Every option defaults to None so only explicit flags override the base config.
    parser = argparse.ArgumentParser(description="Truck-launched delivery drone fleet simulator.")
    parser.add_argument("--config", default=None, help="JSON file with SimulationConfig values.")
    parser.add_argument("--demand-counts", type=_int_list, default=None, help="Comma-separated demand point counts.")
    parser.add_argument("--truck-counts", type=_int_list, default=None, help="Comma-separated truck counts.")
    parser.add_argument("--number-of-runs", type=int, default=None, help="Repetitions per configuration.")
    parser.add_argument(
        "--max-simulation-time",
        type=float,
        default=None,
        help="Simulated seconds before a trial times out.",
    )
    parser.add_argument("--trial-cooldown", type=float, default=None, help="Wall-clock pause between trials.")
    parser.add_argument("--tick", type=float, default=None, help="Simulation step in seconds.")
    parser.add_argument(
        "--realtime-factor",
        type=float,
        default=None,
        help="Pace ticks to wall-clock time at this speed-up (0 runs as fast as possible).",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible sweeps.")
    parser.add_argument("--output-dir", default=None, help="Directory for the exported CSV report.")
    parser.add_argument("--spawn-radius", type=float, default=None, help="Demand spawn radius around buildings.")
    parser.add_argument(
        "--min-distance-between-trucks",
        type=float,
        default=None,
        help="Minimum separation between placed trucks.",
    )
    parser.add_argument("--max-attempts", type=int, default=None, help="Truck placement jitter attempts.")
    parser.add_argument("--deployment-delay", type=float, default=None, help="Seconds between drone launches per truck.")
    parser.add_argument("--flight-height", type=float, default=None, help="Cruise altitude in meters.")
    parser.add_argument("--hover-height", type=float, default=None, help="Hover height above the drop point.")
    parser.add_argument("--speed", type=float, default=None, help="Drone speed in m/s.")
    parser.add_argument("--delivery-time", type=float, default=None, help="Seconds spent delivering.")
    parser.add_argument(
        "--delivery-distance-threshold",
        type=float,
        default=None,
        help="Arrival distance for each flight leg.",
    )
    parser.add_argument("--avoidance-radius", type=float, default=None, help="Potential field radius.")
    parser.add_argument("--drone-avoidance-strength", type=float, default=None, help="Drone repulsion strength.")
    parser.add_argument("--building-avoidance-strength", type=float, default=None, help="Building repulsion strength.")
    parser.add_argument("--max-avoidance-force", type=float, default=None, help="Cap on a single repulsion term.")
    parser.add_argument("--proximity-radius", type=float, default=None, help="Radius used for encounter metrics.")
    parser.add_argument("--map-size", type=float, default=None, help="Side length of the generated city.")
    parser.add_argument("--building-count", type=int, default=None, help="Buildings in the generated city.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> SimulationConfig:
    """Parse command-line arguments into a SimulationConfig."""

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        config = load_config_file(args.config) if args.config else SimulationConfig()
    except ValueError as exc:
        parser.error(str(exc))

    overrides = {
        name: value
        for name, value in vars(args).items()
        if value is not None and name not in ("config", "log_level")
    }
    config = replace(config, **overrides)

    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))

    if config.output_dir:
        Path(config.output_dir).mkdir(parents=True, exist_ok=True)
    LOGGER.debug("Effective configuration: %s", json.dumps(config.to_dict()))
    return config
