import numpy as np
import pytest
from shapely.geometry import box

from city_world import Building, CityWorld
from drone_agent import DroneAgent, DroneParameters
from demand_generator import DemandPoint
from sim_runtime import EventBus, Scheduler


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def open_world():
    """Flat 400 m square with no buildings and a single demand source in the middle."""

    return CityWorld([], box(0.0, 0.0, 400.0, 400.0), demand_sources=[(200.0, 200.0, 0.0)])


@pytest.fixture
def block_world():
    """Flat 400 m square with one 20 m building centred at (200, 200)."""

    building = Building(ident=0, footprint=box(190.0, 190.0, 210.0, 210.0), height=30.0)
    return CityWorld([building], box(0.0, 0.0, 400.0, 400.0))


class DroneHarness:
    """Steps bare drone agents the way the coordinator does, without a trial around them."""

    def __init__(self, world, params=None, seed=7):
        self.world = world
        self.params = params or DroneParameters()
        self.scheduler = Scheduler()
        self.bus = EventBus()
        self.rng = np.random.default_rng(seed)
        self.agents = []

    def spawn(self, ident, start, target, truck=None, body=None):
        if body is None:
            body = self.world.add_drone_body(ident, start)
        else:
            self.world.attach_drone_body(ident, body)
        demand = DemandPoint(ident=ident, position=target)
        agent = DroneAgent(
            ident=ident,
            body=body,
            demand=demand,
            truck_position=truck if truck is not None else start,
            params=self.params,
            scheduler=self.scheduler,
            bus=self.bus,
            rng=self.rng,
        )
        self.agents.append(agent)
        agent.start()
        return agent

    def tick(self, dt):
        self.scheduler.advance(dt)
        snapshot = self.world.snapshot()
        plans = [agent.plan(snapshot, dt) for agent in self.agents]
        for agent, plan in zip(self.agents, plans):
            agent.commit(plan, dt)


@pytest.fixture
def harness(open_world):
    return DroneHarness(open_world)


@pytest.fixture
def block_harness(block_world):
    return DroneHarness(block_world)
