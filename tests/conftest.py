from __future__ import annotations

import pytest

from automation.scheduler import AutomationScheduler
from core.config import EngineSettings, ExecutionSettings, SchedulerSettings
from core.engine import TrailingStopEngine
from core.event_bus import EventBus
from execution.custody import InMemoryCustody
from execution.gateway import ExecutionGateway
from execution.swap_venue import FixedRateVenue
from risk.circuit_breaker import CircuitBreaker, GuardedOperations
from storage.registry import InMemoryRegistry
from tests.helpers import (
    MAKER,
    ONE_WETH,
    OWNER,
    USDC,
    WETH,
    EventRecorder,
    ManualClock,
    SlowFeed,
)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def feed(clock) -> SlowFeed:
    return SlowFeed(clock)


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(oracle_timeout_seconds=0.2)


@pytest.fixture
def engine(registry, feed, events, engine_settings, clock) -> TrailingStopEngine:
    return TrailingStopEngine(registry, feed, events, engine_settings, clock=clock)


@pytest.fixture
def custody() -> InMemoryCustody:
    return InMemoryCustody()


@pytest.fixture
def venue(custody) -> FixedRateVenue:
    venue = FixedRateVenue(custody, name="fixed")
    # 1 WETH -> 1000 USDC (6 decimals)
    venue.set_rate(WETH, USDC, 1000 * 10 ** 6, ONE_WETH)
    custody.mint(USDC, venue.account, 1_000_000 * 10 ** 6)
    return venue


@pytest.fixture
def gateway(custody, engine, venue, events) -> ExecutionGateway:
    return ExecutionGateway(
        custody,
        engine,
        venues={"fixed": venue},
        events=events,
        settings=ExecutionSettings(swap_timeout_seconds=0.2),
    )


@pytest.fixture
def funded_maker(custody, gateway) -> str:
    custody.mint(WETH, MAKER, 5 * ONE_WETH)
    custody.approve(WETH, MAKER, gateway.account, 5 * ONE_WETH)
    return MAKER


@pytest.fixture
def breaker(events) -> CircuitBreaker:
    return CircuitBreaker(OWNER, events)


@pytest.fixture
def ops(engine, gateway, breaker) -> GuardedOperations:
    return GuardedOperations(engine, gateway, breaker, operators={"operator"})


@pytest.fixture
def scheduler(ops) -> AutomationScheduler:
    return AutomationScheduler(ops, SchedulerSettings(interval_seconds=0.01, max_concurrency=4))
