"""
Shared test helpers: ids, assets, a manual clock, a slow feed and an event recorder.
"""
from __future__ import annotations

import asyncio
from typing import Any

from core.event_bus import EventBus
from core.fixed_point import to_fixed
from core.state import PriceReading
from sensors.price_feed import StaticPriceFeed

T0 = 1_700_000_000

ORDER_A = "0x" + "aa" * 32
ORDER_B = "0x" + "bb" * 32
ORDER_C = "0x" + "cc" * 32

WETH = "WETH"
USDC = "USDC"
MAKER = "maker"
OWNER = "admin"
ONE_WETH = 10 ** 18


def usd(value: float | int | str) -> int:
    """Price with 18 fractional digits."""
    return to_fixed(value)


class ManualClock:
    """Deterministic clock in whole seconds."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def at(self, offset: int) -> int:
        """Move to T0 + offset."""
        self.now = T0 + offset
        return self.now


class SlowFeed(StaticPriceFeed):
    """Static feed that waits before answering, per oracle reference."""

    def __init__(self, clock: ManualClock, delays: dict[str, float] | None = None) -> None:
        super().__init__(feed_decimals=18, clock=clock)
        self.delays = delays or {}

    async def latest_price(self, oracle_ref: str) -> PriceReading:
        delay = self.delays.get(oracle_ref, 0.0)
        if delay:
            await asyncio.sleep(delay)
        return await super().latest_price(oracle_ref)


class EventRecorder:
    def __init__(self, events: EventBus) -> None:
        self.received: list[tuple[str, dict[str, Any]]] = []
        events.subscribe_all(self.handle)

    async def handle(self, event: str, data: dict[str, Any]) -> None:
        self.received.append((event, data))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.received if name == event]
