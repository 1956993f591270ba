"""
Trailing Stop Engine.
Configures, ratchets and validates per-order stop prices against a price feed.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from core.config import MIN_TRAILING_DISTANCE_BPS, EngineSettings
from core.errors import ErrorKind, Outcome
from core.event_bus import (
    CONFIGURE_REJECTED,
    STOP_CONFIGURED,
    STOP_UPDATED,
    UPDATE_FAILED,
    EventBus,
)
from core.fixed_point import BPS_DENOMINATOR, normalize_price, trailing_stop_price
from core.logger import get_logger
from core.state import (
    PriceReading,
    RatchetPolicy,
    StopUpdate,
    TrailingStopConfig,
    TriggerSnapshot,
    normalize_order_id,
)
from sensors.price_feed import PriceFeed
from storage.registry import TrailingStopRegistry

log = get_logger("engine")

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class TrailingStopEngine:
    """
    Owns the trailing stop state machine.

    - configure(): write a fresh record for an order
    - update(): re-peg the stop from the latest feed price, rate limited
    - validate_trigger(): confirm the stop condition at fill time

    Expected failures come back as ``Outcome`` values; a failed call never
    changes the registry. The read-check-write of update() runs under the
    registry's per-order lock, so concurrent callers cannot both pass the
    rate gate for the same order.
    """

    def __init__(
        self,
        registry: TrailingStopRegistry,
        price_feed: PriceFeed,
        events: EventBus | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Initialize TrailingStopEngine.

        Args:
            registry: Record store
            price_feed: Source of market prices
            events: Event bus for configuration/update notifications
            settings: Engine settings (ratchet policy, timeouts, ...)
            clock: Returns the current time in whole seconds
        """
        self.registry = registry
        self.price_feed = price_feed
        self.events = events or EventBus()
        self.settings = settings or EngineSettings()
        self.clock = clock or system_clock

        self._updates_ok = 0
        self._updates_failed = 0

        log.info(
            f"[ENGINE] Initialized: policy={self.settings.ratchet_policy.value}, "
            f"min_distance={self.min_distance_bps}bps, "
            f"oracle_timeout={self.settings.oracle_timeout_seconds}s"
        )

    @property
    def min_distance_bps(self) -> int:
        # Settings may raise the floor, never lower it
        return max(self.settings.min_trailing_distance_bps, MIN_TRAILING_DISTANCE_BPS)

    # ------------------------------------------------------------------
    # configure
    # ------------------------------------------------------------------

    async def configure(
        self,
        order_id: str,
        oracle_ref: str | None,
        initial_stop_price: int,
        trailing_distance_bps: int,
        update_frequency: int,
    ) -> Outcome[TrailingStopConfig]:
        """
        Create or fully replace the trailing stop record of an order.

        Args:
            order_id: 32-byte order id
            oracle_ref: Price feed handle for the maker asset
            initial_stop_price: Starting stop price (18 fractional digits)
            trailing_distance_bps: Ratchet distance, at least 50 bps
            update_frequency: Minimum seconds between successful updates

        Returns:
            Outcome carrying the stored record
        """
        order_id = normalize_order_id(order_id)

        error = self._check_configuration(
            oracle_ref, initial_stop_price, trailing_distance_bps, update_frequency
        )
        if error is not None:
            kind, detail = error
            log.warning(f"[ENGINE] {order_id}: configure rejected: {detail}")
            await self.events.publish(CONFIGURE_REJECTED, {
                'order_id': order_id,
                'error': kind.value,
                'detail': detail,
            })
            return Outcome.failure(kind, detail)

        async with self.registry.lock(order_id):
            now = self.clock()
            config = TrailingStopConfig(
                order_id=order_id,
                oracle_ref=oracle_ref,
                initial_stop_price=initial_stop_price,
                trailing_distance_bps=trailing_distance_bps,
                current_stop_price=initial_stop_price,
                configured_at=now,
                last_update_at=now,
                update_frequency=update_frequency,
            )
            replaced = self.registry.get(order_id) is not None
            self.registry.put(config)

        log.info(
            f"[ENGINE] {order_id}: {'re' if replaced else ''}configured "
            f"oracle={oracle_ref}, stop={initial_stop_price}, "
            f"distance={trailing_distance_bps}bps, every {update_frequency}s"
        )
        await self.events.publish(STOP_CONFIGURED, {
            'order_id': order_id,
            'oracle_ref': oracle_ref,
            'initial_stop_price': initial_stop_price,
            'trailing_distance_bps': trailing_distance_bps,
            'update_frequency': update_frequency,
            'replaced': replaced,
        })
        return Outcome.success(config)

    def _check_configuration(
        self,
        oracle_ref: str | None,
        initial_stop_price: int,
        trailing_distance_bps: int,
        update_frequency: int,
    ) -> tuple[ErrorKind, str] | None:
        if not oracle_ref or not str(oracle_ref).strip():
            return ErrorKind.INVALID_ORACLE, "oracle reference is empty"

        if initial_stop_price <= 0:
            return ErrorKind.INVALID_STOP_PRICE, f"initial stop price must be > 0, got {initial_stop_price}"

        if trailing_distance_bps < self.min_distance_bps:
            return (
                ErrorKind.INVALID_TRAILING_DISTANCE,
                f"distance {trailing_distance_bps}bps below minimum {self.min_distance_bps}bps",
            )

        if trailing_distance_bps >= BPS_DENOMINATOR:
            return (
                ErrorKind.INVALID_TRAILING_DISTANCE,
                f"distance {trailing_distance_bps}bps must be below {BPS_DENOMINATOR}bps",
            )

        if update_frequency < 0:
            return ErrorKind.INVALID_UPDATE_FREQUENCY, f"update frequency must be >= 0, got {update_frequency}"

        return None

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    async def update(self, order_id: str, caller: str = "") -> Outcome[StopUpdate]:
        """
        Recompute the stop price of an order from the latest feed price.

        Args:
            order_id: 32-byte order id
            caller: Identity recorded in the update event

        Returns:
            Outcome carrying the StopUpdate
        """
        order_id = normalize_order_id(order_id)

        async with self.registry.lock(order_id):
            outcome = await self._update_locked(order_id, caller)

        if outcome.ok:
            self._updates_ok += 1
            update = outcome.value
            await self.events.publish(STOP_UPDATED, {
                'order_id': order_id,
                'old_stop_price': update.old_stop_price,
                'new_stop_price': update.new_stop_price,
                'price': update.price,
                'caller': caller,
            })
        else:
            self._updates_failed += 1
            await self.events.publish(UPDATE_FAILED, {
                'order_id': order_id,
                'error': outcome.error.value,
                'detail': outcome.detail,
                'caller': caller,
            })
        return outcome

    async def _update_locked(self, order_id: str, caller: str) -> Outcome[StopUpdate]:
        config = self.registry.get(order_id)
        if config is None:
            return Outcome.failure(ErrorKind.NOT_CONFIGURED, f"{order_id} is not configured")

        now = self.clock()
        elapsed = now - config.last_update_at
        if elapsed < config.update_frequency:
            return Outcome.failure(
                ErrorKind.UPDATE_TOO_FREQUENT,
                f"{elapsed}s since last update, need {config.update_frequency}s",
            )

        reading = await self._read_price(config.oracle_ref, now)
        if not reading.ok:
            log.warning(f"[ENGINE] {order_id}: {reading.detail}")
            return Outcome.failure(reading.error, reading.detail)

        price = normalize_price(reading.value.price, reading.value.feed_decimals)
        if price <= 0:
            return Outcome.failure(
                ErrorKind.ORACLE_UNAVAILABLE,
                f"{config.oracle_ref} reported non-positive price {reading.value.price}",
            )

        candidate = trailing_stop_price(price, config.trailing_distance_bps)
        old_stop = config.current_stop_price

        if self.settings.ratchet_policy == RatchetPolicy.MONOTONIC:
            new_stop = max(old_stop, candidate)
        else:
            new_stop = candidate

        self.registry.put(config.model_copy(update={
            'current_stop_price': new_stop,
            'last_update_at': now,
        }))

        if new_stop == old_stop and candidate < old_stop:
            log.info(
                f"[ENGINE] {order_id}: price {price} would loosen stop to {candidate}, "
                f"holding {old_stop}"
            )
        else:
            log.info(f"[ENGINE] {order_id}: stop {old_stop} -> {new_stop} (price {price})")

        return Outcome.success(StopUpdate(
            order_id=order_id,
            old_stop_price=old_stop,
            new_stop_price=new_stop,
            price=price,
            updated_at=now,
            caller=caller,
            tightened=new_stop > old_stop,
        ))

    async def _read_price(self, oracle_ref: str, now: int) -> Outcome[PriceReading]:
        timeout = self.settings.oracle_timeout_seconds
        try:
            reading = await asyncio.wait_for(
                self.price_feed.latest_price(oracle_ref), timeout=timeout
            )
        except asyncio.TimeoutError:
            return Outcome.failure(
                ErrorKind.ORACLE_UNAVAILABLE, f"{oracle_ref} read timed out after {timeout}s"
            )
        except Exception as e:
            return Outcome.failure(ErrorKind.ORACLE_UNAVAILABLE, f"{oracle_ref} read failed: {e}")

        max_age = self.settings.max_price_age_seconds
        if max_age and now - reading.observed_at > max_age:
            return Outcome.failure(
                ErrorKind.ORACLE_UNAVAILABLE,
                f"{oracle_ref} price is stale ({now - reading.observed_at}s old, max {max_age}s)",
            )
        return Outcome.success(reading)

    # ------------------------------------------------------------------
    # validate_trigger
    # ------------------------------------------------------------------

    def validate_trigger(self, order_id: str, observed_price: int) -> Outcome[TriggerSnapshot]:
        """
        Check that a sell-side stop condition holds at fill time.

        The order is eligible when ``observed_price <= current_stop_price``.
        Does not mutate state.

        Args:
            order_id: 32-byte order id
            observed_price: Price seen by the filler (18 fractional digits)

        Returns:
            Outcome carrying the validated TriggerSnapshot
        """
        order_id = normalize_order_id(order_id)
        config = self.registry.get(order_id)
        if config is None:
            return Outcome.failure(ErrorKind.NOT_CONFIGURED, f"{order_id} is not configured")

        if observed_price > config.current_stop_price:
            return Outcome.failure(
                ErrorKind.STOP_NOT_TRIGGERED,
                f"price {observed_price} above stop {config.current_stop_price}",
            )

        return Outcome.success(TriggerSnapshot(
            order_id=order_id,
            stop_price=config.current_stop_price,
            trailing_distance_bps=config.trailing_distance_bps,
            last_update_at=config.last_update_at,
            observed_price=observed_price,
        ))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_config(self, order_id: str) -> TrailingStopConfig | None:
        return self.registry.get(order_id)

    def get_status(self) -> dict[str, Any]:
        return {
            'ratchet_policy': self.settings.ratchet_policy.value,
            'orders': len(self.registry.list_ids()),
            'updates_ok': self._updates_ok,
            'updates_failed': self._updates_failed,
            'feed': self.price_feed.get_status(),
        }
