"""
Tests for the trailing stop engine.

Covers configure validation, the update rate gate and ratchet arithmetic,
both ratchet policies, oracle failure handling and trigger validation.
"""
import asyncio

import pytest

from core.config import EngineSettings
from core.engine import TrailingStopEngine
from core.errors import ErrorCategory, ErrorKind
from core.event_bus import CONFIGURE_REJECTED, STOP_CONFIGURED, STOP_UPDATED, UPDATE_FAILED
from core.state import RatchetPolicy
from sensors.price_feed import StaticPriceFeed
from tests.helpers import ORDER_A, ORDER_B, T0, usd

pytestmark = pytest.mark.asyncio


async def configure_a(engine, initial=1000, distance=200, frequency=3600, oracle="ETH/USD"):
    outcome = await engine.configure(ORDER_A, oracle, usd(initial), distance, frequency)
    assert outcome.ok, outcome.detail
    return outcome.value


class TestConfigure:

    @pytest.mark.parametrize("price,distance,frequency", [
        (1000, 50, 0),
        (1, 200, 60),
        ("1234.5678", 9999, 86400),
    ])
    async def test_initial_state(self, engine, clock, price, distance, frequency):
        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(price), distance, frequency)

        assert outcome.ok
        config = engine.get_config(ORDER_A)
        assert config.current_stop_price == config.initial_stop_price == usd(price)
        assert config.last_update_at == config.configured_at == clock.now
        assert config.update_frequency == frequency

    async def test_distance_49_rejected(self, engine):
        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(1000), 49, 3600)

        assert not outcome.ok
        assert outcome.error == ErrorKind.INVALID_TRAILING_DISTANCE
        assert outcome.error.category == ErrorCategory.CONFIGURATION
        assert engine.get_config(ORDER_A) is None

    async def test_distance_50_accepted(self, engine):
        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(1000), 50, 3600)
        assert outcome.ok

    async def test_full_distance_rejected(self, engine):
        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(1000), 10_000, 3600)
        assert outcome.error == ErrorKind.INVALID_TRAILING_DISTANCE

    @pytest.mark.parametrize("oracle", ["", None, "   "])
    async def test_empty_oracle_rejected(self, engine, oracle):
        outcome = await engine.configure(ORDER_A, oracle, usd(1000), 200, 3600)
        assert outcome.error == ErrorKind.INVALID_ORACLE

    async def test_zero_stop_price_rejected(self, engine):
        outcome = await engine.configure(ORDER_A, "ETH/USD", 0, 200, 3600)
        assert outcome.error == ErrorKind.INVALID_STOP_PRICE

    async def test_negative_frequency_rejected(self, engine):
        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(1000), 200, -1)
        assert outcome.error == ErrorKind.INVALID_UPDATE_FREQUENCY

    async def test_rejection_leaves_existing_record(self, engine):
        before = await configure_a(engine)

        outcome = await engine.configure(ORDER_A, "ETH/USD", usd(500), 10, 60)

        assert not outcome.ok
        assert engine.get_config(ORDER_A) == before

    async def test_reconfigure_overwrites_everything(self, engine, feed, clock):
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200))
        clock.advance(3600)
        assert (await engine.update(ORDER_A)).ok

        clock.advance(10)
        outcome = await engine.configure(ORDER_A, "BTC/USD", usd(50_000), 500, 60)

        config = engine.get_config(ORDER_A)
        assert outcome.ok
        assert config.oracle_ref == "BTC/USD"
        assert config.trailing_distance_bps == 500
        assert config.current_stop_price == usd(50_000)
        assert config.configured_at == config.last_update_at == clock.now

    async def test_configure_event(self, engine, recorder):
        await configure_a(engine)

        [event] = recorder.of(STOP_CONFIGURED)
        assert event['order_id'] == ORDER_A
        assert event['oracle_ref'] == "ETH/USD"
        assert event['initial_stop_price'] == usd(1000)
        assert event['trailing_distance_bps'] == 200

    async def test_rejection_event(self, engine, recorder):
        await engine.configure(ORDER_A, "ETH/USD", usd(1000), 49, 3600)

        [event] = recorder.of(CONFIGURE_REJECTED)
        assert event['error'] == "InvalidTrailingDistance"

    async def test_order_id_accepts_bytes_and_uppercase(self, engine):
        await engine.configure(bytes.fromhex("aa" * 32), "ETH/USD", usd(1000), 200, 0)

        assert engine.get_config("0x" + "AA" * 32) is not None
        assert engine.get_config("aa" * 32).order_id == ORDER_A

    async def test_malformed_order_id_raises(self, engine):
        with pytest.raises(ValueError):
            await engine.configure("0x1234", "ETH/USD", usd(1000), 200, 0)


class TestUpdate:

    async def test_not_configured(self, engine):
        outcome = await engine.update(ORDER_B)

        assert outcome.error == ErrorKind.NOT_CONFIGURED
        assert outcome.error.category == ErrorCategory.STATE

    async def test_rate_gate_boundary(self, engine, feed, clock):
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1000))

        clock.at(3599)
        too_early = await engine.update(ORDER_A)
        assert too_early.error == ErrorKind.UPDATE_TOO_FREQUENT
        assert engine.get_config(ORDER_A).last_update_at == T0

        clock.at(3600)
        assert (await engine.update(ORDER_A)).ok
        assert engine.get_config(ORDER_A).last_update_at == T0 + 3600

    async def test_gate_measured_from_last_update(self, engine, feed, clock):
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1000))
        clock.at(4000)
        assert (await engine.update(ORDER_A)).ok

        clock.at(4000 + 3599)
        assert (await engine.update(ORDER_A)).error == ErrorKind.UPDATE_TOO_FREQUENT

    async def test_ratchet_arithmetic(self, engine, feed, clock):
        await configure_a(engine, initial=900)
        feed.set_price("ETH/USD", usd("1000.0"))
        clock.at(3600)

        outcome = await engine.update(ORDER_A, caller="keeper")

        assert outcome.ok
        assert outcome.value.new_stop_price == usd(980)
        assert outcome.value.price == usd(1000)
        assert engine.get_config(ORDER_A).current_stop_price == usd(980)

    async def test_feed_precision_normalized(self, registry, events, clock):
        feed = StaticPriceFeed(feed_decimals=8, clock=clock)
        engine = TrailingStopEngine(registry, feed, events, clock=clock)
        await configure_a(engine, frequency=0)
        feed.set_price("ETH/USD", 1200 * 10 ** 8)

        outcome = await engine.update(ORDER_A)

        assert outcome.value.price == usd(1200)
        assert outcome.value.new_stop_price == usd(1176)

    async def test_update_event(self, engine, feed, clock, recorder):
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200))
        clock.at(3601)

        await engine.update(ORDER_A, caller="keeper-1")

        [event] = recorder.of(STOP_UPDATED)
        assert event == {
            'order_id': ORDER_A,
            'old_stop_price': usd(1000),
            'new_stop_price': usd(1176),
            'price': usd(1200),
            'caller': "keeper-1",
        }

    async def test_failure_event(self, engine, recorder):
        await engine.update(ORDER_A, caller="keeper-1")

        [event] = recorder.of(UPDATE_FAILED)
        assert event['error'] == "NotConfigured"
        assert event['caller'] == "keeper-1"


class TestRatchetPolicies:
    """configure at T0, rally to 1200 at +3601, retrace to 1150 at +7202."""

    async def run_scenario(self, registry, feed, events, clock, policy):
        engine = TrailingStopEngine(
            registry, feed, events, EngineSettings(ratchet_policy=policy), clock=clock
        )
        await configure_a(engine, initial=1000, distance=200, frequency=3600)

        clock.at(3601)
        feed.set_price("ETH/USD", usd(1200))
        rally = await engine.update(ORDER_A)
        assert rally.ok
        assert engine.get_config(ORDER_A).current_stop_price == usd(1176)

        clock.at(7202)
        feed.set_price("ETH/USD", usd(1150))
        retrace = await engine.update(ORDER_A)
        assert retrace.ok
        assert engine.get_config(ORDER_A).last_update_at == T0 + 7202
        return engine, retrace.value

    async def test_monotonic_holds_stop_on_retrace(self, registry, feed, events, clock):
        engine, update = await self.run_scenario(
            registry, feed, events, clock, RatchetPolicy.MONOTONIC
        )

        assert update.new_stop_price == usd(1176)
        assert not update.tightened
        assert engine.get_config(ORDER_A).current_stop_price == usd(1176)

    async def test_repeg_follows_price_down(self, registry, feed, events, clock):
        engine, update = await self.run_scenario(
            registry, feed, events, clock, RatchetPolicy.REPEG
        )

        # 1150 - floor(1150 * 200 / 10000) = 1150 - 23
        assert update.new_stop_price == usd(1127)
        assert engine.get_config(ORDER_A).current_stop_price == usd(1127)

    async def test_default_policy_is_monotonic(self, engine):
        assert engine.settings.ratchet_policy == RatchetPolicy.MONOTONIC


class TestOracleFailures:

    async def test_unavailable_oracle_leaves_state(self, engine, feed, clock):
        before = await configure_a(engine)
        feed.set_unavailable("ETH/USD")
        clock.at(3600)

        outcome = await engine.update(ORDER_A)

        assert outcome.error == ErrorKind.ORACLE_UNAVAILABLE
        assert outcome.error.retryable
        assert engine.get_config(ORDER_A) == before

    async def test_oracle_timeout(self, engine, feed, clock):
        before = await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200))
        feed.delays["ETH/USD"] = 5.0
        clock.at(3600)

        outcome = await engine.update(ORDER_A)

        assert outcome.error == ErrorKind.ORACLE_UNAVAILABLE
        assert "timed out" in outcome.detail
        assert engine.get_config(ORDER_A) == before

    async def test_stale_price_rejected(self, registry, feed, events, clock):
        engine = TrailingStopEngine(
            registry, feed, events, EngineSettings(max_price_age_seconds=300), clock=clock
        )
        before = await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200), observed_at=T0 + 3000)
        clock.at(3600)

        outcome = await engine.update(ORDER_A)

        assert outcome.error == ErrorKind.ORACLE_UNAVAILABLE
        assert "stale" in outcome.detail
        assert engine.get_config(ORDER_A) == before

    async def test_fresh_enough_price_accepted(self, registry, feed, events, clock):
        engine = TrailingStopEngine(
            registry, feed, events, EngineSettings(max_price_age_seconds=300), clock=clock
        )
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200), observed_at=T0 + 3300)
        clock.at(3600)

        assert (await engine.update(ORDER_A)).ok

    async def test_non_positive_price_rejected(self, engine, feed, clock):
        before = await configure_a(engine)
        feed.set_price("ETH/USD", 0)
        clock.at(3600)

        outcome = await engine.update(ORDER_A)

        assert outcome.error == ErrorKind.ORACLE_UNAVAILABLE
        assert engine.get_config(ORDER_A) == before


class TestConcurrency:

    async def test_same_order_passes_gate_once(self, engine, feed, clock):
        await configure_a(engine)
        feed.set_price("ETH/USD", usd(1200))
        feed.delays["ETH/USD"] = 0.02
        clock.at(3600)

        first, second = await asyncio.gather(engine.update(ORDER_A), engine.update(ORDER_A))

        outcomes = sorted([first.ok, second.ok])
        assert outcomes == [False, True]
        failed = first if not first.ok else second
        assert failed.error == ErrorKind.UPDATE_TOO_FREQUENT

    async def test_different_orders_do_not_block(self, engine, feed, clock):
        await configure_a(engine, oracle="SLOW")
        await engine.configure(ORDER_B, "FAST", usd(10), 200, 0)
        feed.set_price("SLOW", usd(1200))
        feed.set_price("FAST", usd(20))
        feed.delays["SLOW"] = 0.1
        clock.at(3600)

        slow = asyncio.create_task(engine.update(ORDER_A))
        await asyncio.sleep(0.01)
        fast = await engine.update(ORDER_B)

        assert fast.ok
        assert not slow.done()
        assert (await slow).ok


class TestValidateTrigger:

    async def stop_at_980(self, engine, feed, clock):
        await configure_a(engine, initial=900)
        feed.set_price("ETH/USD", usd(1000))
        clock.at(3600)
        assert (await engine.update(ORDER_A)).value.new_stop_price == usd(980)

    async def test_price_above_stop_fails(self, engine, feed, clock):
        await self.stop_at_980(engine, feed, clock)

        outcome = engine.validate_trigger(ORDER_A, usd(985))

        assert outcome.error == ErrorKind.STOP_NOT_TRIGGERED

    async def test_price_below_stop_succeeds(self, engine, feed, clock):
        await self.stop_at_980(engine, feed, clock)

        outcome = engine.validate_trigger(ORDER_A, usd(975))

        assert outcome.ok
        snapshot = outcome.value
        assert snapshot.stop_price == usd(980)
        assert snapshot.trailing_distance_bps == 200
        assert snapshot.last_update_at == T0 + 3600
        assert snapshot.observed_price == usd(975)

    async def test_price_at_stop_succeeds(self, engine, feed, clock):
        await self.stop_at_980(engine, feed, clock)
        assert engine.validate_trigger(ORDER_A, usd(980)).ok

    async def test_not_configured(self, engine):
        outcome = engine.validate_trigger(ORDER_A, usd(1))
        assert outcome.error == ErrorKind.NOT_CONFIGURED

    async def test_does_not_mutate(self, engine):
        before = await configure_a(engine)
        engine.validate_trigger(ORDER_A, usd(1))
        assert engine.get_config(ORDER_A) == before

    async def test_status_counts(self, engine, feed, clock):
        await configure_a(engine)
        await engine.update(ORDER_A)
        status = engine.get_status()
        assert status['orders'] == 1
        assert status['updates_failed'] == 1
        assert status['ratchet_policy'] == "monotonic"
