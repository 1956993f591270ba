"""
Tests for the in-memory and SQLite trailing stop registries.
"""
import asyncio

import pytest

from core.state import TrailingStopConfig
from storage.registry import InMemoryRegistry, SqlRegistry
from tests.helpers import ORDER_A, ORDER_B, ORDER_C, T0, usd


def make_config(order_id=ORDER_A, configured_at=T0, stop=1000, **overrides):
    fields = dict(
        order_id=order_id,
        oracle_ref="ETH/USD",
        initial_stop_price=usd(stop),
        trailing_distance_bps=200,
        current_stop_price=usd(stop),
        configured_at=configured_at,
        last_update_at=configured_at,
        update_frequency=3600,
    )
    fields.update(overrides)
    return TrailingStopConfig(**fields)


@pytest.fixture(params=["memory", "sqlite"])
def any_registry(request, tmp_path):
    if request.param == "memory":
        return InMemoryRegistry()
    return SqlRegistry(str(tmp_path / "registry.db"))


class TestRegistryContract:

    def test_missing_is_none(self, any_registry):
        assert any_registry.get(ORDER_A) is None
        assert ORDER_A not in any_registry

    def test_put_then_get(self, any_registry):
        config = make_config()
        any_registry.put(config)

        assert any_registry.get(ORDER_A) == config
        assert ORDER_A in any_registry

    def test_lookup_is_case_insensitive(self, any_registry):
        any_registry.put(make_config())
        assert any_registry.get("0x" + "AA" * 32) is not None

    def test_put_replaces_whole_record(self, any_registry):
        any_registry.put(make_config())
        replacement = make_config(stop=1200, oracle_ref="BTC/USD", update_frequency=60)

        any_registry.put(replacement)

        assert any_registry.get(ORDER_A) == replacement

    def test_unconfigured_record_reads_as_missing(self, any_registry):
        any_registry.put(make_config(configured_at=0))

        assert any_registry.get(ORDER_A) is None
        assert any_registry.list_ids() == []

    def test_list_ids_oldest_first(self, any_registry):
        any_registry.put(make_config(ORDER_C, configured_at=T0 + 20))
        any_registry.put(make_config(ORDER_A, configured_at=T0))
        any_registry.put(make_config(ORDER_B, configured_at=T0 + 10))

        assert any_registry.list_ids() == [ORDER_A, ORDER_B, ORDER_C]

    def test_remove(self, any_registry):
        any_registry.put(make_config())

        assert any_registry.remove(ORDER_A) is True
        assert any_registry.get(ORDER_A) is None
        assert any_registry.remove(ORDER_A) is False

    def test_prices_beyond_64_bits(self, any_registry):
        huge = 2 ** 200 + 12345
        any_registry.put(make_config(initial_stop_price=huge, current_stop_price=huge))

        config = any_registry.get(ORDER_A)
        assert config.initial_stop_price == huge
        assert config.current_stop_price == huge


class TestSqlRegistry:

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "registry.db")
        SqlRegistry(path).put(make_config(stop=1176))

        reopened = SqlRegistry(path)

        assert reopened.get(ORDER_A).current_stop_price == usd(1176)
        assert reopened.list_ids() == [ORDER_A]

    def test_in_memory_database(self):
        registry = SqlRegistry(":memory:")
        registry.put(make_config())
        assert registry.list_ids() == [ORDER_A]


@pytest.mark.asyncio
class TestRegistryLocks:

    async def test_same_key_serialized(self):
        registry = InMemoryRegistry()
        order = []

        async def critical(tag):
            async with registry.lock(ORDER_A):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(critical("first"), critical("second"))

        assert order == ["first-in", "first-out", "second-in", "second-out"]

    async def test_different_keys_interleave(self):
        registry = InMemoryRegistry()
        order = []

        async def critical(order_id, tag):
            async with registry.lock(order_id):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(critical(ORDER_A, "a"), critical(ORDER_B, "b"))

        assert order[:2] == ["a-in", "b-in"]

    async def test_lock_released_after_error(self):
        registry = InMemoryRegistry()

        with pytest.raises(RuntimeError):
            async with registry.lock(ORDER_A):
                raise RuntimeError("boom")

        async with registry.lock(ORDER_A):
            pass
        assert len(registry._locks) == 0
