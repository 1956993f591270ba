"""
Automation Scheduler for the Trailing Stop Engine.
Check-then-perform protocol driven by an external poller or the keeper loop.
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from core.config import SchedulerSettings
from core.errors import ErrorKind
from core.event_bus import CYCLE_COMPLETED
from core.logger import get_logger
from core.state import CycleResult, CycleStatus, normalize_order_id
from risk.circuit_breaker import GuardedOperations
from storage.state_persistence import StatePersistence

log = get_logger("scheduler")


class AutomationScheduler:
    """
    Decides which orders are due and drives their updates.

    Flow each cycle:
    1. Drop duplicate and malformed ids
    2. check_due() against the registry (read-only)
    3. update() every due id, concurrently up to max_concurrency
    4. Report one CycleResult per distinct id

    The scheduler keeps no state between cycles beyond counters; the
    registry and update()'s own rate gate make repeated cycles harmless.
    """

    def __init__(
        self,
        operations: GuardedOperations,
        settings: SchedulerSettings | None = None,
        store: StatePersistence | None = None,
    ) -> None:
        """
        Initialize AutomationScheduler.

        Args:
            operations: Guarded engine/gateway surface (pause-aware)
            settings: Interval, concurrency and caller identity
            store: Where the keeper loop records its heartbeat
        """
        self.operations = operations
        self.engine = operations.engine
        self.registry = operations.engine.registry
        self.events = operations.engine.events
        self.settings = settings or SchedulerSettings()
        self.store = store

        self.running = False
        self.cycle_count = 0
        self.last_cycle_at: datetime | None = None

        log.info(
            f"[SCHEDULER] Initialized: interval={self.settings.interval_seconds}s, "
            f"max_concurrency={self.settings.max_concurrency}"
        )

    # ------------------------------------------------------------------
    # check
    # ------------------------------------------------------------------

    def check_due(self, order_ids: Iterable[str]) -> list[str]:
        """
        Ids that are configured and past their update interval.

        Pure read; safe to call arbitrarily often.

        Args:
            order_ids: Candidate order ids

        Returns:
            Due ids, in input order, without duplicates
        """
        valid, _ = self._distinct(order_ids)
        now = self.engine.clock()
        due = []
        for order_id in valid:
            config = self.registry.get(order_id)
            if config is not None and config.is_due(now):
                due.append(order_id)
        return due

    # ------------------------------------------------------------------
    # perform
    # ------------------------------------------------------------------

    async def run_cycle(self, order_ids: Iterable[str]) -> list[CycleResult]:
        """
        Update every due order and summarize the outcome per id.

        A failure on one id never stops the others. Ids that are not due are
        reported as skipped with the reason.

        Args:
            order_ids: Candidate order ids

        Returns:
            One CycleResult per distinct input id, in input order
            (malformed ids last)
        """
        valid, malformed = self._distinct(order_ids)
        if not valid and not malformed:
            log.debug("[SCHEDULER] Empty cycle")
            return []

        start = time.time()
        due = set(self.check_due(valid))
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def run_one(order_id: str) -> CycleResult:
            if order_id not in due:
                return self._skipped(order_id)
            async with semaphore:
                return await self._update_one(order_id)

        results = list(await asyncio.gather(*(run_one(order_id) for order_id in valid)))
        results.extend(
            CycleResult(order_id=str(raw), status=CycleStatus.ERROR, detail="malformed order id")
            for raw in malformed
        )

        self.cycle_count += 1
        self.last_cycle_at = datetime.now(timezone.utc)

        summary = self._summarize(results)
        elapsed = time.time() - start
        log.info(
            f"[SCHEDULER] Cycle #{self.cycle_count}: {summary['success']} updated, "
            f"{summary['error']} failed, {summary['skipped']} skipped in {elapsed:.2f}s"
        )
        await self.events.publish(CYCLE_COMPLETED, {
            'cycle': self.cycle_count,
            **summary,
            'results': [r.model_dump(mode="json") for r in results],
        })
        return results

    async def _update_one(self, order_id: str) -> CycleResult:
        try:
            outcome = await self.operations.update(order_id, caller=self.settings.caller)
        except Exception as e:
            log.exception(f"[SCHEDULER] {order_id}: unexpected update error: {e}")
            return CycleResult(
                order_id=order_id, status=CycleStatus.ERROR, detail=f"unexpected: {e}"
            )

        if outcome.ok:
            return CycleResult(
                order_id=order_id,
                status=CycleStatus.SUCCESS,
                stop_price=outcome.value.new_stop_price,
            )
        return CycleResult(
            order_id=order_id,
            status=CycleStatus.ERROR,
            error=outcome.error,
            detail=outcome.detail,
        )

    def _skipped(self, order_id: str) -> CycleResult:
        config = self.registry.get(order_id)
        if config is None:
            return CycleResult(
                order_id=order_id,
                status=CycleStatus.SKIPPED,
                error=ErrorKind.NOT_CONFIGURED,
                detail="not configured",
            )
        return CycleResult(
            order_id=order_id,
            status=CycleStatus.SKIPPED,
            error=ErrorKind.UPDATE_TOO_FREQUENT,
            detail=f"next update at {config.next_update_at}",
            stop_price=config.current_stop_price,
        )

    @staticmethod
    def _distinct(order_ids: Iterable[str]) -> tuple[list[str], list[Any]]:
        seen: set[str] = set()
        valid: list[str] = []
        malformed: list[Any] = []
        for raw in order_ids:
            try:
                order_id = normalize_order_id(raw)
            except (AttributeError, TypeError, ValueError):
                log.warning(f"[SCHEDULER] Ignoring malformed order id {raw!r}")
                malformed.append(raw)
                continue
            if order_id not in seen:
                seen.add(order_id)
                valid.append(order_id)
        return valid, malformed

    @staticmethod
    def _summarize(results: list[CycleResult]) -> dict[str, int]:
        summary = {status.value: 0 for status in CycleStatus}
        for result in results:
            summary[result.status.value] += 1
        return summary

    # ------------------------------------------------------------------
    # keeper loop
    # ------------------------------------------------------------------

    async def run(self, order_source: Callable[[], Iterable[str]] | None = None) -> None:
        """
        Poll until stop() is called.

        Args:
            order_source: Returns the ids to evaluate each cycle
                          (defaults to every configured order)
        """
        source = order_source or self.registry.list_ids
        self.running = True

        log.info("=" * 60)
        log.info("Keeper Loop Started")
        log.info(f"Interval: {self.settings.interval_seconds}s")
        log.info("=" * 60)

        while self.running:
            self.operations.breaker.sync()
            if self.operations.breaker.paused:
                log.info(f"[SCHEDULER] Paused ({self.operations.breaker.reason}), skipping cycle")
            else:
                results = await self.run_cycle(list(source()))
                if self.store is not None and results:
                    self.store.save_cycle(self.cycle_count, self._summarize(results))
            await asyncio.sleep(self.settings.interval_seconds)

        log.info("Keeper Loop Stopped")

    def stop(self) -> None:
        self.running = False

    def get_status(self) -> dict[str, Any]:
        return {
            'running': self.running,
            'cycles': self.cycle_count,
            'last_cycle_at': self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            'interval_seconds': self.settings.interval_seconds,
        }
