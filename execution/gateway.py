"""
Execution Gateway for the Trailing Stop Engine.
Moves a triggered order's maker funds through a swap venue and settles the output.
"""
from __future__ import annotations

import asyncio
from typing import Any

from core.config import ExecutionSettings
from core.engine import TrailingStopEngine
from core.errors import ErrorKind, InsufficientFunds, Outcome, SwapVenueError
from core.event_bus import EXECUTION_FAILED, ORDER_SETTLED, EventBus
from core.locks import KeyedLocks
from core.logger import get_logger
from core.state import Settlement, TriggerSnapshot, normalize_order_id
from execution.custody import InMemoryCustody
from execution.swap_venue import SwapVenue

log = get_logger("gateway")


class _Abort(Exception):
    """Unwinds the custody transaction with an error kind."""

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


class ExecutionGateway:
    """
    Settles triggered orders against registered swap venues.

    Each execution is one custody transaction: the maker debit, the venue
    allowance, the swap itself and the payout either all persist or are all
    undone.

    The caller's trigger snapshot is checked again against the engine under
    the order's registry lock, so the stop cannot move (and a forged or stale
    snapshot cannot pass) between validation and settlement. The venue
    allowance is granted and reset under a lock per (asset, venue), so
    concurrent executions of different orders never share a grant.
    """

    def __init__(
        self,
        custody: InMemoryCustody,
        engine: TrailingStopEngine,
        venues: dict[str, SwapVenue] | None = None,
        events: EventBus | None = None,
        settings: ExecutionSettings | None = None,
    ) -> None:
        """
        Initialize ExecutionGateway.

        Args:
            custody: Asset custody holding maker funds
            engine: Engine that re-validates triggers at settlement
            venues: Swap venues by reference
            events: Event bus for settlement notifications
            settings: Swap timeout and gateway account
        """
        self.custody = custody
        self.engine = engine
        self.venues: dict[str, SwapVenue] = dict(venues or {})
        self.events = events or EventBus()
        self.settings = settings or ExecutionSettings()
        self._venue_locks = KeyedLocks()

        self.stats = {
            'executions_attempted': 0,
            'executions_settled': 0,
            'executions_failed': 0,
        }

        log.info(
            f"[GATEWAY] Initialized: account={self.account}, "
            f"venues={sorted(self.venues)}, swap_timeout={self.settings.swap_timeout_seconds}s"
        )

    @property
    def account(self) -> str:
        return self.settings.gateway_account

    def register_venue(self, ref: str, venue: SwapVenue) -> None:
        self.venues[ref] = venue
        log.info(f"[GATEWAY] Venue registered: {ref} ({venue.name})")

    async def execute(
        self,
        order_id: str,
        maker: str,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        min_acceptable_output: int,
        swap_venue_ref: str,
        swap_payload: Any,
        trigger: TriggerSnapshot | None,
        receiver: str | None = None,
    ) -> Outcome[Settlement]:
        """
        Execute a triggered order.

        Args:
            order_id: 32-byte order id
            maker: Account whose funds are sold
            maker_asset: Asset sold
            taker_asset: Asset bought
            making_amount: Amount of maker_asset to sell
            min_acceptable_output: Least taker_asset accepted from the venue
            swap_venue_ref: Registered venue reference
            swap_payload: Opaque venue instructions
            trigger: Snapshot returned by TrailingStopEngine.validate_trigger
            receiver: Recipient of the output (defaults to maker)

        Returns:
            Outcome carrying the Settlement
        """
        order_id = normalize_order_id(order_id)
        receiver = receiver or maker
        self.stats['executions_attempted'] += 1

        outcome = self._check_preconditions(order_id, making_amount, swap_venue_ref, trigger)
        if outcome is None:
            async with self.engine.registry.lock(order_id):
                outcome = self._revalidate(order_id, trigger)
                if outcome is None:
                    outcome = await self._settle(
                        order_id, maker, receiver, maker_asset, taker_asset,
                        making_amount, min_acceptable_output,
                        self.venues[swap_venue_ref], swap_venue_ref, swap_payload,
                    )

        if outcome.ok:
            self.stats['executions_settled'] += 1
            settlement = outcome.value
            log.info(
                f"[GATEWAY] {order_id}: settled {making_amount} {maker_asset} -> "
                f"{settlement.actual_output} {taker_asset} to {receiver}"
            )
            await self.events.publish(ORDER_SETTLED, {
                'order_id': order_id,
                'maker_asset': maker_asset,
                'taker_asset': taker_asset,
                'making_amount': making_amount,
                'actual_output': settlement.actual_output,
                'receiver': receiver,
                'swap_venue_ref': swap_venue_ref,
            })
        else:
            self.stats['executions_failed'] += 1
            log.warning(f"[GATEWAY] {order_id}: execution failed: {outcome.error.value}: {outcome.detail}")
            await self.events.publish(EXECUTION_FAILED, {
                'order_id': order_id,
                'error': outcome.error.value,
                'detail': outcome.detail,
                'making_amount': making_amount,
                'swap_venue_ref': swap_venue_ref,
            })
        return outcome

    def _check_preconditions(
        self,
        order_id: str,
        making_amount: int,
        swap_venue_ref: str,
        trigger: TriggerSnapshot | None,
    ) -> Outcome[Settlement] | None:
        if trigger is None or trigger.order_id != order_id:
            return Outcome.failure(
                ErrorKind.TRIGGER_NOT_VALIDATED, f"no validated trigger for {order_id}"
            )
        if making_amount <= 0:
            return Outcome.failure(ErrorKind.INVALID_AMOUNT, f"making amount must be > 0, got {making_amount}")
        if swap_venue_ref not in self.venues:
            return Outcome.failure(ErrorKind.SWAP_FAILED, f"unknown swap venue {swap_venue_ref!r}")
        return None

    def _revalidate(self, order_id: str, trigger: TriggerSnapshot) -> Outcome[Settlement] | None:
        current = self.engine.validate_trigger(order_id, trigger.observed_price)
        if not current.ok:
            return Outcome.failure(current.error, current.detail)

        snapshot = current.value
        if (snapshot.stop_price, snapshot.last_update_at) != (trigger.stop_price, trigger.last_update_at):
            return Outcome.failure(
                ErrorKind.TRIGGER_NOT_VALIDATED,
                f"trigger for {order_id} is stale: stop {trigger.stop_price} at {trigger.last_update_at}, "
                f"current {snapshot.stop_price} at {snapshot.last_update_at}",
            )
        return None

    async def _settle(
        self,
        order_id: str,
        maker: str,
        receiver: str,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        min_acceptable_output: int,
        venue: SwapVenue,
        swap_venue_ref: str,
        swap_payload: Any,
    ) -> Outcome[Settlement]:
        try:
            with self.custody.atomic():
                try:
                    self.custody.transfer_from(maker_asset, self.account, maker, self.account, making_amount)
                except InsufficientFunds as e:
                    raise _Abort(ErrorKind.INVALID_AMOUNT, f"cannot pull maker funds: {e}") from e

                async with self._venue_locks.hold(f"{maker_asset}:{venue.account}"):
                    self.custody.approve(maker_asset, self.account, venue.account, making_amount)
                    try:
                        actual_output = await self._swap(
                            venue, maker_asset, taker_asset, making_amount, swap_payload
                        )
                    finally:
                        # Nothing the venue left unconsumed stays approved
                        self.custody.approve(maker_asset, self.account, venue.account, 0)

                if actual_output < min_acceptable_output:
                    raise _Abort(
                        ErrorKind.SLIPPAGE_EXCEEDED,
                        f"venue returned {actual_output}, minimum {min_acceptable_output}",
                    )

                try:
                    self.custody.transfer(taker_asset, self.account, receiver, actual_output)
                except InsufficientFunds as e:
                    raise _Abort(ErrorKind.SWAP_FAILED, f"venue output not received: {e}") from e

        except _Abort as abort:
            return Outcome.failure(abort.kind, abort.detail)

        return Outcome.success(Settlement(
            order_id=order_id,
            maker=maker,
            receiver=receiver,
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=making_amount,
            actual_output=actual_output,
            swap_venue_ref=swap_venue_ref,
        ))

    async def _swap(
        self,
        venue: SwapVenue,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        swap_payload: Any,
    ) -> int:
        timeout = self.settings.swap_timeout_seconds
        try:
            return await asyncio.wait_for(
                venue.swap(
                    maker_asset, taker_asset, making_amount,
                    self.account, swap_payload, payer=self.account,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise _Abort(ErrorKind.EXECUTION_TIMEOUT, f"{venue.name} swap timed out after {timeout}s") from e
        except SwapVenueError as e:
            raise _Abort(ErrorKind.SWAP_FAILED, str(e)) from e
        except Exception as e:
            raise _Abort(ErrorKind.SWAP_FAILED, f"{venue.name}: {e}") from e

    def get_status(self) -> dict[str, Any]:
        return {
            'account': self.account,
            'venues': sorted(self.venues),
            **self.stats,
        }
