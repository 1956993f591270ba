"""
Administrative circuit breaker for the Trailing Stop Engine.
Owner-gated pause switch and the middleware that applies it.
"""
from __future__ import annotations

from typing import Any

from core.engine import TrailingStopEngine
from core.errors import ErrorKind, Outcome
from core.event_bus import ENGINE_PAUSED, ENGINE_UNPAUSED, EventBus
from core.logger import get_logger
from core.state import Settlement, StopUpdate, TrailingStopConfig, TriggerSnapshot
from execution.gateway import ExecutionGateway
from storage.state_persistence import StatePersistence

log = get_logger("circuit_breaker")


class CircuitBreaker:
    """
    Global pause flag.

    Only the owner may flip it. While paused, every gated operation fails
    fast with ``Paused``; nothing is queued.
    """

    def __init__(
        self,
        owner: str,
        events: EventBus | None = None,
        store: StatePersistence | None = None,
    ) -> None:
        """
        Initialize CircuitBreaker.

        Args:
            owner: Identity allowed to pause and unpause
            events: Event bus for pause notifications
            store: Optional persistence shared with other processes
        """
        self.owner = owner
        self.events = events or EventBus()
        self.store = store
        self.paused = False
        self.reason = ""
        self.sync()

    def sync(self) -> None:
        """Adopt the persisted pause state, if any."""
        if self.store is None:
            return
        self.store.reload()
        paused, reason = self.store.load_pause()
        if paused != self.paused:
            log.info(f"[CircuitBreaker] Persisted state: paused={paused}")
        self.paused, self.reason = paused, reason

    def is_owner(self, caller: str) -> bool:
        return caller == self.owner

    async def pause(self, caller: str, reason: str = "") -> Outcome[None]:
        if not self.is_owner(caller):
            log.warning(f"[CircuitBreaker] Pause refused for {caller!r}")
            return Outcome.failure(ErrorKind.UNAUTHORIZED, f"{caller!r} is not the owner")

        self.paused = True
        self.reason = reason or "paused by owner"
        if self.store is not None:
            self.store.save_pause(True, self.reason)
        log.critical(f"[CircuitBreaker] PAUSED: {self.reason}")
        await self.events.publish(ENGINE_PAUSED, {'caller': caller, 'reason': self.reason})
        return Outcome.success()

    async def unpause(self, caller: str) -> Outcome[None]:
        if not self.is_owner(caller):
            log.warning(f"[CircuitBreaker] Unpause refused for {caller!r}")
            return Outcome.failure(ErrorKind.UNAUTHORIZED, f"{caller!r} is not the owner")

        self.paused = False
        self.reason = ""
        if self.store is not None:
            self.store.save_pause(False, "")
        log.info("[CircuitBreaker] Resumed")
        await self.events.publish(ENGINE_UNPAUSED, {'caller': caller})
        return Outcome.success()

    def get_status(self) -> dict[str, Any]:
        return {
            'paused': self.paused,
            'reason': self.reason,
            'owner': self.owner,
        }


class GuardedOperations:
    """
    Authorization and pause middleware around the engine and gateway.

    - configure(): owner or a registered operator
    - update(), execute(), fill(): refused with ``Paused`` while paused
    - validate_trigger(): read-only, never gated
    """

    def __init__(
        self,
        engine: TrailingStopEngine,
        gateway: ExecutionGateway,
        breaker: CircuitBreaker,
        operators: set[str] | None = None,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.breaker = breaker
        self.operators = set(operators or ())

    def _paused(self, action: str, order_id: str) -> Outcome[Any] | None:
        if self.breaker.paused:
            log.debug(f"[Guard] {action} {order_id} refused: paused")
            return Outcome.failure(ErrorKind.PAUSED, f"{action} refused: {self.breaker.reason}")
        return None

    async def configure(self, caller: str, order_id: str, *args: Any, **kwargs: Any) -> Outcome[TrailingStopConfig]:
        if not (self.breaker.is_owner(caller) or caller in self.operators):
            return Outcome.failure(ErrorKind.UNAUTHORIZED, f"{caller!r} may not configure orders")
        return await self.engine.configure(order_id, *args, **kwargs)

    async def update(self, order_id: str, caller: str = "") -> Outcome[StopUpdate]:
        refused = self._paused("update", order_id)
        if refused is not None:
            return refused
        return await self.engine.update(order_id, caller=caller)

    def validate_trigger(self, order_id: str, observed_price: int) -> Outcome[TriggerSnapshot]:
        return self.engine.validate_trigger(order_id, observed_price)

    async def execute(self, order_id: str, *args: Any, **kwargs: Any) -> Outcome[Settlement]:
        refused = self._paused("execute", order_id)
        if refused is not None:
            return refused
        return await self.gateway.execute(order_id, *args, **kwargs)

    async def fill(
        self,
        order_id: str,
        observed_price: int,
        maker: str,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        min_acceptable_output: int,
        swap_venue_ref: str,
        swap_payload: Any = None,
        receiver: str | None = None,
    ) -> Outcome[Settlement]:
        """
        Counterparty entry point: validate the stop, then execute.

        Args:
            order_id: 32-byte order id
            observed_price: Price seen by the filler (18 fractional digits)

        Returns:
            Outcome of the trigger check or of the execution
        """
        refused = self._paused("fill", order_id)
        if refused is not None:
            return refused

        trigger = self.engine.validate_trigger(order_id, observed_price)
        if not trigger.ok:
            return Outcome.failure(trigger.error, trigger.detail)

        return await self.execute(
            order_id,
            maker=maker,
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=making_amount,
            min_acceptable_output=min_acceptable_output,
            swap_venue_ref=swap_venue_ref,
            swap_payload=swap_payload,
            trigger=trigger.value,
            receiver=receiver,
        )
