"""
Swap venues consumed by the execution gateway.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from core.errors import InsufficientFunds, SwapVenueError
from core.logger import get_logger
from execution.custody import InMemoryCustody

log = get_logger("swap_venue")


class SwapVenue(ABC):
    """
    External system that performs the asset exchange.

    ``swap`` pulls ``amount_in`` of ``token_in`` from ``payer`` through the
    allowance granted to ``self.account`` and delivers ``token_out`` to
    ``recipient``. Venue-specific failures raise ``SwapVenueError``.
    """

    def __init__(self, name: str, account: str) -> None:
        self.name = name
        self.account = account

    @abstractmethod
    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        recipient: str,
        payload: Any,
        payer: str,
    ) -> int:
        """
        Exchange ``amount_in`` of ``token_in`` for ``token_out``.

        Returns:
            Amount of ``token_out`` delivered to ``recipient``
        """


class FixedRateVenue(SwapVenue):
    """
    In-process venue quoting fixed rates out of its own inventory.

    Rates are (numerator, denominator) pairs in base units:
    ``amount_out = amount_in * numerator // denominator``.
    """

    def __init__(
        self,
        custody: InMemoryCustody,
        name: str = "fixed",
        delay_seconds: float = 0.0,
    ) -> None:
        super().__init__(name=name, account=f"venue:{name}")
        self.custody = custody
        self.delay_seconds = delay_seconds
        self._rates: dict[tuple[str, str], tuple[int, int]] = {}
        self.swaps = 0

    def set_rate(self, token_in: str, token_out: str, numerator: int, denominator: int = 1) -> None:
        if numerator < 0 or denominator <= 0:
            raise ValueError(f"Invalid rate {numerator}/{denominator}")
        self._rates[(token_in, token_out)] = (numerator, denominator)

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        rate = self._rates.get((token_in, token_out))
        if rate is None:
            raise SwapVenueError(f"{self.name}: no market {token_in}->{token_out}")
        numerator, denominator = rate
        return amount_in * numerator // denominator

    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        recipient: str,
        payload: Any,
        payer: str,
    ) -> int:
        amount_out = self.quote(token_in, token_out, amount_in)

        try:
            self.custody.transfer_from(token_in, self.account, payer, self.account, amount_in)
        except InsufficientFunds as e:
            raise SwapVenueError(f"{self.name}: cannot collect input: {e}") from e

        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        try:
            self.custody.transfer(token_out, self.account, recipient, amount_out)
        except InsufficientFunds as e:
            raise SwapVenueError(f"{self.name}: insufficient {token_out} inventory: {e}") from e

        self.swaps += 1
        log.debug(f"[{self.name}] {amount_in} {token_in} -> {amount_out} {token_out}")
        return amount_out
