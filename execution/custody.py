"""
Asset custody for the execution gateway.
Balances and allowances per (asset, account), with journalled transactions.
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from core.errors import InsufficientFunds
from core.logger import get_logger

log = get_logger("custody")

# (op, asset, a, b, amount) entries recorded inside atomic().
# Allowance entries hold the signed change, not the previous value.
_journal: ContextVar[list[tuple[Any, ...]] | None] = ContextVar("custody_journal", default=None)


class InMemoryCustody:
    """
    Token balances and allowances held in memory.

    Mutations made inside ``atomic()`` by the same task (or tasks spawned
    from it) are journalled; if the block raises, they are undone in reverse
    order and the exception propagates. Mutations from unrelated tasks are
    not touched.
    """

    def __init__(self) -> None:
        self._balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._allowances: dict[tuple[str, str, str], int] = {}

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def balance_of(self, asset: str, account: str) -> int:
        return self._balances[asset][account]

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self._allowances.get((asset, owner, spender), 0)

    def balances(self) -> dict[str, dict[str, int]]:
        return {
            asset: {acct: amount for acct, amount in accounts.items() if amount}
            for asset, accounts in self._balances.items()
        }

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def mint(self, asset: str, account: str, amount: int) -> None:
        """Credit an account from outside the system (funding, tests)."""
        self._balances[asset][account] += amount
        self._record(("mint", asset, account, None, amount))

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Negative transfer amount {amount}")
        if self._balances[asset][sender] < amount:
            raise InsufficientFunds(
                f"{sender} holds {self._balances[asset][sender]} {asset}, needs {amount}"
            )
        self._balances[asset][sender] -= amount
        self._balances[asset][recipient] += amount
        self._record(("transfer", asset, sender, recipient, amount))

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        """Set (not add to) the allowance of ``spender`` over ``owner``'s asset."""
        key = (asset, owner, spender)
        previous = self._allowances.get(key, 0)
        self._allowances[key] = amount
        self._record(("allowance", asset, owner, spender, amount - previous))

    def transfer_from(self, asset: str, spender: str, owner: str, recipient: str, amount: int) -> None:
        """Move ``owner``'s asset using ``spender``'s allowance."""
        key = (asset, owner, spender)
        allowed = self._allowances.get(key, 0)
        if allowed < amount:
            raise InsufficientFunds(f"{spender} allowance {allowed} {asset} < {amount}")
        self.transfer(asset, owner, recipient, amount)
        self._allowances[key] = allowed - amount
        self._record(("allowance", asset, owner, spender, -amount))

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """All-or-nothing block over this task's custody mutations."""
        outer = _journal.get()
        entries: list[tuple[Any, ...]] = []
        token = _journal.set(entries)
        try:
            yield
        except BaseException:
            self._undo(entries)
            raise
        finally:
            _journal.reset(token)

        # Nested block committed: the enclosing block may still roll it back
        if outer is not None:
            outer.extend(entries)

    def _record(self, entry: tuple[Any, ...]) -> None:
        entries = _journal.get()
        if entries is not None:
            entries.append(entry)

    def _undo(self, entries: list[tuple[Any, ...]]) -> None:
        for op, asset, a, b, amount in reversed(entries):
            if op == "mint":
                self._balances[asset][a] -= amount
            elif op == "transfer":
                self._balances[asset][b] -= amount
                self._balances[asset][a] += amount
            elif op == "allowance":
                key = (asset, a, b)
                self._allowances[key] = self._allowances.get(key, 0) - amount
        if entries:
            log.info(f"[Custody] Rolled back {len(entries)} mutation(s)")
