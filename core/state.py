"""
Core data structures for the Trailing Stop Engine.
All state objects use Pydantic for validation and serialization.
"""
from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import ErrorKind

_ORDER_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_order_id(order_id: str | bytes) -> str:
    """
    Normalize a 32-byte order id to ``0x`` + 64 lowercase hex digits.

    Args:
        order_id: Raw 32 bytes, or a hex string with or without ``0x``

    Returns:
        Canonical order id string

    Raises:
        ValueError: If the id is not exactly 32 bytes
    """
    if isinstance(order_id, (bytes, bytearray)):
        if len(order_id) != 32:
            raise ValueError(f"Order id must be 32 bytes, got {len(order_id)}")
        return "0x" + bytes(order_id).hex()

    digits = order_id.lower()
    if digits.startswith("0x"):
        digits = digits[2:]
    if not _ORDER_ID_RE.match(digits):
        raise ValueError(f"Order id must be 32 hex-encoded bytes: {order_id!r}")
    return "0x" + digits


# ============================================================================
# ENUMS
# ============================================================================

class RatchetPolicy(str, Enum):
    """How update() treats a candidate stop below the current one."""
    MONOTONIC = "monotonic"  # stop only tightens
    REPEG = "repeg"          # stop always follows the latest price


class CycleStatus(str, Enum):
    """Per-order outcome of one automation cycle."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


# ============================================================================
# REGISTRY RECORD
# ============================================================================

class TrailingStopConfig(BaseModel):
    """Trailing stop configuration and live state for one order."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    oracle_ref: str
    initial_stop_price: int          # 18 fractional digits
    trailing_distance_bps: int       # 1 bp = 0.01%
    current_stop_price: int          # 18 fractional digits
    configured_at: int = 0           # 0 = not configured
    last_update_at: int = 0
    update_frequency: int = 0        # seconds

    @field_validator("order_id")
    @classmethod
    def _canonical_order_id(cls, value: str) -> str:
        return normalize_order_id(value)

    @property
    def is_configured(self) -> bool:
        return self.configured_at != 0

    @property
    def next_update_at(self) -> int:
        """Earliest timestamp at which update() passes the rate gate."""
        return self.last_update_at + self.update_frequency

    def is_due(self, now: int) -> bool:
        return self.is_configured and now >= self.next_update_at


# ============================================================================
# FEED / ENGINE VALUES
# ============================================================================

class PriceReading(BaseModel):
    """Latest price reported by a feed, in the feed's native precision."""
    model_config = ConfigDict(frozen=True)

    oracle_ref: str
    price: int
    feed_decimals: int = Field(ge=0)
    observed_at: int


class StopUpdate(BaseModel):
    """Result of a successful update() call."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    old_stop_price: int
    new_stop_price: int
    price: int
    updated_at: int
    caller: str
    tightened: bool


class TriggerSnapshot(BaseModel):
    """Validated stop state handed to the execution gateway."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    stop_price: int
    trailing_distance_bps: int
    last_update_at: int
    observed_price: int


class Settlement(BaseModel):
    """Result of a successful execution."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    actual_output: int
    swap_venue_ref: str


class CycleResult(BaseModel):
    """One entry of an automation cycle summary."""
    order_id: str
    status: CycleStatus
    error: ErrorKind | None = None
    detail: str = ""
    stop_price: int | None = None
