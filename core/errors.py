"""
Error taxonomy for the Trailing Stop Engine.

Expected failures are returned to the caller as ``Outcome`` values carrying an
``ErrorKind``; they are never raised. Exceptions are reserved for programming
errors and for collaborators signalling failure across an adapter boundary
(``OracleError``, ``SwapVenueError``), which the engine and gateway translate
into error kinds.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Top-level error groups."""
    CONFIGURATION = "configuration"
    STATE = "state"
    EXECUTION = "execution"
    AVAILABILITY = "availability"
    AUTHORIZATION = "authorization"


class ErrorKind(str, Enum):
    """Every failure an engine, gateway or scheduler call can report."""
    # Configuration: caller-input defects
    INVALID_ORACLE = "InvalidOracle"
    INVALID_STOP_PRICE = "InvalidStopPrice"
    INVALID_TRAILING_DISTANCE = "InvalidTrailingDistance"
    INVALID_UPDATE_FREQUENCY = "InvalidUpdateFrequency"

    # State: valid in general, inapplicable right now
    NOT_CONFIGURED = "NotConfigured"
    UPDATE_TOO_FREQUENT = "UpdateTooFrequent"
    STOP_NOT_TRIGGERED = "StopNotTriggered"
    TRIGGER_NOT_VALIDATED = "TriggerNotValidated"

    # Execution: funds are left exactly as before the call
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    SWAP_FAILED = "SwapFailed"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    INVALID_AMOUNT = "InvalidAmount"

    # Availability: transient or administrative, safe to retry
    ORACLE_UNAVAILABLE = "OracleUnavailable"
    PAUSED = "Paused"

    # Authorization
    UNAUTHORIZED = "Unauthorized"

    @property
    def category(self) -> ErrorCategory:
        """Taxonomy group of this error kind."""
        return _CATEGORIES[self]

    @property
    def retryable(self) -> bool:
        """True if the same call may succeed later without caller changes."""
        return self in (
            ErrorKind.UPDATE_TOO_FREQUENT,
            ErrorKind.ORACLE_UNAVAILABLE,
            ErrorKind.PAUSED,
            ErrorKind.EXECUTION_TIMEOUT,
            ErrorKind.SWAP_FAILED,
        )


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.INVALID_ORACLE: ErrorCategory.CONFIGURATION,
    ErrorKind.INVALID_STOP_PRICE: ErrorCategory.CONFIGURATION,
    ErrorKind.INVALID_TRAILING_DISTANCE: ErrorCategory.CONFIGURATION,
    ErrorKind.INVALID_UPDATE_FREQUENCY: ErrorCategory.CONFIGURATION,
    ErrorKind.NOT_CONFIGURED: ErrorCategory.STATE,
    ErrorKind.UPDATE_TOO_FREQUENT: ErrorCategory.STATE,
    ErrorKind.STOP_NOT_TRIGGERED: ErrorCategory.STATE,
    ErrorKind.TRIGGER_NOT_VALIDATED: ErrorCategory.STATE,
    ErrorKind.SLIPPAGE_EXCEEDED: ErrorCategory.EXECUTION,
    ErrorKind.SWAP_FAILED: ErrorCategory.EXECUTION,
    ErrorKind.EXECUTION_TIMEOUT: ErrorCategory.EXECUTION,
    ErrorKind.INVALID_AMOUNT: ErrorCategory.EXECUTION,
    ErrorKind.ORACLE_UNAVAILABLE: ErrorCategory.AVAILABILITY,
    ErrorKind.PAUSED: ErrorCategory.AVAILABILITY,
    ErrorKind.UNAUTHORIZED: ErrorCategory.AUTHORIZATION,
}


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a single engine, gateway or admin operation."""
    ok: bool
    value: T | None = None
    error: ErrorKind | None = None
    detail: str = ""

    @classmethod
    def success(cls, value: T | None = None, detail: str = "") -> Outcome[T]:
        return cls(ok=True, value=value, detail=detail)

    @classmethod
    def failure(cls, error: ErrorKind, detail: str = "") -> Outcome[T]:
        return cls(ok=False, error=error, detail=detail or error.value)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view for events and the CLI."""
        return {
            'ok': self.ok,
            'error': self.error.value if self.error else None,
            'detail': self.detail,
        }


class OracleError(Exception):
    """Raised by a price feed that cannot produce a reading."""


class SwapVenueError(Exception):
    """Raised by a swap venue that rejected or failed a swap."""


class InsufficientFunds(Exception):
    """Raised by custody when a debit exceeds a balance or allowance."""
