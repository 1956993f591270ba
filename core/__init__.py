"""
Core module for the Trailing Stop Engine.
"""
from core.errors import ErrorCategory, ErrorKind, Outcome
from core.logger import get_logger, setup_logger
from core.state import (
    CycleResult,
    CycleStatus,
    PriceReading,
    RatchetPolicy,
    Settlement,
    StopUpdate,
    TrailingStopConfig,
    TriggerSnapshot,
    normalize_order_id,
)

__all__ = [
    "ErrorCategory",
    "ErrorKind",
    "Outcome",
    "get_logger",
    "setup_logger",
    "CycleResult",
    "CycleStatus",
    "PriceReading",
    "RatchetPolicy",
    "Settlement",
    "StopUpdate",
    "TrailingStopConfig",
    "TriggerSnapshot",
    "normalize_order_id",
]
