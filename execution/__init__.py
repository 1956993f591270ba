"""
Execution module for the Trailing Stop Engine.
"""
from execution.custody import InMemoryCustody
from execution.gateway import ExecutionGateway
from execution.swap_venue import FixedRateVenue, SwapVenue

__all__ = [
    "ExecutionGateway",
    "FixedRateVenue",
    "InMemoryCustody",
    "SwapVenue",
]
