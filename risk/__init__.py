"""
Risk controls for the Trailing Stop Engine.
"""
from risk.circuit_breaker import CircuitBreaker, GuardedOperations

__all__ = ["CircuitBreaker", "GuardedOperations"]
