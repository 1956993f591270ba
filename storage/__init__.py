"""
Storage module for the Trailing Stop Engine.
"""
from storage.audit_log import AuditLog
from storage.registry import InMemoryRegistry, SqlRegistry, TrailingStopRegistry

__all__ = ["AuditLog", "InMemoryRegistry", "SqlRegistry", "TrailingStopRegistry"]
