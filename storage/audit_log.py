"""
Audit Log for the Trailing Stop Engine.
Appends every engine, gateway and scheduler event to daily JSON files.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.event_bus import EventBus
from core.logger import get_logger

log = get_logger("audit_log")


def _jsonable(value: Any) -> Any:
    """Integers become decimal strings at any depth; prices exceed the JSON-safe range."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class AuditLog:
    """
    JSON-based audit trail.

    Subscribes to every event on the bus and appends it to
    ``audit_YYYY-MM-DD.json`` (a JSON array per UTC day).
    """

    def __init__(self, log_dir: str = "logs/audit") -> None:
        """
        Initialize AuditLog.

        Args:
            log_dir: Directory for audit files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.recorded = 0

    def attach(self, events: EventBus) -> None:
        events.subscribe_all(self.record)

    def _get_log_file(self, day: datetime | None = None) -> Path:
        day = day or datetime.now(timezone.utc)
        return self.log_dir / f"audit_{day.strftime('%Y-%m-%d')}.json"

    def _load(self, log_file: Path) -> list[dict[str, Any]]:
        if log_file.exists():
            with open(log_file, 'r') as f:
                return json.load(f)
        return []

    async def record(self, event: str, data: dict[str, Any]) -> None:
        """Event bus handler: append one entry."""
        now = datetime.now(timezone.utc)
        log_file = self._get_log_file(now)

        entries = self._load(log_file)
        entries.append({
            'event': event,
            'recorded_at': now.isoformat(),
            'data': _jsonable(data),
        })

        with open(log_file, 'w') as f:
            json.dump(entries, f, indent=2, default=str)

        self.recorded += 1
        log.debug(f"[AuditLog] {event} recorded")

    def get_entries(self, day: datetime | None = None, event: str | None = None) -> list[dict[str, Any]]:
        """
        Read back a day's entries.

        Args:
            day: UTC day (defaults to today)
            event: Only entries of this event type

        Returns:
            List of entries
        """
        entries = self._load(self._get_log_file(day))
        if event:
            entries = [e for e in entries if e['event'] == event]
        return entries
