"""
State Persistence for the Trailing Stop Engine.
Process-independent engine state: the pause flag and the keeper heartbeat.
"""
from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.logger import get_logger

log = get_logger("state_persistence")


class StatePersistence:
    """
    Small JSON document shared by the keeper and admin CLI processes.

    Sections:
    - ``pause``: flag and reason written by the circuit breaker
    - ``keeper``: last cycle number, time and summary written by the scheduler

    Writes go to a temporary file that replaces the document, so a reader in
    another process never sees a half-written file.
    """

    def __init__(self, state_file: str = "data/engine_state.json") -> None:
        self.path = Path(state_file)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._doc: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the document. Missing or corrupt files read as empty."""
        try:
            self._doc = json.loads(self.path.read_text())
        except FileNotFoundError:
            self._doc = {}
        except (OSError, json.JSONDecodeError) as e:
            log.warning(f"[StatePersistence] {self.path} unreadable, starting empty: {e}")
            self._doc = {}

    def _write(self, section: str, value: dict[str, Any]) -> None:
        # Other processes may have written other sections since our last read
        self.reload()
        self._doc[section] = {**value, 'written_at': datetime.now(timezone.utc).isoformat()}

        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(self._doc, f, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
        log.debug(f"[StatePersistence] {section} written to {self.path}")

    # pause ---------------------------------------------------------------

    def save_pause(self, paused: bool, reason: str) -> None:
        self._write("pause", {'paused': paused, 'reason': reason})

    def load_pause(self) -> tuple[bool, str]:
        pause = self._doc.get("pause") or {}
        return bool(pause.get('paused', False)), pause.get('reason', "")

    # keeper heartbeat ----------------------------------------------------

    def save_cycle(self, cycle: int, summary: dict[str, int]) -> None:
        self._write("keeper", {'cycle': cycle, 'summary': summary})

    def load_cycle(self) -> dict[str, Any] | None:
        """Last recorded keeper cycle, or None if the keeper never ran."""
        return self._doc.get("keeper")
