"""
Infrastructure: Position State Store

Persistent position storage: a small JSON state file rewritten atomically,
plus an append-only archive of terminal positions.

State file layout:
    {
      "positions": {id: position},      # non-terminal positions
      "circuit_breaker": {...} | null,
      "updated_at": ISO timestamp
    }

Archive (<state file stem>.archive.jsonl): one terminal position per line,
never rewritten, so the cost of a state write does not grow with history.
"""

import copy
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pathlib import Path
import logging

from core.exceptions import PersistenceFailure
from core.interfaces import PersistenceStore
from core.position_state import Position

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "positions": {},
    "circuit_breaker": None,
    "updated_at": None,
}


class StateStore(PersistenceStore):
    """
    JSON-file PersistenceStore.

    Features:
    - Atomic writes (temp file + rename); a crash mid-write never leaves a torn file
    - Terminal positions are appended to the archive log instead of being deleted
    - Thread-safe operations
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/.state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/.state.json"))
        self.archive_file = self.state_file.with_name(f"{self.state_file.stem}.archive.jsonl")

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Raises:
            PersistenceFailure: file exists but cannot be read or parsed
        """
        with self._lock:
            return copy.deepcopy(self._load_locked())

    def _load_locked(self) -> Dict[str, Any]:
        if self._state is not None:
            return self._state

        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            self._state = copy.deepcopy(DEFAULT_STATE)
            return self._state

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"Failed to load state from {self.state_file}: {e}", e) from e

        if not isinstance(data, dict):
            raise PersistenceFailure(f"Invalid state file format in {self.state_file}")

        state = copy.deepcopy(DEFAULT_STATE)
        state.update(data)
        legacy_archive = state.pop("archive", None) or {}
        for record in legacy_archive.values():
            self._append_archive_locked(record)
        if legacy_archive:
            logger.info(f"Moved {len(legacy_archive)} archived position(s) from {self.state_file} to {self.archive_file}")
        self._state = state
        logger.debug("Loaded state from file")
        return state

    def _save_locked(self, state: Dict[str, Any]) -> None:
        state["updated_at"] = datetime.now(timezone.utc).isoformat()
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.state_file)
        except OSError as e:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            raise PersistenceFailure(f"Failed to save state to {self.state_file}: {e}", e) from e
        logger.debug("Saved state to file")

    def save_transition(self, position: Position) -> None:
        """
        Atomically write one position's current value.

        A terminal position is appended to the archive first and only then
        dropped from the state file. The in-memory copy is only replaced
        once the file write succeeded.
        """
        with self._lock:
            current = self._load_locked()
            updated = copy.deepcopy(current)
            record = position.to_dict()
            if position.is_terminal:
                self._append_archive_locked(record)
                updated["positions"].pop(position.id, None)
            else:
                updated["positions"][position.id] = record
            self._save_locked(updated)
            self._state = updated

    def load_non_terminal_positions(self) -> List[Position]:
        with self._lock:
            records = list(self._load_locked()["positions"].values())
        positions = [Position.from_dict(r) for r in records]
        return [p for p in positions if not p.is_terminal]

    def _append_archive_locked(self, record: Dict[str, Any]) -> None:
        try:
            with open(self.archive_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceFailure(f"Failed to archive {record.get('id')} to {self.archive_file}: {e}", e) from e

    def _read_archive_locked(self) -> Dict[str, Dict[str, Any]]:
        """Latest archived record per position id."""
        if not self.archive_file.exists():
            return {}
        records: Dict[str, Dict[str, Any]] = {}
        try:
            with open(self.archive_file, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except ValueError:
                        # A crash mid-append leaves at most one torn final line
                        logger.warning(f"Skipping unreadable archive line {line_no} in {self.archive_file}")
                        continue
                    records[record["id"]] = record
        except OSError as e:
            raise PersistenceFailure(f"Failed to read archive {self.archive_file}: {e}", e) from e
        return records

    def load_archive(self) -> List[Position]:
        with self._lock:
            records = list(self._read_archive_locked().values())
        return [Position.from_dict(r) for r in records]

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            record = self._load_locked()["positions"].get(position_id)
            if record is None:
                record = self._read_archive_locked().get(position_id)
        return Position.from_dict(record) if record else None

    def save_breaker_state(self, breaker_state: Dict[str, Any]) -> None:
        with self._lock:
            updated = copy.deepcopy(self._load_locked())
            updated["circuit_breaker"] = dict(breaker_state)
            self._save_locked(updated)
            self._state = updated

    def load_breaker_state(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            breaker = self._load_locked().get("circuit_breaker")
        return dict(breaker) if breaker else None
