"""
Action log and validation recorder.

Append-only records of the tool calls executed during a session and of the
pass/fail checks the model reported. Both live for the process session and
are cleared only on request.
"""

import threading
import time
from typing import Any, Optional, Protocol

from .types import ActionLogEntry, ValidationRecord


class ActionLog:
    """Thread-safe append-only log of executed tool calls."""

    def __init__(self):
        self._entries: list[ActionLogEntry] = []
        self._lock = threading.Lock()

    def append(self, tool_name: str, arguments: dict[str, Any], success: bool) -> ActionLogEntry:
        entry = ActionLogEntry(time.time(), tool_name, dict(arguments), success)
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self) -> list[ActionLogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def to_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    def __len__(self) -> int:
        return len(self._entries)


class ValidationRecorder:
    """Thread-safe append-only list of validation outcomes."""

    def __init__(self):
        self._records: list[ValidationRecord] = []
        self._lock = threading.Lock()

    def record(self, description: str, result: str, reason: Optional[str] = None) -> ValidationRecord:
        """Append a validation outcome.

        Args:
            description: What was checked
            result: "pass" or "fail"
            reason: Failure reason, kept only for failures
        """
        record = ValidationRecord(
            time.time(),
            description,
            result,
            reason if result == "fail" else None,
        )
        with self._lock:
            self._records.append(record)
        return record

    def entries(self) -> list[ValidationRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def summary(self) -> dict[str, int]:
        records = self.entries()
        passed = sum(1 for r in records if r.passed)
        return {"total": len(records), "passed": passed, "failed": len(records) - passed}

    def to_dicts(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.entries()]

    def __len__(self) -> int:
        return len(self._records)


class ReplayScriptGenerator(Protocol):
    """Turns a recorded session into a replayable test script."""

    def generate(
        self,
        actions: list[ActionLogEntry],
        validations: list[ValidationRecord],
    ) -> str:
        ...
