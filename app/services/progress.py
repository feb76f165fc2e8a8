"""Keyed progress tracking for long-running catalog imports."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any


class ProgressStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressState:
    """Point-in-time view of a subject's import progress."""

    subject_id: str
    status: ProgressStatus = ProgressStatus.IDLE
    total: int = 0
    processed: int = 0
    name: str | None = None
    updated_at: datetime | None = None

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return self.processed * 100 // self.total

    @property
    def is_complete(self) -> bool:
        return self.status in (ProgressStatus.COMPLETE, ProgressStatus.ERROR)

    def to_payload(self) -> dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "name": self.name,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "percent": self.percent,
            "isComplete": self.is_complete,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class ProgressRegistry:
    """Thread-safe map of subject id to :class:`ProgressState`.

    Reconcilers report into it while HTTP handlers poll it. Unknown subjects
    read back as idle with zero counts rather than raising.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, ProgressState] = {}

    def start(self, subject_id: str, total: int, *, name: str | None = None) -> None:
        with self._lock:
            self._states[subject_id] = ProgressState(
                subject_id=subject_id,
                status=ProgressStatus.RUNNING,
                total=max(total, 0),
                processed=0,
                name=name,
                updated_at=datetime.utcnow(),
            )

    def set_total(self, subject_id: str, total: int) -> None:
        with self._lock:
            current = self._states.get(subject_id) or ProgressState(subject_id)
            self._states[subject_id] = replace(
                current, total=max(total, 0), updated_at=datetime.utcnow()
            )

    def advance(self, subject_id: str, step: int = 1) -> int:
        """Increment the processed counter and return the new value."""

        with self._lock:
            current = self._states.get(subject_id) or ProgressState(
                subject_id, status=ProgressStatus.RUNNING
            )
            processed = current.processed + step
            self._states[subject_id] = replace(
                current, processed=processed, updated_at=datetime.utcnow()
            )
            return processed

    def finish(self, subject_id: str, *, error: bool = False) -> None:
        status = ProgressStatus.ERROR if error else ProgressStatus.COMPLETE
        with self._lock:
            current = self._states.get(subject_id) or ProgressState(subject_id)
            self._states[subject_id] = replace(
                current, status=status, updated_at=datetime.utcnow()
            )

    def get(self, subject_id: str) -> ProgressState:
        with self._lock:
            return self._states.get(subject_id) or ProgressState(subject_id)

    def snapshot(self) -> list[ProgressState]:
        with self._lock:
            return list(self._states.values())
