# status.py
"""
Status Reporter: the engine's health record.

Snapshots are immutable EngineStatus models swapped whole under a lock, so a
reader on any thread sees either the previous or the next record, never a mix.
"""

from __future__ import annotations

import threading
from typing import Optional

from models import EngineStatus, SubmissionRecord, _rfc3339

MAX_RECENT_ERRORS = 10


class StatusReporter:
    def __init__(self, initial: Optional[EngineStatus] = None):
        self._lock = threading.Lock()
        self._status = initial or EngineStatus()

    def snapshot(self) -> EngineStatus:
        with self._lock:
            return self._status

    def update(self, **changes) -> EngineStatus:
        with self._lock:
            self._status = self._status.model_copy(update=changes)
            return self._status

    def record_success(self, **changes) -> EngineStatus:
        changes["consecutive_failure_count"] = 0
        return self.update(**changes)

    def record_failure(self, error: BaseException, *more: BaseException, **changes) -> EngineStatus:
        """Count one failed iteration; every error goes to recent_errors, the first is last_error."""
        messages = [f"{type(e).__name__}: {e}" for e in (error,) + more]
        with self._lock:
            cur = self._status
            stamp = _rfc3339()
            recent = (list(cur.recent_errors) + [f"{stamp}: {m}" for m in messages])[-MAX_RECENT_ERRORS:]
            changes.update(
                consecutive_failure_count=cur.consecutive_failure_count + 1,
                last_error=messages[0],
                recent_errors=recent,
            )
            self._status = cur.model_copy(update=changes)
            return self._status

    def record_submission(self, kind: str, round_id: int, ok: bool,
                          signature: Optional[str] = None, error: Optional[str] = None) -> EngineStatus:
        rec = SubmissionRecord(kind=kind, round_id=round_id, ok=ok, signature=signature, error=error)
        with self._lock:
            cur = self._status
            self._status = cur.model_copy(update={
                "submissions": cur.submissions + 1,
                "submission_failures": cur.submission_failures + (0 if ok else 1),
                "last_submission": rec,
            })
            return self._status

    def increment(self, field: str, by: int = 1) -> EngineStatus:
        with self._lock:
            cur = self._status
            self._status = cur.model_copy(update={field: getattr(cur, field) + by})
            return self._status
