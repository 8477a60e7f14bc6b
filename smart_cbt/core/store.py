"""
Session Store: durable mapping from session id to session record.

Records are kept in their serialized (camelCase dict) form and parsed
on every read, so a damaged record surfaces as ``MalformedSession`` at
the point of use instead of being silently repaired.

Implementations:
    - ``InMemorySessionStore`` — process-local, for tests and demos
    - ``JsonSessionStore`` — same, mirrored to a JSON file on every write
"""

from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from smart_cbt.core.errors import AlreadyAttempted, MalformedSession, SessionNotFound
from smart_cbt.core.models import ExamSession, SessionStatus
from smart_cbt.core.utils import get_logger, new_id, now_ms, write_json_atomic

log = get_logger("core.store")

_TERMINAL_VALUES = {SessionStatus.COMPLETED.value, SessionStatus.TERMINATED.value}


class SessionStore(ABC):
    """Contract consumed by the engine and the admin monitor."""

    @abstractmethod
    def create_session(self, student_id: str, subject_id: str) -> ExamSession:
        """Create an ongoing session, or raise ``AlreadyAttempted``."""

    @abstractmethod
    def get_session(self, session_id: str) -> ExamSession:
        """Return the session, or raise ``SessionNotFound``."""

    @abstractmethod
    def get_sessions_by_student(self, student_id: str) -> List[ExamSession]: ...

    @abstractmethod
    def get_sessions_by_subject(self, subject_id: str) -> List[ExamSession]: ...

    @abstractmethod
    def get_all_ongoing(self) -> List[ExamSession]: ...

    @abstractmethod
    def save_session(self, session: ExamSession) -> bool:
        """Upsert by id. Returns ``False`` if the stored record is terminal."""


class InMemorySessionStore(SessionStore):
    """
    Thread-safe dict-backed store.

    ``create_session`` performs the one-attempt check and the insert
    under a single lock.
    """

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, dict] = {}
        self._clock = clock

    # ── Contract ─────────────────────────────────────────────────

    def create_session(self, student_id: str, subject_id: str) -> ExamSession:
        with self._lock:
            for record in self._records.values():
                if record.get("studentId") == student_id and record.get("subjectId") == subject_id:
                    raise AlreadyAttempted(student_id, subject_id)

            session = ExamSession(
                id=self._unique_id(),
                student_id=student_id,
                subject_id=subject_id,
                start_time=self._clock(),
            )
            self._commit(session.id, session.to_dict(), None)
        log.info("Session %s created (student=%s, subject=%s)", session.id, student_id, subject_id)
        return session.copy()

    def get_session(self, session_id: str) -> ExamSession:
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return ExamSession.from_dict(record)

    def get_sessions_by_student(self, student_id: str) -> List[ExamSession]:
        return self._query(lambda r: r.get("studentId") == student_id)

    def get_sessions_by_subject(self, subject_id: str) -> List[ExamSession]:
        return self._query(lambda r: r.get("subjectId") == subject_id)

    def get_all_ongoing(self) -> List[ExamSession]:
        return self._query(lambda r: r.get("status") == SessionStatus.ONGOING.value)

    def save_session(self, session: ExamSession) -> bool:
        with self._lock:
            existing = self._records.get(session.id)
            if existing is not None and existing.get("status") in _TERMINAL_VALUES:
                log.warning(
                    "Refusing to overwrite finalized session %s (%s)",
                    session.id, existing.get("status"),
                )
                return False
            self._commit(session.id, session.to_dict(), existing)
        return True

    # ── Extras ───────────────────────────────────────────────────

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ── Internals ────────────────────────────────────────────────

    def _query(self, predicate: Callable[[dict], bool]) -> List[ExamSession]:
        with self._lock:
            matched = [dict(r) for r in self._records.values() if predicate(r)]

        sessions: List[ExamSession] = []
        for record in matched:
            try:
                sessions.append(ExamSession.from_dict(record))
            except MalformedSession as exc:
                log.error("Skipping record %s: %s", record.get("id", "?"), exc.reason)
        sessions.sort(key=lambda s: s.start_time)
        return sessions

    def _commit(self, session_id: str, record: dict, previous: Optional[dict]) -> None:
        """Apply a write and persist it; the write is undone if persisting fails. Lock held."""
        self._records[session_id] = record
        try:
            self._flush()
        except Exception:
            if previous is None:
                del self._records[session_id]
            else:
                self._records[session_id] = previous
            log.error("Write of session %s not persisted; change rolled back", session_id)
            raise

    def _unique_id(self) -> str:
        session_id = new_id()
        while session_id in self._records:
            session_id = new_id()
        return session_id

    def _flush(self) -> None:
        """Persist hook; called with the lock held."""


class JsonSessionStore(InMemorySessionStore):
    """
    ``InMemorySessionStore`` mirrored to a JSON file.

    The file holds a list of session records and is rewritten on every
    successful write.
    """

    def __init__(self, path: str, clock: Callable[[], int] = now_ms) -> None:
        super().__init__(clock=clock)
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in session file {self.path}: {e}")
        if not isinstance(data, list):
            raise ValueError(f"Session file {self.path} must contain a list")

        for record in data:
            record_id: Optional[str] = record.get("id") if isinstance(record, dict) else None
            if not record_id:
                log.error("Dropping session record without id from %s", self.path)
                continue
            self._records[str(record_id)] = record
        log.info("Loaded %d session record(s) from %s", len(self._records), self.path)

    def _flush(self) -> None:
        write_json_atomic(self.path, list(self._records.values()))
