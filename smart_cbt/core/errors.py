"""Error taxonomy for the exam engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CBTError(Exception):
    """Base class for all engine errors."""


class AlreadyAttempted(CBTError):
    """A session already exists for this student and subject."""

    def __init__(self, student_id: str, subject_id: str) -> None:
        super().__init__(
            f"Student {student_id} has already attempted subject {subject_id}"
        )
        self.student_id = student_id
        self.subject_id = subject_id


class AlreadyFinalized(CBTError):
    """
    A command targeted a session that is already terminal.

    The engine does not raise this for transition races; it reports
    ``Outcome.ALREADY_FINALIZED`` instead. Kept so callers that need an
    exception (e.g. strict scripts) can raise it from a result.
    """

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session {session_id} is already {status}")
        self.session_id = session_id
        self.status = status


class SinkDeliveryFailed(CBTError):
    """The reporting sink call did not complete."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Delivery to {url} failed: {reason}")
        self.url = url
        self.reason = reason


class MalformedSession(CBTError):
    """A stored session record is missing or has invalid required fields."""

    def __init__(self, reason: str, record: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Malformed session record: {reason}")
        self.reason = reason
        self.record = record


class SessionNotFound(CBTError, KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class SubjectInUse(CBTError):
    """Subject deletion refused because exam sessions reference it."""

    def __init__(self, subject_id: str, session_count: int) -> None:
        super().__init__(
            f"Subject {subject_id} is referenced by {session_count} exam session(s)"
        )
        self.subject_id = subject_id
        self.session_count = session_count


class InvalidCredentials(CBTError):
    """Participant number exists but the password does not match."""
