"""
Pydantic models for the FastAPI backend.

These models define the request / response schemas for all API
endpoints and WebSocket messages.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from smart_cbt.core.models import ExamSession, SessionStatus
from smart_cbt.engine.violation_detector import SignalType


# ─── Students ─────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    """Request body for ``POST /login``."""

    participant_number: str = Field(min_length=1)
    name: str = Field(min_length=1)
    class_name: str = Field(min_length=1)
    password: str = Field(min_length=1)


class StudentOut(BaseModel):
    id: str
    participant_number: str
    name: str
    class_name: str


class SubjectStatusOut(BaseModel):
    subject_id: str
    name: str
    question_count: int
    status: str
    open: bool


# ─── Sessions ─────────────────────────────────────────────────────

class StartExamRequest(BaseModel):
    """Request body for ``POST /sessions``."""

    student_id: str
    subject_id: str


class SessionOut(BaseModel):
    id: str
    student_id: str
    subject_id: str
    start_time: int
    end_time: Optional[int] = None
    answers: Dict[str, str]
    violations: int
    status: SessionStatus
    remaining_seconds: Optional[float] = None

    @classmethod
    def from_session(
        cls,
        session: ExamSession,
        remaining_seconds: Optional[float] = None,
    ) -> "SessionOut":
        return cls(
            id=session.id,
            student_id=session.student_id,
            subject_id=session.subject_id,
            start_time=session.start_time,
            end_time=session.end_time,
            answers=dict(session.answers),
            violations=session.violations,
            status=session.status,
            remaining_seconds=remaining_seconds,
        )


class AnswerRequest(BaseModel):
    """Request body for ``POST /sessions/{id}/answers``."""

    question_id: str
    option: str = Field(pattern=r"^[A-Ea-e]$")


class CommandResponse(BaseModel):
    outcome: str
    reason: Optional[str] = None
    session: SessionOut


class SignalRequest(BaseModel):
    """Request body for ``POST /sessions/{id}/signals``."""

    type: SignalType
    hidden: bool = False
    key: Optional[str] = None
    ctrl: bool = False
    meta: bool = False


class SignalResponse(BaseModel):
    prevent_default: bool
    violation: Optional[str] = None
    count: Optional[int] = None
    limit: Optional[int] = None
    warn: bool = False
    auto_submitted: bool = False
    finalized: bool = False


# ─── Admin ────────────────────────────────────────────────────────

class ForceFinishRequest(BaseModel):
    """Request body for ``POST /admin/sessions/{id}/force``."""

    status: SessionStatus


class MonitorResponse(BaseModel):
    total: int
    poll_seconds: int
    sessions: List[Dict[str, Any]]


class ResultsResponse(BaseModel):
    subject_id: str
    total: int
    results: List[Dict[str, Any]]


class HealthStatus(BaseModel):
    """Response for ``GET /health``."""

    status: str = "healthy"
    version: str
    ongoing_sessions: int
    sink_enabled: bool
    sink_failures: int
    uptime_seconds: float


# ─── Admin catalog ────────────────────────────────────────────────

class SubjectIn(BaseModel):
    """Request body for ``PUT /admin/subjects``; omit ``id`` to create."""

    id: Optional[str] = None
    name: str = Field(min_length=1)
    question_count: int = Field(default=40, ge=0)


class OptionIn(BaseModel):
    text: str = ""
    image: Optional[str] = None
    audio: Optional[str] = None


class QuestionIn(BaseModel):
    """Request body for ``PUT /admin/questions``; omit ``id`` to create."""

    id: Optional[str] = None
    subject_id: str
    text: str = Field(min_length=1)
    options: Dict[str, OptionIn]
    correct_answer: str = Field(pattern=r"^[A-E]$")
    image: Optional[str] = None
    audio: Optional[str] = None


class ScheduleIn(BaseModel):
    """Request body for ``PUT /admin/schedules``."""

    subject_id: str
    start_time: str
    end_time: str
    is_active: bool = True


class StudentIn(BaseModel):
    """Request body for ``PUT /admin/students``; omit ``id`` to create."""

    id: Optional[str] = None
    participant_number: str = Field(min_length=1)
    name: str = Field(min_length=1)
    class_name: str = Field(min_length=1)
    password: str = Field(min_length=1)
