"""
Exam session state machine.

``ExamEngine`` owns every state change of every exam attempt:

    ongoing ──▶ completed   (self-submit, timer expiry, violation limit,
                             admin force-complete)
    ongoing ──▶ terminated  (admin force-terminate only)

All commands go through one lock. A command against a session that is
already terminal is a no-op reported as ``Outcome.ALREADY_FINALIZED``,
so racing triggers (timer, violations, self-submit, admin) produce one
terminal transition, one countdown cancellation and one sink delivery.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from smart_cbt.core.catalog import Catalog
from smart_cbt.core.config import CBTConfig
from smart_cbt.core.errors import AlreadyAttempted, AlreadyFinalized
from smart_cbt.core.models import OPTION_LETTERS, ExamSession, SessionStatus
from smart_cbt.core.store import SessionStore
from smart_cbt.core.utils import get_logger, now_ms
from smart_cbt.engine.countdown import CountdownTimer
from smart_cbt.engine.reporting import ReportingSink

log = get_logger("engine.session")


class Outcome(str, Enum):
    APPLIED = "applied"
    ALREADY_FINALIZED = "already_finalized"


class FinishReason(str, Enum):
    SELF_SUBMIT = "self_submit"
    TIME_EXPIRED = "time_expired"
    VIOLATION_LIMIT = "violation_limit"
    ADMIN_COMPLETED = "admin_completed"
    ADMIN_TERMINATED = "admin_terminated"


@dataclass
class CommandResult:
    """Result of a command against one session."""

    outcome: Outcome
    session: ExamSession
    reason: Optional[FinishReason] = None

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED

    def raise_if_finalized(self) -> "CommandResult":
        if self.outcome is Outcome.ALREADY_FINALIZED:
            raise AlreadyFinalized(self.session.id, self.session.status.value)
        return self


@dataclass
class ViolationOutcome:
    """Result of ``ExamEngine.record_violation``."""

    outcome: Outcome
    session: ExamSession
    kind: str
    count: int
    limit: int
    auto_submitted: bool = False

    @property
    def warn(self) -> bool:
        """A violation was counted but the session is still running."""
        return self.outcome is Outcome.APPLIED and not self.auto_submitted


class Timer(Protocol):
    remaining: float

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None], str], Timer]


class ExamEngine:
    """
    Session lifecycle and integrity engine.

    Usage::

        engine = ExamEngine(config, store, catalog, sink)
        session = engine.start_exam(student.id, subject.id)
        engine.select_answer(session.id, question.id, "B")
        engine.record_violation(session.id, "focus_loss")
        engine.submit(session.id)
    """

    def __init__(
        self,
        config: CBTConfig,
        store: SessionStore,
        catalog: Catalog,
        sink: Optional[ReportingSink] = None,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        clock: Callable[[], int] = now_ms,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self.cfg = config
        self.store = store
        self.catalog = catalog
        self.sink = sink
        self._on_event = on_event
        self._clock = clock
        self._timer_factory = timer_factory or self._default_timer
        self._lock = threading.Lock()
        self._timers: Dict[str, Timer] = {}

    # ── Creation ─────────────────────────────────────────────────

    def start_exam(self, student_id: str, subject_id: str) -> ExamSession:
        """
        Create the student's only attempt at *subject_id* and arm its
        countdown.

        Raises:
            AlreadyAttempted: the pair already has a session.
            KeyError: the subject does not exist.
        """
        for existing in self.store.get_sessions_by_student(student_id):
            if existing.subject_id == subject_id:
                log.warning(
                    "Start refused: student %s already attempted subject %s (%s)",
                    student_id, subject_id, existing.status.value,
                )
                raise AlreadyAttempted(student_id, subject_id)

        # subject must still exist when the session is created
        with self.catalog.lock:
            if self.catalog.get_subject(subject_id) is None:
                raise KeyError(f"Unknown subject {subject_id}")
            session = self.store.create_session(student_id, subject_id)
        self._arm_timer(session.id, float(self.cfg.exam_duration_seconds))

        self._emit({
            "type": "session_started",
            "session_id": session.id,
            "student_id": student_id,
            "subject_id": subject_id,
            "duration_seconds": self.cfg.exam_duration_seconds,
            "timestamp": session.start_time,
        })
        return session

    def resume_ongoing(self) -> int:
        """
        Re-arm countdowns for ongoing sessions found in the store (after a
        restart). Sessions whose time already ran out are expired now.

        Returns:
            Number of sessions re-armed or expired.
        """
        count = 0
        now = self._clock()
        for session in self.store.get_all_ongoing():
            with self._lock:
                if session.id in self._timers:
                    continue
            elapsed = (now - session.start_time) / 1000
            remaining = self.cfg.exam_duration_seconds - elapsed
            if remaining <= 0:
                self.expire(session.id)
            else:
                self._arm_timer(session.id, remaining)
            count += 1
        if count:
            log.info("Resumed %d ongoing session(s)", count)
        return count

    # ── Ongoing mutations ────────────────────────────────────────

    def select_answer(self, session_id: str, question_id: str, option: str) -> CommandResult:
        """
        Record *option* for *question_id*. Re-answering overwrites the
        letter; keys are never removed.
        """
        option = option.upper()
        if option not in OPTION_LETTERS:
            raise ValueError(f"Option must be one of {', '.join(OPTION_LETTERS)}")

        with self._lock:
            session = self.store.get_session(session_id)
            if session.is_terminal:
                log.info("Answer ignored: session %s is %s", session_id, session.status.value)
                return CommandResult(Outcome.ALREADY_FINALIZED, session)

            question_ids = {q.id for q in self.catalog.get_questions_for_subject(session.subject_id)}
            if question_ids and question_id not in question_ids:
                raise KeyError(f"Question {question_id} is not part of subject {session.subject_id}")

            session.answers[question_id] = option
            self.store.save_session(session)
        return CommandResult(Outcome.APPLIED, session)

    def record_violation(self, session_id: str, kind: str) -> ViolationOutcome:
        """
        Count one violation. Reaching ``violation_limit`` auto-submits the
        session in the same call.
        """
        limit = self.cfg.violation_limit
        kind = getattr(kind, "value", kind)

        with self._lock:
            session = self.store.get_session(session_id)
            if session.is_terminal:
                log.info("Violation ignored: session %s is %s", session_id, session.status.value)
                return ViolationOutcome(
                    Outcome.ALREADY_FINALIZED, session, kind, session.violations, limit,
                )

            session.violations += 1
            auto_submit = session.violations >= limit
            if auto_submit:
                finalized = self._finalize_locked(
                    session, SessionStatus.COMPLETED, FinishReason.VIOLATION_LIMIT,
                )
                if finalized is None:
                    current = self.store.get_session(session_id)
                    return ViolationOutcome(
                        Outcome.ALREADY_FINALIZED, current, kind, current.violations, limit,
                    )
            else:
                self.store.save_session(session)

        log.warning(
            "VIOLATION #%d/%d on session %s: %s", session.violations, limit, session_id, kind,
        )
        self._emit({
            "type": "violation_recorded",
            "session_id": session_id,
            "kind": kind,
            "count": session.violations,
            "limit": limit,
            "timestamp": self._clock(),
        })
        if auto_submit:
            self._after_finalize(session, FinishReason.VIOLATION_LIMIT)

        return ViolationOutcome(
            Outcome.APPLIED, session, kind, session.violations, limit, auto_submitted=auto_submit,
        )

    # ── Terminal transitions ─────────────────────────────────────

    def submit(self, session_id: str) -> CommandResult:
        """Student self-submission; unanswered questions are allowed."""
        return self._transition(session_id, SessionStatus.COMPLETED, FinishReason.SELF_SUBMIT)

    def expire(self, session_id: str) -> CommandResult:
        """Countdown reached zero."""
        return self._transition(session_id, SessionStatus.COMPLETED, FinishReason.TIME_EXPIRED)

    def force_finish(self, session_id: str, target_status: SessionStatus) -> CommandResult:
        """Admin override: force-complete or disqualify an ongoing session."""
        target_status = SessionStatus(target_status)
        if target_status is SessionStatus.COMPLETED:
            reason = FinishReason.ADMIN_COMPLETED
        elif target_status is SessionStatus.TERMINATED:
            reason = FinishReason.ADMIN_TERMINATED
        else:
            raise ValueError("Forced transition target must be 'completed' or 'terminated'.")
        return self._transition(session_id, target_status, reason)

    def _transition(
        self,
        session_id: str,
        status: SessionStatus,
        reason: FinishReason,
    ) -> CommandResult:
        with self._lock:
            session = self.store.get_session(session_id)
            if session.is_terminal:
                stray = self._timers.pop(session_id, None)
                if stray is not None:
                    stray.cancel()
                log.info(
                    "%s ignored: session %s already %s",
                    reason.value, session_id, session.status.value,
                )
                return CommandResult(Outcome.ALREADY_FINALIZED, session, reason)
            finalized = self._finalize_locked(session, status, reason)
            if finalized is None:
                return CommandResult(Outcome.ALREADY_FINALIZED, self.store.get_session(session_id), reason)

        self._after_finalize(finalized, reason)
        return CommandResult(Outcome.APPLIED, finalized, reason)

    def _finalize_locked(
        self,
        session: ExamSession,
        status: SessionStatus,
        reason: FinishReason,
    ) -> Optional[ExamSession]:
        """Stamp, persist and stop the countdown. Caller holds the lock."""
        session.status = status
        session.end_time = self._clock()
        if not self.store.save_session(session):
            return None
        timer = self._timers.pop(session.id, None)
        if timer is not None:
            timer.cancel()
        log.info(
            "Session %s %s (%s): answers=%d violations=%d",
            session.id, status.value, reason.value, session.answered_count, session.violations,
        )
        return session

    def _after_finalize(self, session: ExamSession, reason: FinishReason) -> None:
        """Side effects of a committed terminal transition; runs once per session."""
        self._emit({
            "type": "session_finalized",
            "session_id": session.id,
            "status": session.status.value,
            "reason": reason.value,
            "violations": session.violations,
            "answered": session.answered_count,
            "timestamp": session.end_time,
        })
        if self.sink is not None:
            self.sink.report(session)

    # ── Queries ──────────────────────────────────────────────────

    def get_session(self, session_id: str) -> ExamSession:
        return self.store.get_session(session_id)

    def remaining_seconds(self, session_id: str) -> Optional[float]:
        """Seconds left on the session's countdown, or ``None`` if none is armed."""
        with self._lock:
            timer = self._timers.get(session_id)
        return timer.remaining if timer is not None else None

    def subject_statuses(self, student_id: str) -> Dict[str, str]:
        """Per subject: ``available`` or the status of the student's attempt."""
        taken = {s.subject_id: s.status.value for s in self.store.get_sessions_by_student(student_id)}
        return {
            subject.id: taken.get(subject.id, "available")
            for subject in self.catalog.list_subjects()
        }

    def armed_sessions(self) -> List[str]:
        with self._lock:
            return list(self._timers)

    def shutdown(self) -> None:
        """Cancel every armed countdown."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        log.info("Engine shut down (%d countdown(s) cancelled)", len(timers))

    # ── Internals ────────────────────────────────────────────────

    def _default_timer(self, duration: float, on_expire: Callable[[], None], name: str) -> Timer:
        return CountdownTimer(duration, on_expire, tick_seconds=self.cfg.timer_tick_seconds, name=name)

    def _arm_timer(self, session_id: str, duration: float) -> None:
        timer = self._timer_factory(duration, lambda: self.expire(session_id), f"countdown-{session_id}")
        with self._lock:
            self._timers[session_id] = timer
        timer.start()

    def _emit(self, event: Dict[str, Any]) -> None:
        if self._on_event:
            try:
                self._on_event(event)
            except Exception:
                log.exception("Event callback failed for %s", event.get("type"))
