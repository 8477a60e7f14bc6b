"""
Admin monitor.

Read side: a live view of ongoing sessions joined with student and
subject data, and per-subject results of finished sessions.
Write side: forced transitions, delegated to the exam engine.

Nothing here is persisted; every view is recomputed on each call.
"""

from __future__ import annotations

import csv
import io
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from smart_cbt.core.catalog import Catalog
from smart_cbt.core.models import SessionStatus
from smart_cbt.core.store import SessionStore
from smart_cbt.core.utils import get_logger, ms_to_iso
from smart_cbt.engine.scoring import percentage, score
from smart_cbt.engine.session_machine import CommandResult, ExamEngine

log = get_logger("engine.monitor")

CSV_HEADERS = ["Name", "Class", "Correct", "Wrong", "Score", "Violations", "Status", "Finished At"]


@dataclass
class MonitorRow:
    session_id: str
    student_id: str
    student_name: Optional[str]
    student_class: Optional[str]
    subject_id: str
    subject_name: Optional[str]
    answered: int
    total_questions: int
    progress: int
    violations: int
    start_time: int
    remaining_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResultRow:
    session_id: str
    student_name: str
    student_class: str
    correct: int
    wrong: int
    score: int
    violations: int
    status: str
    start_time: int
    end_time: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AdminMonitor:
    """
    Polling view over the session store plus the admin command path.

    Usage::

        monitor = AdminMonitor(store, catalog, engine)
        rows = monitor.ongoing_sessions()
        monitor.force_finish(rows[0].session_id, SessionStatus.TERMINATED)
    """

    def __init__(self, store: SessionStore, catalog: Catalog, engine: ExamEngine) -> None:
        self.store = store
        self.catalog = catalog
        self.engine = engine

    # ── Live view ────────────────────────────────────────────────

    def ongoing_sessions(self) -> List[MonitorRow]:
        """All ongoing sessions with progress = answered / bank size (0 for an empty bank)."""
        rows: List[MonitorRow] = []
        for session in self.store.get_all_ongoing():
            student = self.catalog.get_student(session.student_id)
            subject = self.catalog.get_subject(session.subject_id)
            bank = {q.id for q in self.catalog.get_questions_for_subject(session.subject_id)}
            total = len(bank)
            # answers to since-deleted questions do not count toward progress
            answered = sum(1 for qid in session.answers if qid in bank)
            rows.append(MonitorRow(
                session_id=session.id,
                student_id=session.student_id,
                student_name=student.name if student else None,
                student_class=student.class_name if student else None,
                subject_id=session.subject_id,
                subject_name=subject.name if subject else None,
                answered=answered,
                total_questions=total,
                progress=percentage(answered, total),
                violations=session.violations,
                start_time=session.start_time,
                remaining_seconds=self.engine.remaining_seconds(session.id),
            ))
        return rows

    # ── Commands ─────────────────────────────────────────────────

    def force_finish(self, session_id: str, target_status: SessionStatus) -> CommandResult:
        """Force-complete or disqualify; a no-op on finished sessions."""
        result = self.engine.force_finish(session_id, target_status)
        if not result.applied:
            log.warning(
                "Forced %s rejected: session %s already %s",
                SessionStatus(target_status).value, session_id, result.session.status.value,
            )
        return result

    # ── Results ──────────────────────────────────────────────────

    def subject_results(self, subject_id: str) -> List[ResultRow]:
        """Scored rows for every finished session of *subject_id*."""
        questions = self.catalog.get_questions_for_subject(subject_id)
        rows: List[ResultRow] = []
        for session in self.store.get_sessions_by_subject(subject_id):
            if not session.is_terminal:
                continue
            student = self.catalog.get_student(session.student_id)
            result = score(session, questions)
            rows.append(ResultRow(
                session_id=session.id,
                student_name=student.name if student else "Unknown",
                student_class=student.class_name if student else "-",
                correct=result.correct,
                wrong=result.wrong,
                score=result.percentage,
                violations=session.violations,
                status=session.status.value,
                start_time=session.start_time,
                end_time=session.end_time,
            ))
        return rows

    def export_results_csv(self, subject_id: str) -> str:
        """CSV text of ``subject_results`` with a header row."""
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for row in self.subject_results(subject_id):
            writer.writerow([
                row.student_name,
                row.student_class,
                row.correct,
                row.wrong,
                row.score,
                row.violations,
                row.status,
                ms_to_iso(row.end_time or row.start_time),
            ])
        return buf.getvalue()
