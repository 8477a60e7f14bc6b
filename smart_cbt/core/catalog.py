"""
Catalog of subjects, questions, students and schedules.

Admin-owned reference data consumed by the exam engine: the engine
only reads questions and subjects from here. Optionally mirrored to a
single JSON file holding keyed collections.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from smart_cbt.core.errors import InvalidCredentials, SubjectInUse
from smart_cbt.core.models import Question, Schedule, Student, Subject
from smart_cbt.core.store import SessionStore
from smart_cbt.core.utils import get_logger, new_id, write_json_atomic

log = get_logger("core.catalog")

# Subjects offered when an empty catalog is seeded
DEFAULT_SUBJECTS = [
    ("1", "Bahasa Indonesia", 40),
    ("2", "Matematika", 40),
    ("3", "Bahasa Inggris", 40),
    ("4", "English Conversation", 100),
    ("5", "Fisika", 40),
    ("6", "Kimia", 40),
    ("7", "Biologi", 40),
    ("8", "Ekonomi", 40),
    ("9", "Geografi", 40),
    ("10", "Sosiologi", 40),
    ("11", "Sejarah", 40),
    ("12", "PAI", 40),
    ("13", "PKn", 40),
    ("14", "Seni Budaya", 40),
    ("15", "PJOK", 40),
    ("16", "Informatika", 40),
    ("17", "Prakarya", 40),
    ("18", "Bahasa Arab", 40),
    ("19", "Tahfidz", 40),
]


def _parse_time(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Catalog:
    """
    Thread-safe holder of admin-managed reference data.

    Usage::

        catalog = Catalog()
        catalog.save_subject(Subject(id="mat", name="Matematika"))
        student = catalog.login("1001", "Ani", "XII AKL", "secret")
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._lock = threading.RLock()
        self.path = path
        self._subjects: Dict[str, Subject] = {}
        self._questions: Dict[str, Question] = {}
        self._students: Dict[str, Student] = {}
        self._schedules: Dict[str, Schedule] = {}  # keyed by subject id
        if path:
            self._load()

    @property
    def lock(self) -> threading.RLock:
        """
        Catalog lock. Hold it across a subject lookup and the creation of
        a session for that subject so the subject cannot be deleted in
        between; ``delete_subject`` checks for sessions under it.
        """
        return self._lock

    # ── Subjects ─────────────────────────────────────────────────

    def list_subjects(self) -> List[Subject]:
        with self._lock:
            return list(self._subjects.values())

    def seed_defaults(self) -> int:
        """Fill an empty catalog with ``DEFAULT_SUBJECTS``; returns how many were added."""
        with self._lock:
            if self._subjects:
                return 0
            for subject_id, name, count in DEFAULT_SUBJECTS:
                self._subjects[subject_id] = Subject(id=subject_id, name=name, question_count=count)
            self._flush()
        log.info("Seeded %d default subject(s)", len(DEFAULT_SUBJECTS))
        return len(DEFAULT_SUBJECTS)

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        with self._lock:
            return self._subjects.get(subject_id)

    def save_subject(self, subject: Subject) -> Subject:
        if not subject.name.strip():
            raise ValueError("Subject name must not be empty.")
        if subject.question_count < 0:
            raise ValueError("Question count must be non-negative.")
        with self._lock:
            self._subjects[subject.id] = subject
            self._flush()
        return subject

    def delete_subject(self, subject_id: str, sessions: SessionStore) -> int:
        """
        Delete a subject and all of its questions.

        Refused while any exam session references the subject, so
        finished results always have a subject and answer key to score
        against.

        Returns:
            Number of questions removed with the subject.

        Raises:
            SubjectInUse: if sessions exist for the subject.
        """
        with self._lock:
            referencing = sessions.get_sessions_by_subject(subject_id)
            if referencing:
                raise SubjectInUse(subject_id, len(referencing))
            self._subjects.pop(subject_id, None)
            self._schedules.pop(subject_id, None)
            doomed = [qid for qid, q in self._questions.items() if q.subject_id == subject_id]
            for qid in doomed:
                del self._questions[qid]
            self._flush()
        log.info("Subject %s deleted with %d question(s)", subject_id, len(doomed))
        return len(doomed)

    # ── Questions ────────────────────────────────────────────────

    def get_questions_for_subject(self, subject_id: str) -> List[Question]:
        with self._lock:
            return [q for q in self._questions.values() if q.subject_id == subject_id]

    def save_question(self, question: Question) -> Question:
        question.validate()
        with self._lock:
            if question.subject_id not in self._subjects:
                raise KeyError(f"Unknown subject {question.subject_id}")
            self._questions[question.id] = question
            self._flush()
        return question

    def delete_question(self, question_id: str) -> bool:
        with self._lock:
            removed = self._questions.pop(question_id, None) is not None
            if removed:
                self._flush()
        return removed

    # ── Students ─────────────────────────────────────────────────

    def get_student(self, student_id: str) -> Optional[Student]:
        with self._lock:
            return self._students.get(student_id)

    def list_students(self) -> List[Student]:
        with self._lock:
            return list(self._students.values())

    def find_by_participant_number(self, participant_number: str) -> Optional[Student]:
        with self._lock:
            for student in self._students.values():
                if student.participant_number == participant_number:
                    return student
        return None

    def add_student(self, student: Student) -> Student:
        with self._lock:
            existing = self.find_by_participant_number(student.participant_number)
            if existing is not None and existing.id != student.id:
                raise ValueError(
                    f"Participant number {student.participant_number} is already registered"
                )
            self._students[student.id] = student
            self._flush()
        return student

    def delete_student(self, student_id: str) -> bool:
        with self._lock:
            removed = self._students.pop(student_id, None) is not None
            if removed:
                self._flush()
        return removed

    def login(
        self,
        participant_number: str,
        name: str,
        class_name: str,
        password: str,
    ) -> Student:
        """
        Return the student matching number and password, provisioning a
        new one on first login.

        Raises:
            ValueError: if a field is blank.
            InvalidCredentials: if the number is taken with another password.
        """
        if not all(v and v.strip() for v in (participant_number, name, class_name, password)):
            raise ValueError("All login fields are required.")

        with self._lock:
            existing = self.find_by_participant_number(participant_number)
            if existing is not None:
                if existing.password != password:
                    raise InvalidCredentials(
                        f"Wrong password for participant {participant_number}"
                    )
                return existing

            student = Student(
                id=new_id(),
                participant_number=participant_number,
                name=name.strip(),
                class_name=class_name.strip(),
                password=password,
            )
            self._students[student.id] = student
            self._flush()
        log.info("Provisioned student %s (%s)", student.id, participant_number)
        return student

    # ── Schedules ────────────────────────────────────────────────

    def get_schedule(self, subject_id: str) -> Optional[Schedule]:
        with self._lock:
            return self._schedules.get(subject_id)

    def save_schedule(self, schedule: Schedule) -> Schedule:
        """Store *schedule*, replacing any previous one for its subject."""
        start, end = _parse_time(schedule.start_time), _parse_time(schedule.end_time)
        if start and end and end < start:
            raise ValueError("Schedule end time precedes start time.")
        with self._lock:
            self._schedules[schedule.subject_id] = schedule
            self._flush()
        return schedule

    def is_subject_open(self, subject_id: str, now: Optional[datetime] = None) -> bool:
        """
        Whether students may begin *subject_id* at *now*.

        No schedule means always open; an inactive schedule means closed.
        """
        schedule = self.get_schedule(subject_id)
        if schedule is None:
            return True
        if not schedule.is_active:
            return False
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        start, end = _parse_time(schedule.start_time), _parse_time(schedule.end_time)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    # ── Persistence ──────────────────────────────────────────────

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data: Dict[str, Any] = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in catalog file {self.path}: {e}")

        self._subjects = {s["id"]: Subject.from_dict(s) for s in data.get("subjects", [])}
        self._questions = {q["id"]: Question.from_dict(q) for q in data.get("questions", [])}
        self._students = {u["id"]: Student.from_dict(u) for u in data.get("users", [])}
        self._schedules = {
            s["subjectId"]: Schedule.from_dict(s) for s in data.get("schedules", [])
        }
        log.info(
            "Catalog loaded: %d subject(s), %d question(s), %d student(s)",
            len(self._subjects), len(self._questions), len(self._students),
        )

    def _flush(self) -> None:
        if not self.path:
            return
        write_json_atomic(self.path, {
            "subjects": [s.to_dict() for s in self._subjects.values()],
            "questions": [q.to_dict() for q in self._questions.values()],
            "users": [u.to_dict() for u in self._students.values()],
            "schedules": [s.to_dict() for s in self._schedules.values()],
        })
