"""
Domain records for the CBT engine.

Each record converts to and from the camelCase dict layout used by the
JSON store and the reporting payload. ``ExamSession.from_dict`` refuses
records with missing or invalid invariant-bearing fields instead of
defaulting them.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from smart_cbt.core.errors import MalformedSession

OPTION_LETTERS = ("A", "B", "C", "D", "E")


class SessionStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ONGOING


@dataclass
class Student:
    """A participant. ``participant_number`` is unique within a catalog."""

    id: str
    participant_number: str
    name: str
    class_name: str
    password: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participantNumber": self.participant_number,
            "name": self.name,
            "className": self.class_name,
            "password": self.password,
        }

    @staticmethod
    def from_dict(data: dict) -> "Student":
        return Student(
            id=data["id"],
            participant_number=data["participantNumber"],
            name=data["name"],
            class_name=data["className"],
            password=data.get("password"),
        )


@dataclass
class Subject:
    id: str
    name: str
    question_count: int = 40

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "questionCount": self.question_count}

    @staticmethod
    def from_dict(data: dict) -> "Subject":
        return Subject(
            id=data["id"],
            name=data["name"],
            question_count=int(data.get("questionCount", 40)),
        )


@dataclass
class QuestionOption:
    text: str
    image: Optional[str] = None
    audio: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"text": self.text}
        if self.image:
            data["image"] = self.image
        if self.audio:
            data["audio"] = self.audio
        return data

    @staticmethod
    def from_dict(data: dict) -> "QuestionOption":
        return QuestionOption(
            text=data.get("text", ""),
            image=data.get("image"),
            audio=data.get("audio"),
        )


@dataclass
class Question:
    """Five-option multiple-choice question belonging to one subject."""

    id: str
    subject_id: str
    text: str
    options: Dict[str, QuestionOption]
    correct_answer: str
    image: Optional[str] = None
    audio: Optional[str] = None

    def validate(self) -> None:
        if not self.text.strip():
            raise ValueError("Question text must not be empty.")
        missing = [letter for letter in OPTION_LETTERS if letter not in self.options]
        if missing:
            raise ValueError(f"Question is missing option(s): {', '.join(missing)}")
        if self.correct_answer not in OPTION_LETTERS:
            raise ValueError("Correct answer must be one of A-E.")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "subjectId": self.subject_id,
            "text": self.text,
            "options": {k: v.to_dict() for k, v in self.options.items()},
            "correctAnswer": self.correct_answer,
        }
        if self.image:
            data["image"] = self.image
        if self.audio:
            data["audio"] = self.audio
        return data

    @staticmethod
    def from_dict(data: dict) -> "Question":
        return Question(
            id=data["id"],
            subject_id=data["subjectId"],
            text=data["text"],
            options={
                letter: QuestionOption.from_dict(opt)
                for letter, opt in data.get("options", {}).items()
            },
            correct_answer=data["correctAnswer"],
            image=data.get("image"),
            audio=data.get("audio"),
        )


@dataclass
class Schedule:
    """Access window for one subject. Times are ISO-8601 strings."""

    id: str
    subject_id: str
    start_time: str
    end_time: str
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "isActive": self.is_active,
        }

    @staticmethod
    def from_dict(data: dict) -> "Schedule":
        return Schedule(
            id=data["id"],
            subject_id=data["subjectId"],
            start_time=data.get("startTime", ""),
            end_time=data.get("endTime", ""),
            is_active=bool(data.get("isActive", True)),
        )


_SESSION_REQUIRED = ("id", "studentId", "subjectId", "startTime", "answers", "violations", "status")


@dataclass
class ExamSession:
    """One student's single attempt at one subject's exam."""

    id: str
    student_id: str
    subject_id: str
    start_time: int
    answers: Dict[str, str] = field(default_factory=dict)
    violations: int = 0
    status: SessionStatus = SessionStatus.ONGOING
    end_time: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    def copy(self) -> "ExamSession":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "studentId": self.student_id,
            "subjectId": self.subject_id,
            "startTime": self.start_time,
            "answers": dict(self.answers),
            "violations": self.violations,
            "status": self.status.value,
        }
        if self.end_time is not None:
            data["endTime"] = self.end_time
        return data

    @staticmethod
    def from_dict(data: dict) -> "ExamSession":
        """
        Build a session from a stored record.

        Raises:
            MalformedSession: if a required field is missing, or if
                ``status``/``violations``/``answers`` hold invalid values.
        """
        if not isinstance(data, dict):
            raise MalformedSession("record is not a mapping")
        missing = [key for key in _SESSION_REQUIRED if key not in data or data[key] is None]
        if missing:
            raise MalformedSession(f"missing field(s): {', '.join(missing)}", data)

        try:
            status = SessionStatus(data["status"])
        except ValueError:
            raise MalformedSession(f"unknown status {data['status']!r}", data)

        violations = data["violations"]
        if isinstance(violations, bool) or not isinstance(violations, int) or violations < 0:
            raise MalformedSession(f"invalid violations {violations!r}", data)

        answers = data["answers"]
        if not isinstance(answers, dict):
            raise MalformedSession("answers is not a mapping", data)

        end_time = data.get("endTime")
        if status.is_terminal and end_time is None:
            raise MalformedSession("terminal session without endTime", data)

        return ExamSession(
            id=str(data["id"]),
            student_id=str(data["studentId"]),
            subject_id=str(data["subjectId"]),
            start_time=int(data["startTime"]),
            answers={str(k): str(v) for k, v in answers.items()},
            violations=violations,
            status=status,
            end_time=int(end_time) if end_time is not None else None,
        )
