"""
Scoring engine.

Pure functions over a session's answers and a subject's answer key.
Unanswered questions are neither correct nor wrong but still count in
the denominator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from smart_cbt.core.models import ExamSession, Question


@dataclass(frozen=True)
class ScoreResult:
    correct: int
    wrong: int
    unanswered: int
    total: int
    percentage: int

    def to_dict(self) -> dict:
        return {
            "correct": self.correct,
            "wrong": self.wrong,
            "unanswered": self.unanswered,
            "total": self.total,
            "percentage": self.percentage,
        }


def percentage(correct: int, total: int) -> int:
    """
    ``100 * correct / total`` rounded half-up to an integer, or 0 for an
    empty set.
    """
    if total <= 0:
        return 0
    # floor(100 * correct / total + 0.5) in integer arithmetic
    return (200 * correct + total) // (2 * total)


def score(session: ExamSession, questions: Iterable[Question]) -> ScoreResult:
    """
    Score *session* against *questions*.

    Only answers to questions in the set are considered; stray answer
    keys (e.g. for a question since deleted) are ignored.
    """
    correct = wrong = total = 0
    for question in questions:
        total += 1
        chosen = session.answers.get(question.id)
        if chosen is None:
            continue
        if chosen == question.correct_answer:
            correct += 1
        else:
            wrong += 1

    return ScoreResult(
        correct=correct,
        wrong=wrong,
        unanswered=total - correct - wrong,
        total=total,
        percentage=percentage(correct, total),
    )
