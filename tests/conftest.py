"""
Shared fixtures for the Smart CBT test suite.

Countdowns are replaced with ``FakeTimer`` so tests never wait on real
time; expiry is triggered explicitly with ``FakeTimer.fire()``.
"""

from typing import Callable, Dict, List

import pytest

from smart_cbt.core.catalog import Catalog
from smart_cbt.core.config import CBTConfig
from smart_cbt.core.models import Question, QuestionOption, Student, Subject
from smart_cbt.core.store import InMemorySessionStore
from smart_cbt.engine.session_machine import ExamEngine


START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeTimer:
    def __init__(self, duration: float, on_expire: Callable[[], None], name: str) -> None:
        self.remaining = duration
        self.on_expire = on_expire
        self.name = name
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.remaining = 0.0
        self.on_expire()


class TimerFactory:
    """Records every timer the engine arms, by session id."""

    def __init__(self) -> None:
        self.timers: Dict[str, FakeTimer] = {}
        self.created: List[FakeTimer] = []

    def __call__(self, duration: float, on_expire: Callable[[], None], name: str) -> FakeTimer:
        timer = FakeTimer(duration, on_expire, name)
        self.timers[name.replace("countdown-", "", 1)] = timer
        self.created.append(timer)
        return timer


def make_question(qid: str, subject_id: str, correct: str) -> Question:
    return Question(
        id=qid,
        subject_id=subject_id,
        text=f"Question {qid}",
        options={letter: QuestionOption(text=f"Option {letter}") for letter in "ABCDE"},
        correct_answer=correct,
    )


@pytest.fixture
def config() -> CBTConfig:
    return CBTConfig(
        exam_duration_minutes=90,
        violation_limit=5,
        sink_url="",
        persist=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> TimerFactory:
    return TimerFactory()


@pytest.fixture
def store(clock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def catalog() -> Catalog:
    """Catalog with subject ``mat`` (answer key A, B, C, D), subject ``bio`` and student ``s1``."""
    cat = Catalog()
    cat.save_subject(Subject(id="mat", name="Matematika", question_count=4))
    cat.save_subject(Subject(id="bio", name="Biologi", question_count=0))
    for qid, correct in (("q1", "A"), ("q2", "B"), ("q3", "C"), ("q4", "D")):
        cat.save_question(make_question(qid, "mat", correct))
    cat.add_student(Student(
        id="s1", participant_number="1001", name="Ani", class_name="XII AKL", password="pw",
    ))
    return cat


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def engine(config, store, catalog, clock, timers, events) -> ExamEngine:
    return ExamEngine(
        config,
        store,
        catalog,
        on_event=events.append,
        clock=clock,
        timer_factory=timers,
    )
