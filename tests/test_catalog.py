"""
Tests for the catalog: login, subject/question management, schedules
and JSON persistence.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from smart_cbt.core.catalog import DEFAULT_SUBJECTS, Catalog
from smart_cbt.core.errors import InvalidCredentials, SubjectInUse
from smart_cbt.core.models import Schedule, Student, Subject

from tests.conftest import make_question


class TestLogin:

    def test_existing_student_logs_in(self, catalog):
        student = catalog.login("1001", "Ani", "XII AKL", "pw")
        assert student.id == "s1"

    def test_first_login_provisions_student(self, catalog):
        student = catalog.login("2002", " Budi ", "XI", "secret")

        assert student.name == "Budi"
        assert catalog.find_by_participant_number("2002") is student
        assert len(catalog.list_students()) == 2

    def test_wrong_password_refused(self, catalog):
        with pytest.raises(InvalidCredentials):
            catalog.login("1001", "Ani", "XII AKL", "wrong")
        assert len(catalog.list_students()) == 1

    @pytest.mark.parametrize("fields", [
        ("", "Ani", "X", "pw"),
        ("1001", "  ", "X", "pw"),
        ("1001", "Ani", "", "pw"),
        ("1001", "Ani", "X", ""),
    ])
    def test_blank_fields_rejected(self, catalog, fields):
        with pytest.raises(ValueError):
            catalog.login(*fields)

    def test_duplicate_participant_number_rejected(self, catalog):
        with pytest.raises(ValueError):
            catalog.add_student(Student(id="s2", participant_number="1001", name="X", class_name="Y"))


class TestSubjects:

    def test_save_and_list(self, catalog):
        names = {s.name for s in catalog.list_subjects()}
        assert names == {"Matematika", "Biologi"}

    def test_blank_name_rejected(self, catalog):
        with pytest.raises(ValueError):
            catalog.save_subject(Subject(id="x", name=" "))

    def test_delete_cascades_to_questions(self, catalog, store):
        removed = catalog.delete_subject("mat", store)

        assert removed == 4
        assert catalog.get_subject("mat") is None
        assert catalog.get_questions_for_subject("mat") == []

    def test_delete_refused_while_sessions_exist(self, catalog, store):
        store.create_session("s1", "mat")

        with pytest.raises(SubjectInUse) as exc_info:
            catalog.delete_subject("mat", store)
        assert exc_info.value.session_count == 1
        assert catalog.get_subject("mat") is not None
        assert len(catalog.get_questions_for_subject("mat")) == 4

    def test_seed_defaults_only_when_empty(self, catalog):
        assert catalog.seed_defaults() == 0

        empty = Catalog()
        assert empty.seed_defaults() == len(DEFAULT_SUBJECTS)
        assert empty.get_subject("2").name == "Matematika"


class TestQuestions:

    def test_question_for_unknown_subject_rejected(self, catalog):
        with pytest.raises(KeyError):
            catalog.save_question(make_question("qx", "nope", "A"))

    def test_invalid_question_rejected(self, catalog):
        question = make_question("qx", "mat", "A")
        question.correct_answer = "Z"
        with pytest.raises(ValueError):
            catalog.save_question(question)

    def test_delete_question(self, catalog):
        assert catalog.delete_question("q1") is True
        assert catalog.delete_question("q1") is False
        assert len(catalog.get_questions_for_subject("mat")) == 3


class TestSchedules:

    NOW = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)

    def _schedule(self, start, end, active=True):
        return Schedule(
            id="sch1",
            subject_id="mat",
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            is_active=active,
        )

    def test_no_schedule_means_open(self, catalog):
        assert catalog.is_subject_open("mat", self.NOW)

    def test_open_inside_window(self, catalog):
        catalog.save_schedule(self._schedule(self.NOW - timedelta(hours=1), self.NOW + timedelta(hours=1)))
        assert catalog.is_subject_open("mat", self.NOW)

    def test_closed_outside_window(self, catalog):
        catalog.save_schedule(self._schedule(self.NOW + timedelta(hours=1), self.NOW + timedelta(hours=2)))
        assert not catalog.is_subject_open("mat", self.NOW)
        assert not catalog.is_subject_open("mat", self.NOW + timedelta(hours=3))

    def test_inactive_schedule_closes_subject(self, catalog):
        catalog.save_schedule(
            self._schedule(self.NOW - timedelta(hours=1), self.NOW + timedelta(hours=1), active=False)
        )
        assert not catalog.is_subject_open("mat", self.NOW)

    def test_save_replaces_previous(self, catalog):
        catalog.save_schedule(self._schedule(self.NOW, self.NOW + timedelta(hours=1)))
        later = self._schedule(self.NOW + timedelta(days=1), self.NOW + timedelta(days=2))
        catalog.save_schedule(later)
        assert catalog.get_schedule("mat") is later

    def test_end_before_start_rejected(self, catalog):
        with pytest.raises(ValueError):
            catalog.save_schedule(self._schedule(self.NOW, self.NOW - timedelta(hours=1)))


class TestPersistence:

    def test_catalog_survives_reload(self, tmp_path):
        path = str(tmp_path / "catalog.json")
        cat = Catalog(path)
        cat.save_subject(Subject(id="mat", name="Matematika"))
        cat.save_question(make_question("q1", "mat", "E"))
        cat.login("1001", "Ani", "XII", "pw")

        reloaded = Catalog(path)
        assert reloaded.get_subject("mat").name == "Matematika"
        assert reloaded.get_questions_for_subject("mat")[0].correct_answer == "E"
        assert reloaded.find_by_participant_number("1001").name == "Ani"

    def test_failed_write_keeps_previous_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        cat = Catalog(str(path))
        cat.save_subject(Subject(id="mat", name="Matematika"))
        before = path.read_text(encoding="utf-8")

        with patch("smart_cbt.core.utils.json.dump", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                cat.save_subject(Subject(id="bio", name="Biologi"))

        assert path.read_text(encoding="utf-8") == before
        assert not (tmp_path / "catalog.json.tmp").exists()
        assert Catalog(str(path)).get_subject("bio") is None

    def test_missing_file_starts_empty(self, tmp_path):
        cat = Catalog(str(tmp_path / "absent.json"))

        assert cat.list_subjects() == []
        assert not (tmp_path / "absent.json").exists()


class TestDeleteWhileStarting:

    def test_start_waits_for_delete_and_fails(self, catalog, store, engine):
        outcome = {}

        def start():
            try:
                outcome["session"] = engine.start_exam("s1", "mat")
            except KeyError as e:
                outcome["error"] = e

        starter = threading.Thread(target=start)
        original = store.get_sessions_by_subject

        def lookup_then_race(subject_id):
            referencing = original(subject_id)
            starter.start()
            starter.join(timeout=0.2)
            outcome["blocked"] = starter.is_alive()
            return referencing

        with patch.object(store, "get_sessions_by_subject", side_effect=lookup_then_race):
            catalog.delete_subject("mat", store)
        starter.join(timeout=5)

        assert outcome["blocked"] is True
        assert "error" in outcome
        assert store.get_sessions_by_student("s1") == []
        assert catalog.get_subject("mat") is None
