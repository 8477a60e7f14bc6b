"""
Tests for the FastAPI backend, using ``TestClient`` against an app
wired with in-memory stores and fake countdowns.
"""

import pytest
from fastapi.testclient import TestClient

from smart_cbt.api import server
from smart_cbt.api.server import Services, create_app
from smart_cbt.core.models import ExamSession
from smart_cbt.engine.monitor import AdminMonitor
from smart_cbt.engine.reporting import ReportingSink
from smart_cbt.engine.session_machine import ExamEngine
from smart_cbt.engine.violation_detector import ViolationDetector


@pytest.fixture
def services(config, store, catalog, clock, timers):
    sink = ReportingSink(config, catalog)
    engine = ExamEngine(
        config, store, catalog, sink=sink, on_event=server.on_event, clock=clock, timer_factory=timers,
    )
    return Services(
        config=config,
        store=store,
        catalog=catalog,
        sink=sink,
        engine=engine,
        detector=ViolationDetector(engine),
        monitor=AdminMonitor(store, catalog, engine),
    )


@pytest.fixture
def client(config, services):
    with TestClient(create_app(config, services)) as test_client:
        yield test_client


def _start(client, student_id="s1", subject_id="mat"):
    resp = client.post("/sessions", json={"student_id": student_id, "subject_id": subject_id})
    assert resp.status_code == 201
    return resp.json()


class TestLogin:

    def test_existing_student(self, client):
        resp = client.post("/login", json={
            "participant_number": "1001", "name": "Ani", "class_name": "XII AKL", "password": "pw",
        })
        assert resp.status_code == 200
        assert resp.json()["id"] == "s1"
        assert "password" not in resp.json()

    def test_wrong_password(self, client):
        resp = client.post("/login", json={
            "participant_number": "1001", "name": "Ani", "class_name": "XII AKL", "password": "nope",
        })
        assert resp.status_code == 401

    def test_blank_field(self, client):
        resp = client.post("/login", json={
            "participant_number": "1001", "name": "  ", "class_name": "XII AKL", "password": "pw",
        })
        assert resp.status_code == 422

    def test_subject_listing(self, client):
        _start(client)
        resp = client.get("/students/s1/subjects")

        statuses = {row["subject_id"]: row["status"] for row in resp.json()}
        assert statuses == {"mat": "ongoing", "bio": "available"}


class TestSessions:

    def test_start_and_fetch(self, client):
        body = _start(client)
        assert body["status"] == "ongoing"
        assert body["remaining_seconds"] == 90 * 60

        resp = client.get(f"/sessions/{body['id']}")
        assert resp.status_code == 200
        assert resp.json()["violations"] == 0

    def test_second_attempt_conflict(self, client):
        _start(client)
        resp = client.post("/sessions", json={"student_id": "s1", "subject_id": "mat"})
        assert resp.status_code == 409

    def test_unknown_subject(self, client):
        resp = client.post("/sessions", json={"student_id": "s1", "subject_id": "nope"})
        assert resp.status_code == 404

    def test_closed_schedule_forbidden(self, client):
        client.put("/admin/schedules", json={
            "subject_id": "mat",
            "start_time": "2000-01-01T00:00:00Z",
            "end_time": "2000-01-01T02:00:00Z",
        })
        resp = client.post("/sessions", json={"student_id": "s1", "subject_id": "mat"})
        assert resp.status_code == 403

    def test_unknown_session_404(self, client):
        assert client.get("/sessions/missing").status_code == 404
        assert client.post("/sessions/missing/submit").status_code == 404

    def test_answer_and_submit(self, client):
        sid = _start(client)["id"]

        resp = client.post(f"/sessions/{sid}/answers", json={"question_id": "q1", "option": "a"})
        assert resp.status_code == 200
        assert resp.json()["session"]["answers"] == {"q1": "A"}

        resp = client.post(f"/sessions/{sid}/submit")
        assert resp.json()["outcome"] == "applied"
        assert resp.json()["reason"] == "self_submit"

        resp = client.post(f"/sessions/{sid}/submit")
        assert resp.json()["outcome"] == "already_finalized"

    def test_bad_option_rejected(self, client):
        sid = _start(client)["id"]
        resp = client.post(f"/sessions/{sid}/answers", json={"question_id": "q1", "option": "Z"})
        assert resp.status_code == 422

    def test_unknown_question_404(self, client):
        sid = _start(client)["id"]
        resp = client.post(f"/sessions/{sid}/answers", json={"question_id": "zz", "option": "A"})
        assert resp.status_code == 404

    def test_signals_reach_limit(self, client):
        sid = _start(client)["id"]

        first = client.post(f"/sessions/{sid}/signals", json={"type": "contextmenu"}).json()
        assert first["prevent_default"] is True
        assert first["violation"] is None

        for _ in range(4):
            client.post(f"/sessions/{sid}/signals", json={"type": "blur"})
            client.post(f"/sessions/{sid}/signals", json={"type": "focus"})
        last = client.post(f"/sessions/{sid}/signals", json={"type": "keydown", "key": "F12"}).json()

        assert last["auto_submitted"] is True
        assert last["count"] == 5
        assert client.get(f"/sessions/{sid}").json()["status"] == "completed"

    def test_malformed_record_500(self, client, store):
        store._records["bad"] = {"id": "bad", "status": "ongoing"}

        resp = client.get("/sessions/bad")

        assert resp.status_code == 500
        assert resp.json()["detail"] == "malformed_session"


class TestAdmin:

    def test_monitor_lists_ongoing(self, client):
        sid = _start(client)["id"]
        body = client.get("/admin/monitor").json()

        assert body["total"] == 1
        assert body["poll_seconds"] == 5
        assert body["sessions"][0]["session_id"] == sid

    def test_force_terminate(self, client):
        sid = _start(client)["id"]

        resp = client.post(f"/admin/sessions/{sid}/force", json={"status": "terminated"})
        assert resp.json()["session"]["status"] == "terminated"
        assert resp.json()["reason"] == "admin_terminated"

        again = client.post(f"/admin/sessions/{sid}/force", json={"status": "terminated"})
        assert again.json()["outcome"] == "already_finalized"

    def test_force_to_ongoing_rejected(self, client):
        sid = _start(client)["id"]
        resp = client.post(f"/admin/sessions/{sid}/force", json={"status": "ongoing"})
        assert resp.status_code == 422

    def test_results_and_csv(self, client):
        sid = _start(client)["id"]
        client.post(f"/sessions/{sid}/answers", json={"question_id": "q1", "option": "A"})
        client.post(f"/sessions/{sid}/submit")

        body = client.get("/admin/subjects/mat/results").json()
        assert body["total"] == 1
        assert body["results"][0]["score"] == 25

        resp = client.get("/admin/subjects/mat/results.csv")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "CBT_Result_Matematika.csv" in resp.headers["content-disposition"]
        assert resp.text.splitlines()[0].startswith("Name,Class,Correct")

    def test_subject_crud(self, client):
        created = client.put("/admin/subjects", json={"name": "Kimia", "question_count": 10}).json()
        assert created["name"] == "Kimia"

        resp = client.put("/admin/questions", json={
            "subject_id": created["id"],
            "text": "H2O adalah?",
            "options": {k: {"text": k} for k in "ABCDE"},
            "correct_answer": "A",
        })
        assert resp.status_code == 200
        assert len(client.get(f"/admin/subjects/{created['id']}/questions").json()) == 1

        resp = client.delete(f"/admin/subjects/{created['id']}")
        assert resp.json()["questions_removed"] == 1

    def test_delete_subject_in_use_conflict(self, client):
        _start(client)
        assert client.delete("/admin/subjects/mat").status_code == 409

    def test_incomplete_question_rejected(self, client):
        resp = client.put("/admin/questions", json={
            "subject_id": "mat",
            "text": "Missing options",
            "options": {"A": {"text": "a"}},
            "correct_answer": "A",
        })
        assert resp.status_code == 422

    def test_events_recorded(self, client):
        sid = _start(client)["id"]
        client.post(f"/sessions/{sid}/submit")

        events = client.get("/admin/events", params={"limit": 1000}).json()["events"]
        types = [e["type"] for e in events if e.get("session_id") == sid]
        assert types == ["session_started", "session_finalized"]

    def test_health(self, client):
        _start(client)
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["ongoing_sessions"] == 1
        assert body["sink_enabled"] is False


def test_session_out_from_session():
    session = ExamSession(id="x", student_id="s1", subject_id="mat", start_time=1)
    out = server.SessionOut.from_session(session, 12.5)
    assert out.remaining_seconds == 12.5
    assert out.status.value == "ongoing"


class TestAdminStudents:

    def test_register_list_delete(self, client):
        created = client.put("/admin/students", json={
            "participant_number": "2002", "name": "Budi", "class_name": "XI", "password": "pw2",
        })
        assert created.status_code == 200
        sid = created.json()["id"]
        assert "password" not in created.json()

        numbers = {s["participant_number"] for s in client.get("/admin/students").json()}
        assert numbers == {"1001", "2002"}

        login = client.post("/login", json={
            "participant_number": "2002", "name": "Budi", "class_name": "XI", "password": "pw2",
        })
        assert login.json()["id"] == sid

        assert client.delete(f"/admin/students/{sid}").status_code == 200
        assert client.delete(f"/admin/students/{sid}").status_code == 404

    def test_duplicate_participant_number(self, client):
        resp = client.put("/admin/students", json={
            "participant_number": "1001", "name": "Other", "class_name": "X", "password": "x",
        })
        assert resp.status_code == 422
        assert len(client.get("/admin/students").json()) == 1

    def test_update_keeps_number(self, client):
        resp = client.put("/admin/students", json={
            "id": "s1", "participant_number": "1001", "name": "Ani Putri", "class_name": "XII AKL",
            "password": "pw",
        })
        assert resp.status_code == 200
        assert client.get("/admin/students").json()[0]["name"] == "Ani Putri"
