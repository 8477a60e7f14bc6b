"""
FastAPI server for the Smart CBT engine.

Provides REST endpoints for the student exam page and the admin
dashboard, and a WebSocket that streams engine events (session starts,
violations, finalizations) to monitoring clients.

Endpoints:
    POST  /login                               — student login / provisioning
    GET   /students/{id}/subjects              — subjects with attempt status
    POST  /sessions                            — start an exam attempt
    GET   /sessions/{id}                       — session state + time left
    POST  /sessions/{id}/answers               — select an answer
    POST  /sessions/{id}/signals               — report an anti-cheat signal
    POST  /sessions/{id}/submit                — self-submit
    GET   /admin/monitor                       — live ongoing sessions
    POST  /admin/sessions/{id}/force           — force complete / terminate
    GET   /admin/subjects/{id}/results         — scored results
    GET   /admin/subjects/{id}/results.csv     — results as CSV
    GET   /admin/subjects                      — list subjects
    PUT   /admin/subjects                      — create / update a subject
    DELETE /admin/subjects/{id}                — delete subject + questions
    GET   /admin/subjects/{id}/questions       — question bank of a subject
    PUT   /admin/questions                     — create / update a question
    DELETE /admin/questions/{id}               — delete a question
    PUT   /admin/schedules                     — set a subject's access window
    GET   /admin/students                      — list students
    PUT   /admin/students                      — register / update a student
    DELETE /admin/students/{id}                — remove a student
    GET   /admin/events                        — recorded engine events
    GET   /health                              — server health check
    WS    /ws/events                           — real-time event stream
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from smart_cbt import __version__
from smart_cbt.api.models import (
    AnswerRequest,
    CommandResponse,
    ForceFinishRequest,
    HealthStatus,
    LoginRequest,
    MonitorResponse,
    QuestionIn,
    ResultsResponse,
    ScheduleIn,
    SessionOut,
    SignalRequest,
    SignalResponse,
    StartExamRequest,
    StudentIn,
    StudentOut,
    SubjectIn,
    SubjectStatusOut,
)
from smart_cbt.core.catalog import Catalog
from smart_cbt.core.config import CBTConfig
from smart_cbt.core.errors import (
    AlreadyAttempted,
    InvalidCredentials,
    MalformedSession,
    SessionNotFound,
    SubjectInUse,
)
from smart_cbt.core.models import Question, QuestionOption, Schedule, Student, Subject
from smart_cbt.core.store import InMemorySessionStore, JsonSessionStore, SessionStore
from smart_cbt.core.utils import get_logger, new_id, setup_folders
from smart_cbt.engine.monitor import AdminMonitor
from smart_cbt.engine.reporting import ReportingSink
from smart_cbt.engine.session_machine import CommandResult, ExamEngine
from smart_cbt.engine.violation_detector import ClientSignal, ViolationDetector

log = get_logger("api")

# ─── WebSocket Manager ───────────────────────────────────────────

class ConnectionManager:
    """Manages active WebSocket connections for event broadcasting."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info("WebSocket client connected (%d total)", len(self._connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info("WebSocket client disconnected (%d total)", len(self._connections))

    async def broadcast(self, data: Dict[str, Any]) -> None:
        """Send a JSON message to all connected clients."""
        dead: list[WebSocket] = []
        for ws in self._connections:
            try:
                await ws.send_json(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)


# ─── Shared instances (set by create_app) ─────────────────────────

_ws_manager = ConnectionManager()
_event_log: Deque[Dict[str, Any]] = deque(maxlen=1000)
_start_time = time.time()
_loop: Optional[asyncio.AbstractEventLoop] = None


def on_event(event: Dict[str, Any]) -> None:
    """Thread-safe event receiver — queues events for WebSocket broadcast."""
    _event_log.append(event)
    # Schedule broadcast on the async event loop
    if _loop is not None and _loop.is_running():
        asyncio.run_coroutine_threadsafe(_ws_manager.broadcast(event), _loop)


@dataclass
class Services:
    """Everything the endpoints need, wired together."""

    config: CBTConfig
    store: SessionStore
    catalog: Catalog
    sink: ReportingSink
    engine: ExamEngine
    detector: ViolationDetector
    monitor: AdminMonitor


def build_services(config: CBTConfig) -> Services:
    """Wire stores, sink, engine, detector and monitor from *config*."""
    if config.persist:
        setup_folders(config.base_folder)
        store: SessionStore = JsonSessionStore(config.sessions_file)
        catalog = Catalog(config.catalog_file)
    else:
        store = InMemorySessionStore()
        catalog = Catalog()

    sink = ReportingSink(config, catalog)
    engine = ExamEngine(config, store, catalog, sink=sink, on_event=on_event)
    return Services(
        config=config,
        store=store,
        catalog=catalog,
        sink=sink,
        engine=engine,
        detector=ViolationDetector(engine),
        monitor=AdminMonitor(store, catalog, engine),
    )


def _student_out(student: Student) -> StudentOut:
    return StudentOut(
        id=student.id,
        participant_number=student.participant_number,
        name=student.name,
        class_name=student.class_name,
    )


def _command_response(result: CommandResult, services: Services) -> CommandResponse:
    return CommandResponse(
        outcome=result.outcome.value,
        reason=result.reason.value if result.reason else None,
        session=SessionOut.from_session(
            result.session, services.engine.remaining_seconds(result.session.id),
        ),
    )


# ─── App Factory ──────────────────────────────────────────────────

def create_app(config: CBTConfig, services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    svc = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _loop
        _loop = asyncio.get_running_loop()
        svc.engine.resume_ongoing()
        log.info("API server started on %s:%d", config.api_host, config.api_port)
        yield
        svc.engine.shutdown()
        log.info("API server shutting down.")

    app = FastAPI(
        title="Smart CBT API",
        version=__version__,
        description="Computer-based testing with exam session integrity",
        lifespan=lifespan,
    )
    app.state.services = svc

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ────────────────────────────────────────────

    @app.exception_handler(SessionNotFound)
    async def _not_found(request: Request, exc: SessionNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(MalformedSession)
    async def _malformed(request: Request, exc: MalformedSession) -> JSONResponse:
        log.error("Malformed session record: %s", exc.reason)
        return JSONResponse(
            status_code=500,
            content={"detail": "malformed_session", "reason": exc.reason},
        )

    # ── Students ─────────────────────────────────────────────────

    @app.post("/login", response_model=StudentOut)
    def login(req: LoginRequest) -> StudentOut:
        """Log a student in, creating the account on first login."""
        try:
            student = svc.catalog.login(
                req.participant_number, req.name, req.class_name, req.password,
            )
        except InvalidCredentials as exc:
            raise HTTPException(status_code=401, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return _student_out(student)

    @app.get("/students/{student_id}/subjects", response_model=List[SubjectStatusOut])
    def student_subjects(student_id: str) -> List[SubjectStatusOut]:
        """Subjects with this student's attempt status and schedule state."""
        statuses = svc.engine.subject_statuses(student_id)
        return [
            SubjectStatusOut(
                subject_id=subject.id,
                name=subject.name,
                question_count=subject.question_count,
                status=statuses.get(subject.id, "available"),
                open=svc.catalog.is_subject_open(subject.id),
            )
            for subject in svc.catalog.list_subjects()
        ]

    # ── Sessions ─────────────────────────────────────────────────

    @app.post("/sessions", response_model=SessionOut, status_code=201)
    def start_exam(req: StartExamRequest) -> SessionOut:
        """Start the student's only attempt at a subject."""
        if svc.catalog.get_student(req.student_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown student {req.student_id}")
        if svc.catalog.get_subject(req.subject_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown subject {req.subject_id}")
        if not svc.catalog.is_subject_open(req.subject_id):
            raise HTTPException(status_code=403, detail="Subject is not open for exams now.")
        try:
            session = svc.engine.start_exam(req.student_id, req.subject_id)
        except AlreadyAttempted as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return SessionOut.from_session(session, svc.engine.remaining_seconds(session.id))

    @app.get("/sessions/{session_id}", response_model=SessionOut)
    def get_session(session_id: str) -> SessionOut:
        session = svc.engine.get_session(session_id)
        return SessionOut.from_session(session, svc.engine.remaining_seconds(session_id))

    @app.post("/sessions/{session_id}/answers", response_model=CommandResponse)
    def select_answer(session_id: str, req: AnswerRequest) -> CommandResponse:
        try:
            result = svc.engine.select_answer(session_id, req.question_id, req.option)
        except SessionNotFound:
            raise
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return _command_response(result, svc)

    @app.post("/sessions/{session_id}/signals", response_model=SignalResponse)
    def report_signal(session_id: str, req: SignalRequest) -> SignalResponse:
        """Feed one anti-cheat signal from the exam page to the detector."""
        verdict = svc.detector.handle(
            session_id,
            ClientSignal(type=req.type, hidden=req.hidden, key=req.key, ctrl=req.ctrl, meta=req.meta),
        )
        return SignalResponse(
            prevent_default=verdict.prevent_default,
            violation=verdict.violation.value if verdict.violation else None,
            count=verdict.count,
            limit=verdict.limit,
            warn=verdict.warn,
            auto_submitted=verdict.auto_submitted,
            finalized=verdict.finalized,
        )

    @app.post("/sessions/{session_id}/submit", response_model=CommandResponse)
    def submit(session_id: str) -> CommandResponse:
        return _command_response(svc.engine.submit(session_id), svc)

    # ── Admin ────────────────────────────────────────────────────

    @app.get("/admin/monitor", response_model=MonitorResponse)
    def monitor() -> MonitorResponse:
        """Ongoing sessions; clients poll this every ``poll_seconds``."""
        rows = svc.monitor.ongoing_sessions()
        return MonitorResponse(
            total=len(rows),
            poll_seconds=config.monitor_poll_seconds,
            sessions=[r.to_dict() for r in rows],
        )

    @app.post("/admin/sessions/{session_id}/force", response_model=CommandResponse)
    def force_finish(session_id: str, req: ForceFinishRequest) -> CommandResponse:
        try:
            result = svc.monitor.force_finish(session_id, req.status)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return _command_response(result, svc)

    @app.get("/admin/subjects/{subject_id}/results", response_model=ResultsResponse)
    def subject_results(subject_id: str) -> ResultsResponse:
        rows = svc.monitor.subject_results(subject_id)
        return ResultsResponse(
            subject_id=subject_id,
            total=len(rows),
            results=[r.to_dict() for r in rows],
        )

    @app.get("/admin/subjects/{subject_id}/results.csv")
    def subject_results_csv(subject_id: str) -> Response:
        subject = svc.catalog.get_subject(subject_id)
        name = subject.name.replace(" ", "_") if subject else subject_id
        return Response(
            content=svc.monitor.export_results_csv(subject_id),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="CBT_Result_{name}.csv"'},
        )

    # ── Admin catalog ────────────────────────────────────────────

    @app.get("/admin/subjects")
    def list_subjects() -> List[Dict[str, Any]]:
        return [s.to_dict() for s in svc.catalog.list_subjects()]

    @app.put("/admin/subjects")
    def save_subject(req: SubjectIn) -> Dict[str, Any]:
        subject = Subject(id=req.id or new_id(), name=req.name, question_count=req.question_count)
        try:
            return svc.catalog.save_subject(subject).to_dict()
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.delete("/admin/subjects/{subject_id}")
    def delete_subject(subject_id: str) -> Dict[str, Any]:
        """Delete a subject with its questions; refused while sessions reference it."""
        if svc.catalog.get_subject(subject_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown subject {subject_id}")
        try:
            removed = svc.catalog.delete_subject(subject_id, svc.store)
        except SubjectInUse as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"deleted": subject_id, "questions_removed": removed}

    @app.get("/admin/subjects/{subject_id}/questions")
    def list_questions(subject_id: str) -> List[Dict[str, Any]]:
        return [q.to_dict() for q in svc.catalog.get_questions_for_subject(subject_id)]

    @app.put("/admin/questions")
    def save_question(req: QuestionIn) -> Dict[str, Any]:
        question = Question(
            id=req.id or new_id(),
            subject_id=req.subject_id,
            text=req.text,
            options={
                letter.upper(): QuestionOption(text=o.text, image=o.image, audio=o.audio)
                for letter, o in req.options.items()
            },
            correct_answer=req.correct_answer,
            image=req.image,
            audio=req.audio,
        )
        try:
            return svc.catalog.save_question(question).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown subject {req.subject_id}")
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.delete("/admin/questions/{question_id}")
    def delete_question(question_id: str) -> Dict[str, Any]:
        if not svc.catalog.delete_question(question_id):
            raise HTTPException(status_code=404, detail=f"Unknown question {question_id}")
        return {"deleted": question_id}

    @app.put("/admin/schedules")
    def save_schedule(req: ScheduleIn) -> Dict[str, Any]:
        """Set the access window of a subject, replacing the previous one."""
        if svc.catalog.get_subject(req.subject_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown subject {req.subject_id}")
        existing = svc.catalog.get_schedule(req.subject_id)
        schedule = Schedule(
            id=existing.id if existing else new_id(),
            subject_id=req.subject_id,
            start_time=req.start_time,
            end_time=req.end_time,
            is_active=req.is_active,
        )
        try:
            return svc.catalog.save_schedule(schedule).to_dict()
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.get("/admin/students", response_model=List[StudentOut])
    def list_students() -> List[StudentOut]:
        return [_student_out(s) for s in svc.catalog.list_students()]

    @app.put("/admin/students", response_model=StudentOut)
    def save_student(req: StudentIn) -> StudentOut:
        """Register a student ahead of login, or update one; numbers stay unique."""
        student = Student(
            id=req.id or new_id(),
            participant_number=req.participant_number.strip(),
            name=req.name.strip(),
            class_name=req.class_name.strip(),
            password=req.password,
        )
        try:
            return _student_out(svc.catalog.add_student(student))
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

    @app.delete("/admin/students/{student_id}")
    def delete_student(student_id: str) -> Dict[str, Any]:
        if not svc.catalog.delete_student(student_id):
            raise HTTPException(status_code=404, detail=f"Unknown student {student_id}")
        return {"deleted": student_id}

    @app.get("/admin/events")
    def get_events(limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        """Return recorded events with pagination."""
        events = list(_event_log)
        return {"total": len(events), "events": events[offset : offset + limit]}

    @app.get("/health", response_model=HealthStatus)
    def health() -> HealthStatus:
        """Health check endpoint."""
        return HealthStatus(
            version=__version__,
            ongoing_sessions=len(svc.store.get_all_ongoing()),
            sink_enabled=svc.sink.enabled,
            sink_failures=len(svc.sink.failures),
            uptime_seconds=round(time.time() - _start_time, 1),
        )

    @app.websocket("/ws/events")
    async def websocket_events(ws: WebSocket) -> None:
        """Real-time WebSocket stream of engine events."""
        await _ws_manager.connect(ws)
        try:
            while True:
                # Keep connection alive; client can also send control msgs
                await ws.receive_text()
        except WebSocketDisconnect:
            _ws_manager.disconnect(ws)

    return app
