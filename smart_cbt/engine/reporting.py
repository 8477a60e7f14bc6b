"""
Reporting sink adapter.

Packages a result payload for every finished session and posts it to
the configured webhook on a daemon thread. Delivery is best-effort:
failures are logged and recorded, never retried and never raised to
the caller.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, Optional

import requests

from smart_cbt.core.catalog import Catalog
from smart_cbt.core.config import CBTConfig
from smart_cbt.core.errors import SinkDeliveryFailed
from smart_cbt.core.models import ExamSession
from smart_cbt.core.utils import get_logger, iso_now
from smart_cbt.engine.scoring import score

log = get_logger("engine.reporting")


class ReportingSink:
    """
    Sends one result payload per terminal transition.

    Usage::

        sink = ReportingSink(config, catalog)
        thread = sink.report(session)   # None when skipped
    """

    def __init__(self, config: CBTConfig, catalog: Catalog, max_failures: int = 100) -> None:
        self.cfg = config
        self.catalog = catalog
        self.failures: Deque[SinkDeliveryFailed] = deque(maxlen=max_failures)
        self.delivered = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.sink_url)

    # ── Payload ──────────────────────────────────────────────────

    def build_payload(self, session: ExamSession) -> Dict[str, Any]:
        """Result record for *session*, scored against its subject's questions."""
        student = self.catalog.get_student(session.student_id)
        subject = self.catalog.get_subject(session.subject_id)
        result = score(session, self.catalog.get_questions_for_subject(session.subject_id))

        return {
            "timestamp": iso_now(),
            "participantNumber": student.participant_number if student else None,
            "name": student.name if student else None,
            "className": student.class_name if student else None,
            "subject": subject.name if subject else None,
            "score": result.percentage,
            "correct": result.correct,
            "wrong": result.wrong,
            "violations": session.violations,
            "status": session.status.value,
        }

    # ── Delivery ─────────────────────────────────────────────────

    def report(self, session: ExamSession) -> Optional[threading.Thread]:
        """
        Fire-and-forget delivery of *session*'s result.

        Returns the delivery thread, or ``None`` if the session is not
        terminal or no sink is configured.
        """
        if not session.is_terminal:
            log.warning("Not reporting non-terminal session %s", session.id)
            return None
        if not self.enabled:
            log.info("No sink configured; skipping report for session %s", session.id)
            return None

        payload = self.build_payload(session)
        thread = threading.Thread(
            target=self._deliver,
            args=(session.id, payload),
            daemon=True,
            name=f"sink-{session.id}",
        )
        thread.start()
        return thread

    def _deliver(self, session_id: str, payload: Dict[str, Any]) -> None:
        try:
            self._post(payload)
        except SinkDeliveryFailed as exc:
            with self._lock:
                self.failures.append(exc)
            log.error("Report for session %s not delivered: %s", session_id, exc.reason)
            return
        with self._lock:
            self.delivered += 1
        log.info("Report for session %s delivered", session_id)

    def _post(self, payload: Dict[str, Any]) -> None:
        url = self.cfg.sink_url
        try:
            resp = requests.post(url, json=payload, timeout=self.cfg.sink_timeout_seconds)
        except requests.exceptions.Timeout:
            raise SinkDeliveryFailed(url, "timed out")
        except requests.exceptions.RequestException as exc:
            raise SinkDeliveryFailed(url, str(exc))
        if resp.status_code >= 400:
            raise SinkDeliveryFailed(url, f"HTTP {resp.status_code}")
