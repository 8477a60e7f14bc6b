"""
Signal-based violation detector.

Converts raw client signals (visibility changes, window blur and focus, key
presses, context-menu gestures) into typed violations and feeds them to
the exam engine, which is the single ingestion point for counting and
threshold escalation.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

from smart_cbt.core.utils import get_logger
from smart_cbt.engine.session_machine import ExamEngine, Outcome

log = get_logger("engine.violation")


class SignalType(str, Enum):
    VISIBILITY = "visibility"
    BLUR = "blur"
    FOCUS = "focus"
    KEYDOWN = "keydown"
    CONTEXT_MENU = "contextmenu"


class ViolationKind(str, Enum):
    FOCUS_LOSS = "focus_loss"
    PRINT_SCREEN = "print_screen"
    DEV_TOOLS = "dev_tools"
    VIEW_SOURCE = "view_source"
    COPY = "copy"
    PASTE = "paste"


# Keys that are violations on their own
_KEY_TO_KIND: Dict[str, ViolationKind] = {
    "printscreen": ViolationKind.PRINT_SCREEN,
    "f12":         ViolationKind.DEV_TOOLS,
}

# Keys that are violations with Ctrl (or Cmd on macOS) held
_CTRL_KEY_TO_KIND: Dict[str, ViolationKind] = {
    "u": ViolationKind.VIEW_SOURCE,
    "c": ViolationKind.COPY,
    "v": ViolationKind.PASTE,
}


@dataclass(frozen=True)
class ClientSignal:
    """A raw event reported by the exam page."""

    type: SignalType
    hidden: bool = False
    key: Optional[str] = None
    ctrl: bool = False
    meta: bool = False


@dataclass
class DetectorVerdict:
    """
    What the host surface must do with a signal.

    ``prevent_default`` — suppress the gesture (no browser handling).
    ``violation`` — the kind counted, if any.
    ``warn`` — counted but below the limit; show the warning dialog.
    ``auto_submitted`` — this signal pushed the session to its limit.
    """

    prevent_default: bool = False
    violation: Optional[ViolationKind] = None
    count: Optional[int] = None
    limit: Optional[int] = None
    warn: bool = False
    auto_submitted: bool = False
    finalized: bool = False


def classify(signal: ClientSignal) -> Optional[ViolationKind]:
    """Map a signal to a violation kind, or ``None`` if it is harmless."""
    if signal.type is SignalType.VISIBILITY:
        return ViolationKind.FOCUS_LOSS if signal.hidden else None
    if signal.type is SignalType.BLUR:
        return ViolationKind.FOCUS_LOSS
    if signal.type is SignalType.KEYDOWN and signal.key:
        key = signal.key.lower()
        if key in _KEY_TO_KIND:
            return _KEY_TO_KIND[key]
        if (signal.ctrl or signal.meta) and key in _CTRL_KEY_TO_KIND:
            return _CTRL_KEY_TO_KIND[key]
    return None


class ViolationDetector:
    """
    Turns client signals into counted violations.

    Usage::

        detector = ViolationDetector(engine)
        verdict = detector.handle(session_id, ClientSignal(SignalType.BLUR))
    """

    def __init__(self, engine: ExamEngine) -> None:
        self.engine = engine
        self._lock = threading.Lock()
        self._away: Set[str] = set()  # sessions whose focus loss is already counted

    def _returned(self, signal: ClientSignal) -> bool:
        if signal.type is SignalType.FOCUS:
            return True
        return signal.type is SignalType.VISIBILITY and not signal.hidden

    def handle(self, session_id: str, signal: ClientSignal) -> DetectorVerdict:
        """
        Process one signal for *session_id*.

        Context-menu gestures are suppressed but never counted. A focus
        loss counts once until the page reports focus or visibility
        again, since one tab switch fires both blur and hidden. Every
        other qualifying signal adds exactly one violation.
        """
        if signal.type is SignalType.CONTEXT_MENU:
            return DetectorVerdict(prevent_default=True)

        if self._returned(signal):
            with self._lock:
                self._away.discard(session_id)
            return DetectorVerdict()

        kind = classify(signal)
        if kind is None:
            return DetectorVerdict()

        if kind is ViolationKind.FOCUS_LOSS:
            with self._lock:
                if session_id in self._away:
                    return DetectorVerdict()
                self._away.add(session_id)

        # focus loss cannot be prevented, only counted
        prevent = signal.type is SignalType.KEYDOWN
        try:
            outcome = self.engine.record_violation(session_id, kind)
        except Exception:
            with self._lock:
                self._away.discard(session_id)
            raise

        if outcome.outcome is Outcome.ALREADY_FINALIZED:
            with self._lock:
                self._away.discard(session_id)
            return DetectorVerdict(
                prevent_default=prevent,
                count=outcome.count,
                limit=outcome.limit,
                finalized=True,
            )

        if outcome.auto_submitted:
            with self._lock:
                self._away.discard(session_id)
            log.error(
                "VIOLATION LIMIT: session %s auto-submitted after %d violations",
                session_id, outcome.count,
            )

        return DetectorVerdict(
            prevent_default=prevent,
            violation=kind,
            count=outcome.count,
            limit=outcome.limit,
            warn=outcome.warn,
            auto_submitted=outcome.auto_submitted,
            finalized=outcome.auto_submitted,
        )
