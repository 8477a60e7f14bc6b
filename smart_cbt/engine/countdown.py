"""
Exam countdown.

``Countdown`` is the pure part: it only decrements and reports expiry,
exactly once. ``CountdownTimer`` drives a ``Countdown`` from a daemon
thread and fires ``on_expire`` when it reaches zero. Submission itself
is not done here; the engine's expiry handler is the single place
where a timed-out session is finalized.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from smart_cbt.core.utils import get_logger

log = get_logger("engine.countdown")


class Countdown:
    """Decrementing second counter with a one-shot expiry signal."""

    def __init__(self, duration_seconds: float) -> None:
        if duration_seconds <= 0:
            raise ValueError("Countdown duration must be positive.")
        self.duration = float(duration_seconds)
        self._remaining = float(duration_seconds)
        self._expired = False

    @property
    def remaining(self) -> float:
        return max(self._remaining, 0.0)

    @property
    def expired(self) -> bool:
        return self._expired

    def tick(self, elapsed: float = 1.0) -> bool:
        """
        Consume *elapsed* seconds.

        Returns ``True`` only on the tick that reaches zero; every later
        tick returns ``False``.
        """
        if self._expired:
            return False
        self._remaining -= elapsed
        if self._remaining <= 0:
            self._remaining = 0.0
            self._expired = True
            return True
        return False

    def format(self) -> str:
        """Remaining time as HH:MM:SS."""
        total = int(self.remaining)
        return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


class CountdownTimer:
    """
    Runs a ``Countdown`` on a background thread.

    Usage::

        timer = CountdownTimer(90 * 60, on_expire=lambda: engine.expire(sid))
        timer.start()
        ...
        timer.cancel()   # on any terminal transition
    """

    def __init__(
        self,
        duration_seconds: float,
        on_expire: Callable[[], None],
        tick_seconds: float = 1.0,
        name: str = "countdown",
    ) -> None:
        self.countdown = Countdown(duration_seconds)
        self._on_expire = on_expire
        self._tick = tick_seconds
        self._name = name
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def remaining(self) -> float:
        return self.countdown.remaining

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        """Start ticking. Calling twice is a no-op."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()

    def cancel(self) -> None:
        """Stop ticking immediately; ``on_expire`` will not fire afterwards."""
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        last = time.monotonic()
        while not self._cancelled.wait(min(self._tick, self.countdown.remaining)):
            now = time.monotonic()
            fired = self.countdown.tick(now - last)
            last = now
            if fired:
                if self._cancelled.is_set():
                    return
                log.info("Countdown %s reached zero", self._name)
                try:
                    self._on_expire()
                except Exception:
                    log.exception("Expiry handler for %s failed", self._name)
                return
