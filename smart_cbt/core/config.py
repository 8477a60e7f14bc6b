"""
Centralized configuration for the Smart CBT engine.

All tunable values live here. Every value can be overridden via an
environment variable with the ``CBT_`` prefix.

Example:
    ``CBT_EXAM_DURATION_MINUTES=120 python -m smart_cbt.main``
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env(key: str, default: str) -> str:
    """Read ``CBT_<key>`` from environment, falling back to *default*."""
    return os.environ.get(f"CBT_{key}", default)


def _env_int(key: str, default: int) -> int:
    return int(_env(key, str(default)))


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def _env_bool(key: str, default: bool) -> bool:
    return _env(key, str(default)).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class CBTConfig:
    """Immutable, centralized configuration for the entire system."""

    # ── Exam ──────────────────────────────────────────────────────
    exam_duration_minutes: int = _env_int("EXAM_DURATION_MINUTES", 90)
    violation_limit: int = _env_int("VIOLATION_LIMIT", 5)
    timer_tick_seconds: float = _env_float("TIMER_TICK_SECONDS", 1.0)

    # ── Reporting sink ────────────────────────────────────────────
    sink_url: str = _env("SINK_URL", "")
    sink_timeout_seconds: float = _env_float("SINK_TIMEOUT_SECONDS", 10.0)

    # ── Storage ───────────────────────────────────────────────────
    persist: bool = _env_bool("PERSIST", False)
    base_folder: str = _env("BASE_FOLDER", "cbt_data")
    sessions_file: str = ""
    catalog_file: str = ""

    # ── Admin monitor ─────────────────────────────────────────────
    monitor_poll_seconds: int = _env_int("MONITOR_POLL_SECONDS", 5)

    # ── API ───────────────────────────────────────────────────────
    api_host: str = _env("API_HOST", "0.0.0.0")
    api_port: int = _env_int("API_PORT", 8000)

    def __post_init__(self) -> None:
        # Derive file paths from base_folder
        if not self.sessions_file:
            object.__setattr__(
                self, "sessions_file", os.path.join(self.base_folder, "sessions.json"),
            )
        if not self.catalog_file:
            object.__setattr__(
                self, "catalog_file", os.path.join(self.base_folder, "catalog.json"),
            )
        if self.violation_limit < 1:
            raise ValueError("violation_limit must be at least 1")
        if self.exam_duration_minutes < 1:
            raise ValueError("exam_duration_minutes must be at least 1")

    @property
    def exam_duration_seconds(self) -> int:
        return self.exam_duration_minutes * 60
