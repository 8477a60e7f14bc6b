"""
Shared utilities for the Smart CBT engine.

- Structured logging (replaces all ``print()`` calls)
- Folder setup and atomic JSON writes
- Clock and identifier helpers
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any

# ─── Structured Logger ────────────────────────────────────────────

_LOG_FORMAT = (
    "%(asctime)s │ %(levelname)-7s │ %(name)-18s │ %(message)s"
)
_DATE_FORMAT = "%H:%M:%S"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a structured logger with consistent formatting."""
    logger = logging.getLogger(f"cbt.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


log = get_logger("utils")


# ─── Folder Setup / Files ─────────────────────────────────────────

def setup_folders(base_folder: str) -> None:
    """Create the data directory used by the JSON stores."""
    os.makedirs(base_folder, exist_ok=True)
    log.info("Data folder ready: %s/", base_folder)


def write_json_atomic(path: str, data: Any) -> None:
    """
    Write *data* as JSON to *path* through a temp file and ``os.replace``.

    On failure the temp file is removed, the previous file is left
    untouched, and the error propagates.
    """
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


# ─── Clock / IDs ──────────────────────────────────────────────────

def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string (``...Z``)."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    """Short random identifier for sessions, subjects and questions."""
    return uuid.uuid4().hex[:9]
