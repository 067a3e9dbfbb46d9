"""Configuration constants for the EduPocket web frontend."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")
SQLITE_FILE_NAME = os.environ.get("EDUPOCKET_SQLITE", "edupocket.db")
QR_SCHEME = os.environ.get("EDUPOCKET_QR_SCHEME", "edupocket")
DEFAULT_ROTATION_MINUTES = _int_env("EDUPOCKET_ROTATION_MINUTES", 30)
GUARDIAN_ID = os.environ.get("GUARDIAN_ID", "guardian")
GUARDIAN_DEVICE = os.environ.get("GUARDIAN_DEVICE", "web")
_LOG_PATH = os.environ.get("EDUPOCKET_LOG_PATH", "")
LOG_PATH: Optional[Path] = Path(_LOG_PATH) if _LOG_PATH else None

MIN_ROTATION_MINUTES = 5
MAX_ROTATION_MINUTES = 240
QR_GRID_SIZE = 25
QR_CANVAS_PX = 260
LINKING_SESSION_KEY = "linking_session"
MAX_AUDIT_LIMIT = 500


def clamp_rotation_minutes(value: Optional[int]) -> int:
    """Clamp a user supplied interval into the supported window."""

    if value is None:
        return DEFAULT_ROTATION_MINUTES
    return max(MIN_ROTATION_MINUTES, min(MAX_ROTATION_MINUTES, value))


__all__ = [
    "SESSION_SECRET",
    "SQLITE_FILE_NAME",
    "QR_SCHEME",
    "DEFAULT_ROTATION_MINUTES",
    "GUARDIAN_ID",
    "GUARDIAN_DEVICE",
    "LOG_PATH",
    "MIN_ROTATION_MINUTES",
    "MAX_ROTATION_MINUTES",
    "QR_GRID_SIZE",
    "QR_CANVAS_PX",
    "LINKING_SESSION_KEY",
    "MAX_AUDIT_LIMIT",
    "clamp_rotation_minutes",
]
