"""Classification of raw linking codes typed or scanned by a guardian."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

MIN_CODE_LENGTH = 6

# Codes offered by the simulated scanner picker.
DEMO_CODES: Tuple[str, ...] = ("REQ-1042", "SCH-88A21", "DUPLICATE", "INVALID", "CONFLICT")


class CodeStatus(str, Enum):
    """Validation state of a linking code; rendered, never raised."""

    IDLE = "idle"
    VALID = "valid"
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


_SENTINELS = {
    "INVALID": CodeStatus.INVALID,
    "DUPLICATE": CodeStatus.DUPLICATE,
    "CONFLICT": CodeStatus.CONFLICT,
}


def classify(code: str) -> CodeStatus:
    """Return the :class:`CodeStatus` for ``code``.

    Total over all strings: blank input is ``idle``, the three sentinel words
    match case-insensitively, and anything else is valid once its trimmed
    length reaches :data:`MIN_CODE_LENGTH`.
    """

    trimmed = code.strip()
    if not trimmed:
        return CodeStatus.IDLE
    sentinel = _SENTINELS.get(trimmed.upper())
    if sentinel is not None:
        return sentinel
    if len(trimmed) >= MIN_CODE_LENGTH:
        return CodeStatus.VALID
    return CodeStatus.INVALID


def status_line(status: CodeStatus, conflict_choice: Optional[str] = None) -> str:
    """Human readable validation line shown on the Review step."""

    if status is CodeStatus.VALID:
        return "Code looks valid"
    if status is CodeStatus.DUPLICATE:
        return "Duplicate: child already linked"
    if status is CodeStatus.CONFLICT:
        return f"Conflict: resolution selected ({conflict_choice or 'none'})"
    return "Invalid"


def helper_text(status: CodeStatus) -> str:
    if status is CodeStatus.IDLE:
        return "Enter a code or scan a QR."
    if status is CodeStatus.INVALID:
        return "Code not recognised. Check the code and try again."
    if status is CodeStatus.DUPLICATE:
        return "This child is already linked to your account."
    if status is CodeStatus.CONFLICT:
        return "The invite does not match a roster record. Choose how to proceed."
    return "Code looks valid."


__all__ = ["CodeStatus", "DEMO_CODES", "MIN_CODE_LENGTH", "classify", "helper_text", "status_line"]
