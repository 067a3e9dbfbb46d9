"""EduPocket package for linking child wallets and issuing student QR credentials."""

from .admin import AuditLog
from .codes import CodeStatus, DEMO_CODES, classify
from .conflicts import ConflictChoice, ConflictResolution, resolve_conflict
from .credentials import QRCredentialManager, SecureTokenGenerator, derive_payload, parse_payload
from .exceptions import (
    ChildNotFoundError,
    CredentialNotFoundError,
    EduPocketError,
    GuardNotSatisfiedError,
    InvalidConfigurationError,
    NotRotatableError,
    SessionNotFoundError,
    StaleCredentialError,
    StoreError,
    WizardClosedError,
)
from .linking import LinkingSession, LinkingWizard, WizardStep, can_advance, review_summary, transition
from .models import (
    AuditEvent,
    Child,
    ChildStatus,
    Currency,
    LinkMethod,
    LinkOutcome,
    LinkOutcomeKind,
    QRCredential,
    QRMode,
    VerificationPreview,
)
from .ops import StructuredLogger
from .rendering import PseudoQR, render, to_svg
from .service import EduPocket
from .store import ChildStore, InMemoryChildStore

__all__ = [
    "AuditEvent",
    "AuditLog",
    "Child",
    "ChildNotFoundError",
    "ChildStatus",
    "ChildStore",
    "CodeStatus",
    "ConflictChoice",
    "ConflictResolution",
    "CredentialNotFoundError",
    "Currency",
    "DEMO_CODES",
    "EduPocket",
    "EduPocketError",
    "GuardNotSatisfiedError",
    "InMemoryChildStore",
    "InvalidConfigurationError",
    "LinkMethod",
    "LinkOutcome",
    "LinkOutcomeKind",
    "LinkingSession",
    "LinkingWizard",
    "NotRotatableError",
    "PseudoQR",
    "QRCredential",
    "QRCredentialManager",
    "QRMode",
    "SecureTokenGenerator",
    "SessionNotFoundError",
    "StaleCredentialError",
    "StoreError",
    "StructuredLogger",
    "VerificationPreview",
    "WizardClosedError",
    "WizardStep",
    "can_advance",
    "classify",
    "derive_payload",
    "parse_payload",
    "render",
    "resolve_conflict",
    "review_summary",
    "to_svg",
    "transition",
]
