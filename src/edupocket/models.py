"""Domain models used by the EduPocket package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class LinkMethod(str, Enum):
    """Ways a guardian can bring a child wallet into their account."""

    CREATE = "Create"
    LINK = "Link"
    APPROVE_REQUEST = "ApproveRequest"
    SCHOOL_INVITE = "SchoolInvite"

    @property
    def is_code_based(self) -> bool:
        return self is not LinkMethod.CREATE

    @property
    def label(self) -> str:
        return {
            LinkMethod.CREATE: "Create",
            LinkMethod.LINK: "Link",
            LinkMethod.APPROVE_REQUEST: "Approve request",
            LinkMethod.SCHOOL_INVITE: "School invite",
        }[self]


class Currency(str, Enum):
    UGX = "UGX"
    USD = "USD"


class ChildStatus(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    RESTRICTED = "Restricted"
    NEEDS_CONSENT = "Needs consent"


@dataclass(frozen=True, slots=True)
class Child:
    """Identity record for a child linked to a guardian account."""

    id: str
    name: str
    school: str
    class_name: str
    method: LinkMethod
    stream: Optional[str] = None
    date_of_birth: Optional[date] = None
    currency: Currency = Currency.UGX
    photo_provided: bool = False
    photo_requested: bool = False
    status: ChildStatus = ChildStatus.ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def class_line(self) -> str:
        return f"{self.class_name} • {self.stream}" if self.stream else self.class_name

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "school": self.school,
            "class_name": self.class_name,
            "stream": self.stream,
            "method": self.method.value,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "currency": self.currency.value,
            "photo_provided": self.photo_provided,
            "photo_requested": self.photo_requested,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


class LinkOutcomeKind(str, Enum):
    """What a completed linking session did to the guardian's children."""

    CREATED = "created"
    ATTACHED = "attached"
    DUPLICATE = "duplicate"


@dataclass(frozen=True, slots=True)
class LinkOutcome:
    """Terminal event emitted exactly once when a linking wizard completes.

    ``credential_issued`` is set by the service once the new child's first
    QR credential has been stored; it stays ``False`` when that step failed.
    """

    kind: LinkOutcomeKind
    method: LinkMethod
    child: Optional[Child] = None
    code: str = ""
    roster_correction_requested: bool = False
    credential_issued: bool = False
    completed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def creates_child(self) -> bool:
        return self.kind is LinkOutcomeKind.CREATED


class QRMode(str, Enum):
    STATIC = "Static"
    DYNAMIC = "Dynamic"


@dataclass(frozen=True, slots=True)
class QRCredential:
    """The single active QR credential for a child.

    ``version`` increases every time the token changes so that a stale handle
    can be told apart from the active credential.
    """

    child_id: str
    mode: QRMode
    enabled: bool = True
    rotation_interval_minutes: Optional[int] = None
    current_token: Optional[str] = None
    version: int = 1
    issued_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        if self.mode is QRMode.STATIC and self.current_token is not None:
            raise ValueError("Static credentials never carry a token.")
        if self.mode is QRMode.DYNAMIC and not self.current_token:
            raise ValueError("Dynamic credentials require a current token.")

    @property
    def is_rotatable(self) -> bool:
        return self.enabled and self.mode is QRMode.DYNAMIC


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable guardian or system action."""

    actor: str
    device: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "actor": self.actor,
            "device": self.device,
            "action": self.action,
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class VerificationPreview:
    """Snapshot of what a vendor sees after scanning a child's QR."""

    child_name: str
    school: str
    class_line: str
    status: ChildStatus
    qr_valid: bool
    photo_provided: bool
    payload: str

    @property
    def chips(self) -> Tuple[str, ...]:
        return (
            "Photo match required" if self.photo_provided else "Photo missing",
            "QR valid" if self.qr_valid else "QR disabled",
        )


__all__ = [
    "AuditEvent",
    "Child",
    "ChildStatus",
    "Currency",
    "LinkMethod",
    "LinkOutcome",
    "LinkOutcomeKind",
    "QRCredential",
    "QRMode",
    "VerificationPreview",
]
