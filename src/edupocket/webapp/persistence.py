"""Persistence and SQLModel definitions for the EduPocket web frontend."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, desc, select

from ..exceptions import StoreError
from ..models import AuditEvent, Child, ChildStatus, Currency, LinkMethod, QRCredential, QRMode
from .config import SQLITE_FILE_NAME

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
engine = create_engine(
    f"sqlite:///{SQLITE_FILE_NAME}",
    echo=False,
    connect_args={"check_same_thread": False},
)


class ChildRecord(SQLModel, table=True):
    id: str = Field(primary_key=True)
    guardian_id: str = Field(index=True)
    name: str
    school: str = ""
    class_name: str = ""
    stream: Optional[str] = None
    method: str
    date_of_birth: Optional[date] = None
    currency: str = Currency.UGX.value
    photo_provided: bool = False
    photo_requested: bool = False
    status: str = ChildStatus.ACTIVE.value
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CredentialRecord(SQLModel, table=True):
    child_id: str = Field(primary_key=True)
    mode: str
    enabled: bool = True
    rotation_interval_minutes: Optional[int] = None
    current_token: Optional[str] = None
    version: int = 1
    issued_at: datetime = Field(default_factory=datetime.utcnow)


class AuditRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    actor: str
    device: str
    action: str = Field(index=True)
    target: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    details_json: str = "{}"


def create_db_and_tables(target: Engine | None = None) -> None:
    SQLModel.metadata.create_all(target or engine)


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------
def child_to_record(guardian_id: str, child: Child) -> ChildRecord:
    return ChildRecord(
        id=child.id,
        guardian_id=guardian_id,
        name=child.name,
        school=child.school,
        class_name=child.class_name,
        stream=child.stream,
        method=child.method.value,
        date_of_birth=child.date_of_birth,
        currency=child.currency.value,
        photo_provided=child.photo_provided,
        photo_requested=child.photo_requested,
        status=child.status.value,
        created_at=child.created_at,
    )


def record_to_child(record: ChildRecord) -> Child:
    return Child(
        id=record.id,
        name=record.name,
        school=record.school,
        class_name=record.class_name,
        stream=record.stream,
        method=LinkMethod(record.method),
        date_of_birth=record.date_of_birth,
        currency=Currency(record.currency),
        photo_provided=record.photo_provided,
        photo_requested=record.photo_requested,
        status=ChildStatus(record.status),
        created_at=record.created_at,
    )


def credential_to_record(credential: QRCredential) -> CredentialRecord:
    return CredentialRecord(
        child_id=credential.child_id,
        mode=credential.mode.value,
        enabled=credential.enabled,
        rotation_interval_minutes=credential.rotation_interval_minutes,
        current_token=credential.current_token,
        version=credential.version,
        issued_at=credential.issued_at,
    )


def record_to_credential(record: CredentialRecord) -> QRCredential:
    return QRCredential(
        child_id=record.child_id,
        mode=QRMode(record.mode),
        enabled=record.enabled,
        rotation_interval_minutes=record.rotation_interval_minutes,
        current_token=record.current_token,
        version=record.version,
        issued_at=record.issued_at,
    )


def record_to_audit(record: AuditRecord) -> AuditEvent:
    return AuditEvent(
        actor=record.actor,
        device=record.device,
        action=record.action,
        target=record.target,
        timestamp=record.timestamp,
        details=json.loads(record.details_json or "{}"),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"Could not {action}.") from exc


class SqlModelChildStore:
    """:class:`~edupocket.store.ChildStore` backed by SQLModel tables.

    Database failures surface as :class:`~edupocket.exceptions.StoreError`.
    """

    def __init__(self, target: Engine | None = None) -> None:
        self.engine = target or engine

    def save_child(self, guardian_id: str, child: Child) -> None:
        with _store_errors("save child"), Session(self.engine) as session:
            if session.get(ChildRecord, child.id) is not None:
                raise ValueError(f"Child '{child.id}' is already stored.")
            session.add(child_to_record(guardian_id, child))
            session.commit()

    def remove_child(self, guardian_id: str, child_id: str) -> None:
        with _store_errors("remove child"), Session(self.engine) as session:
            record = session.get(ChildRecord, child_id)
            if record is not None and record.guardian_id == guardian_id:
                session.delete(record)
                session.commit()

    def list_children(self, guardian_id: str) -> Tuple[Child, ...]:
        with _store_errors("list children"), Session(self.engine) as session:
            records = session.exec(
                select(ChildRecord)
                .where(ChildRecord.guardian_id == guardian_id)
                .order_by(ChildRecord.created_at, ChildRecord.id)
            ).all()
            return tuple(record_to_child(record) for record in records)

    def save_credential(self, credential: QRCredential) -> None:
        with _store_errors("save credential"), Session(self.engine) as session:
            session.merge(credential_to_record(credential))
            session.commit()

    def delete_credential(self, child_id: str) -> None:
        with _store_errors("delete credential"), Session(self.engine) as session:
            record = session.get(CredentialRecord, child_id)
            if record is not None:
                session.delete(record)
                session.commit()

    def load_credential(self, child_id: str) -> Optional[QRCredential]:
        with _store_errors("load credential"), Session(self.engine) as session:
            record = session.get(CredentialRecord, child_id)
            return record_to_credential(record) if record is not None else None

    def append_audit(self, event: AuditEvent) -> None:
        with _store_errors("append audit event"), Session(self.engine) as session:
            session.add(
                AuditRecord(
                    actor=event.actor,
                    device=event.device,
                    action=event.action,
                    target=event.target,
                    timestamp=event.timestamp,
                    details_json=json.dumps(event.details, sort_keys=True, default=str),
                )
            )
            session.commit()

    def audit_events(self, *, limit: int = 100) -> List[AuditEvent]:
        """Newest first."""

        if limit <= 0:
            return []
        with _store_errors("read audit events"), Session(self.engine) as session:
            records = session.exec(
                select(AuditRecord).order_by(desc(AuditRecord.id)).limit(limit)
            ).all()
            return [record_to_audit(record) for record in records]


__all__ = [
    "AuditRecord",
    "ChildRecord",
    "CredentialRecord",
    "SqlModelChildStore",
    "create_db_and_tables",
    "engine",
    "record_to_child",
    "record_to_credential",
]
