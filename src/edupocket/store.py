"""Persistence collaborator for linked children and their credentials."""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .models import AuditEvent, Child, QRCredential


class ChildStore(Protocol):
    """Where completed links and credential changes are handed off.

    Implementations raise on failure; callers do not treat an action as done
    until the write returns. ``remove_child`` and ``delete_credential`` undo a
    write whose audit entry could not be stored.
    """

    def save_child(self, guardian_id: str, child: Child) -> None: ...

    def remove_child(self, guardian_id: str, child_id: str) -> None: ...

    def list_children(self, guardian_id: str) -> Sequence[Child]: ...

    def save_credential(self, credential: QRCredential) -> None: ...

    def delete_credential(self, child_id: str) -> None: ...

    def load_credential(self, child_id: str) -> Optional[QRCredential]: ...

    def append_audit(self, event: AuditEvent) -> None: ...

    def audit_events(self, *, limit: int = 100) -> Sequence[AuditEvent]: ...


class InMemoryChildStore:
    """Dictionary backed :class:`ChildStore` used by tests and embedded callers."""

    def __init__(self) -> None:
        self._children: Dict[str, List[Child]] = {}
        self._credentials: Dict[str, QRCredential] = {}
        self._audit: List[AuditEvent] = []

    def save_child(self, guardian_id: str, child: Child) -> None:
        children = self._children.setdefault(guardian_id, [])
        if any(existing.id == child.id for existing in children):
            raise ValueError(f"Child '{child.id}' is already stored.")
        children.append(child)

    def remove_child(self, guardian_id: str, child_id: str) -> None:
        children = self._children.get(guardian_id, [])
        self._children[guardian_id] = [child for child in children if child.id != child_id]

    def list_children(self, guardian_id: str) -> Tuple[Child, ...]:
        return tuple(self._children.get(guardian_id, ()))

    def save_credential(self, credential: QRCredential) -> None:
        self._credentials[credential.child_id] = credential

    def delete_credential(self, child_id: str) -> None:
        self._credentials.pop(child_id, None)

    def load_credential(self, child_id: str) -> Optional[QRCredential]:
        return self._credentials.get(child_id)

    def append_audit(self, event: AuditEvent) -> None:
        self._audit.append(event)

    def audit_events(self, *, limit: int = 100) -> Tuple[AuditEvent, ...]:
        """Newest first."""

        return tuple(reversed(self._audit[-limit:])) if limit > 0 else ()


__all__ = ["ChildStore", "InMemoryChildStore"]
