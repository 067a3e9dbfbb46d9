"""Audit trail for guardian linking and credential actions."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from .models import AuditEvent

AuditListener = Callable[[AuditEvent], None]


class AuditLog:
    """Collect audit events and forward each one to registered sinks."""

    def __init__(self) -> None:
        self._entries: list[AuditEvent] = []
        self._listeners: List[AuditListener] = []

    def subscribe(self, listener: AuditListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: AuditListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def record(
        self,
        actor: str,
        device: str,
        action: str,
        target: str,
        *,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            device=device,
            action=action,
            target=target,
            timestamp=timestamp or datetime.utcnow(),
            details=dict(details or {}),
        )
        # Sinks first: an event a sink rejected is never kept.
        for listener in list(self._listeners):
            listener(event)
        self._entries.append(event)
        return event

    def entries(self, *, action: str | None = None, target: str | None = None) -> tuple[AuditEvent, ...]:
        records = self._entries
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        return tuple(records)

    def latest(self) -> AuditEvent | None:
        return self._entries[-1] if self._entries else None


__all__ = ["AuditLog"]
