"""EduPocket web application package."""
from __future__ import annotations

from .application import app, configure_service, get_service
from .persistence import (
    AuditRecord,
    ChildRecord,
    CredentialRecord,
    SqlModelChildStore,
    create_db_and_tables,
    engine,
)

__all__ = [
    "AuditRecord",
    "ChildRecord",
    "CredentialRecord",
    "SqlModelChildStore",
    "app",
    "configure_service",
    "create_db_and_tables",
    "engine",
    "get_service",
]
