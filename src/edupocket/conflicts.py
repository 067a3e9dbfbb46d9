"""Resolution of school roster conflicts raised by a linking code."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .models import Child


class ConflictChoice(str, Enum):
    """Guardian-selected resolution for a ``conflict`` code."""

    LINK_TO_EXISTING = "LinkToExisting"
    CREATE_NEW = "CreateNew"


@dataclass(frozen=True, slots=True)
class ConflictResolution:
    """Downstream effect of a conflict choice."""

    choice: ConflictChoice
    existing_child: Optional[Child] = None

    @property
    def creates_child(self) -> bool:
        return self.choice is ConflictChoice.CREATE_NEW

    @property
    def requests_roster_correction(self) -> bool:
        # The correction request itself is sent by the school integration.
        return self.choice is ConflictChoice.CREATE_NEW


def is_resolved(
    choice: Optional[ConflictChoice],
    existing_child_id: Optional[str],
    existing_ids: Iterable[str] = (),
) -> bool:
    """Return ``True`` when a conflict has a complete resolution.

    ``LinkToExisting`` additionally needs the id of one of the guardian's
    linked children.
    """

    if choice is None:
        return False
    if choice is ConflictChoice.CREATE_NEW:
        return True
    return bool(existing_child_id) and existing_child_id in tuple(existing_ids)


def resolve_conflict(
    choice: Optional[ConflictChoice],
    existing_child_id: Optional[str],
    existing_children: Iterable[Child],
) -> ConflictResolution:
    """Turn a conflict choice into its :class:`ConflictResolution`."""

    if choice is None:
        raise ValueError("A conflict resolution must be chosen.")
    if choice is ConflictChoice.CREATE_NEW:
        return ConflictResolution(choice=choice)
    for child in existing_children:
        if child.id == existing_child_id:
            return ConflictResolution(choice=choice, existing_child=child)
    raise ValueError(f"Child '{existing_child_id}' is not linked to this guardian.")


__all__ = ["ConflictChoice", "ConflictResolution", "is_resolved", "resolve_conflict"]
