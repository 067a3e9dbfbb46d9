import pytest

from edupocket.conflicts import ConflictChoice, is_resolved, resolve_conflict
from edupocket.models import Child, LinkMethod

AMINA = Child(id="c_1", name="Amina N.", school="Greenhill Academy", class_name="P6", method=LinkMethod.LINK)
DANIEL = Child(id="c_2", name="Daniel K.", school="Greenhill Academy", class_name="S2", method=LinkMethod.LINK)


def test_missing_choice_is_unresolved() -> None:
    assert not is_resolved(None, None, ["c_1"])
    with pytest.raises(ValueError):
        resolve_conflict(None, None, [AMINA])


def test_create_new_requests_roster_correction() -> None:
    assert is_resolved(ConflictChoice.CREATE_NEW, None)

    resolution = resolve_conflict(ConflictChoice.CREATE_NEW, None, [AMINA])

    assert resolution.creates_child
    assert resolution.requests_roster_correction
    assert resolution.existing_child is None


def test_link_to_existing_needs_a_known_child() -> None:
    known = ["c_1", "c_2"]
    assert not is_resolved(ConflictChoice.LINK_TO_EXISTING, None, known)
    assert not is_resolved(ConflictChoice.LINK_TO_EXISTING, "c_9", known)
    assert not is_resolved(ConflictChoice.LINK_TO_EXISTING, "c_1", [])
    assert is_resolved(ConflictChoice.LINK_TO_EXISTING, "c_2", known)

    resolution = resolve_conflict(ConflictChoice.LINK_TO_EXISTING, "c_2", [AMINA, DANIEL])
    assert resolution.existing_child is DANIEL
    assert not resolution.creates_child
    assert not resolution.requests_roster_correction

    with pytest.raises(ValueError):
        resolve_conflict(ConflictChoice.LINK_TO_EXISTING, "c_9", [AMINA, DANIEL])
