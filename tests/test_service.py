import json
from datetime import date

import pytest

from edupocket import EduPocket
from edupocket.admin import AuditLog
from edupocket.exceptions import (
    ChildNotFoundError,
    GuardNotSatisfiedError,
    SessionNotFoundError,
    StaleCredentialError,
)
from edupocket.conflicts import ConflictChoice
from edupocket.linking import WizardStep
from edupocket.models import Child, ChildStatus, LinkMethod, LinkOutcomeKind, QRMode
from edupocket.store import InMemoryChildStore

AMINA = Child(id="c_1", name="Amina N.", school="Greenhill Academy", class_name="P6", method=LinkMethod.LINK)


class FlakyStore(InMemoryChildStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_children = False
        self.fail_credentials = False
        self.fail_audit = False

    def save_child(self, guardian_id, child) -> None:
        if self.fail_children:
            raise RuntimeError("children table unavailable")
        super().save_child(guardian_id, child)

    def save_credential(self, credential) -> None:
        if self.fail_credentials:
            raise RuntimeError("credentials table unavailable")
        super().save_credential(credential)

    def append_audit(self, event) -> None:
        if self.fail_audit:
            raise RuntimeError("audit table unavailable")
        super().append_audit(event)


@pytest.fixture()
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture()
def service(store, tokens) -> EduPocket:
    return EduPocket("guardian-1", device="test", store=store, token_generator=tokens, scheme="eduwallet")


def _create_child(service: EduPocket, name: str = "Maya R.") -> str:
    session_id = service.start_linking()
    wizard = service.wizard(session_id)
    wizard.select_method(LinkMethod.CREATE)
    service.advance(session_id)
    wizard.update_details(child_name=name, date_of_birth=date(2015, 3, 1), school="Starlight School", class_name="P4")
    service.advance(session_id)
    wizard.confirm_guardian()
    return session_id


def _link_by_code(service: EduPocket, code: str = "REQ-1042") -> str:
    session_id = service.start_linking()
    wizard = service.wizard(session_id)
    wizard.select_method(LinkMethod.LINK)
    service.advance(session_id)
    wizard.enter_code(code)
    service.advance(session_id)
    wizard.confirm_guardian()
    return session_id


def _linked_child_id(service: EduPocket) -> str:
    outcome = service.advance(_link_by_code(service))
    return outcome.child.id


def test_create_links_child_pending_consent_with_static_credential(service: EduPocket, store: FlakyStore) -> None:
    session_id = _create_child(service)

    outcome = service.advance(session_id)

    assert outcome is not None and outcome.kind is LinkOutcomeKind.CREATED
    assert outcome.credential_issued
    child = outcome.child
    assert child is not None
    assert child.status is ChildStatus.NEEDS_CONSENT
    assert child.photo_requested
    assert not child.photo_provided
    assert service.list_children() == (child,)
    assert not service.has_session(session_id)

    credential = service.credential(child.id)
    assert credential.mode is QRMode.STATIC
    assert service.payload(child.id) == f"eduwallet://student/{child.id}?static=1"

    actions = [event.action for event in service.audit_log.entries()]
    assert actions == ["child_linked", "qr_issued"]
    linked = service.audit_log.entries(action="child_linked")[0]
    assert linked.actor == "guardian-1"
    assert linked.device == "test"
    assert linked.target == child.id
    assert linked.details == {"method": "Create", "outcome": "created", "roster_correction_requested": False}
    assert [event.action for event in store.audit_events()] == list(reversed(actions))

    dynamic = service.issue_credential(child.id, QRMode.DYNAMIC)
    assert dynamic.current_token == "tok_000001"


def test_code_link_issues_dynamic_credential(service: EduPocket) -> None:
    outcome = service.advance(_link_by_code(service))

    assert outcome is not None and outcome.credential_issued
    child = outcome.child
    assert child.status is ChildStatus.ACTIVE
    assert child.name == "Student REQ-1042"
    credential = service.credential(child.id)
    assert credential.mode is QRMode.DYNAMIC
    assert credential.current_token == "tok_000001"
    assert service.payload(child.id) == f"eduwallet://student/{child.id}?token=tok_000001"


def test_advance_returns_none_until_completed(service: EduPocket) -> None:
    session_id = service.start_linking()

    assert service.advance(session_id) is None
    assert service.wizard(session_id).step is WizardStep.CHOOSE_METHOD
    with pytest.raises(GuardNotSatisfiedError):
        service.advance(session_id, strict=True)


def test_duplicate_code_stores_nothing_but_is_audited(service: EduPocket) -> None:
    session_id = service.start_linking()
    wizard = service.wizard(session_id)
    wizard.select_method(LinkMethod.APPROVE_REQUEST)
    service.advance(session_id)
    wizard.enter_code("duplicate")
    service.advance(session_id)
    wizard.confirm_guardian()

    outcome = service.advance(session_id)

    assert outcome is not None and outcome.kind is LinkOutcomeKind.DUPLICATE
    assert not outcome.credential_issued
    assert service.list_children() == ()
    event = service.audit_log.latest()
    assert event is not None
    assert event.action == "child_linked"
    assert event.target == "duplicate"
    assert event.details["outcome"] == "duplicate"
    assert service.audit_log.entries(action="qr_issued") == ()


def test_conflict_attach_to_existing_child(service: EduPocket, store: FlakyStore) -> None:
    store.save_child("guardian-1", AMINA)
    session_id = service.start_linking()
    wizard = service.wizard(session_id)
    wizard.select_method(LinkMethod.LINK)
    service.advance(session_id)
    wizard.enter_code("CONFLICT")
    wizard.choose_conflict_resolution(ConflictChoice.LINK_TO_EXISTING)
    wizard.select_existing_child("c_1")
    service.advance(session_id)
    wizard.confirm_guardian()

    outcome = service.advance(session_id)

    assert outcome is not None and outcome.kind is LinkOutcomeKind.ATTACHED
    assert outcome.child == AMINA
    assert service.list_children() == (AMINA,)
    assert service.audit_log.latest().target == "c_1"


def test_store_failure_keeps_wizard_on_review(service: EduPocket, store: FlakyStore) -> None:
    session_id = _create_child(service)
    store.fail_children = True

    with pytest.raises(RuntimeError):
        service.advance(session_id)

    assert service.has_session(session_id)
    assert service.wizard(session_id).step is WizardStep.REVIEW
    assert service.list_children() == ()
    assert service.audit_log.entries() == ()

    store.fail_children = False
    outcome = service.advance(session_id)
    assert outcome is not None and outcome.child in service.list_children()


def test_audit_failure_on_completion_undoes_the_link(service: EduPocket, store: FlakyStore) -> None:
    session_id = _create_child(service)
    store.fail_audit = True

    with pytest.raises(RuntimeError):
        service.advance(session_id)

    assert service.wizard(session_id).step is WizardStep.REVIEW
    assert service.list_children() == ()
    assert service.audit_log.entries() == ()
    assert store.audit_events() == ()

    store.fail_audit = False
    outcome = service.advance(session_id)

    assert [child.name for child in service.list_children()] == ["Maya R."]
    assert outcome.child == service.list_children()[0]
    assert len(service.audit_log.entries(action="child_linked")) == 1
    assert len([event for event in store.audit_events() if event.action == "child_linked"]) == 1


def test_audit_failure_on_rotation_keeps_store_and_manager_aligned(
    service: EduPocket, store: FlakyStore, tokens
) -> None:
    child_id = _linked_child_id(service)
    credential = service.credential(child_id)
    store.fail_audit = True

    with pytest.raises(RuntimeError):
        service.rotate_credential(credential)

    assert service.credential(child_id) is credential
    assert store.load_credential(child_id) == credential
    assert service.credentials.is_token_valid(child_id, credential.current_token)
    assert service.audit_log.entries(action="qr_rotated") == ()

    reopened = EduPocket("guardian-1", store=store, token_generator=tokens, scheme="eduwallet")
    assert reopened.credential(child_id) == credential


def test_audit_failure_on_first_issue_leaves_no_credential(service: EduPocket, store: FlakyStore) -> None:
    store.save_child("guardian-1", AMINA)
    store.fail_audit = True

    with pytest.raises(RuntimeError):
        service.issue_credential("c_1")

    assert store.load_credential("c_1") is None
    assert not service.credentials.has_credential("c_1")


def test_failed_auto_issue_still_returns_the_outcome(service: EduPocket, store: FlakyStore) -> None:
    session_id = _link_by_code(service)
    store.fail_credentials = True

    outcome = service.advance(session_id)

    assert outcome is not None and outcome.kind is LinkOutcomeKind.CREATED
    assert not outcome.credential_issued
    assert service.list_children() == (outcome.child,)
    assert not service.has_session(session_id)
    assert not service.credentials.has_credential(outcome.child.id)
    assert service.audit_log.entries(action="qr_issued") == ()
    failures = service.logger.events("credential_issue_failed")
    assert [entry["child"] for entry in failures] == [outcome.child.id]

    store.fail_credentials = False
    assert service.issue_credential(outcome.child.id).mode is QRMode.DYNAMIC


def test_credential_store_failure_keeps_previous_token(service: EduPocket, store: FlakyStore) -> None:
    child_id = _linked_child_id(service)
    credential = service.credential(child_id)
    store.fail_credentials = True

    with pytest.raises(RuntimeError):
        service.rotate_credential(credential)

    assert service.credential(child_id) is credential
    assert store.load_credential(child_id) == credential
    assert service.audit_log.entries(action="qr_rotated") == ()


def test_rotation_is_audited_and_invalidates_old_handle(service: EduPocket) -> None:
    child_id = _linked_child_id(service)
    original = service.credential(child_id)

    rotated = service.rotate_credential(original)

    assert rotated.current_token == "tok_000002"
    event = service.audit_log.latest()
    assert event.action == "qr_rotated"
    assert event.details["previous_token_invalidated"] is True
    with pytest.raises(StaleCredentialError):
        service.rotate_credential(original)


def test_disable_enable_and_reissue_are_audited(service: EduPocket) -> None:
    child_id = _linked_child_id(service)

    disabled = service.set_credential_enabled(service.credential(child_id), False)
    assert service.payload(child_id).endswith("?disabled=1")
    enabled = service.set_credential_enabled(disabled, True)
    reissued = service.reissue_credential(enabled)
    static = service.change_credential_mode(reissued, QRMode.STATIC)

    assert static.current_token is None
    actions = [event.action for event in service.audit_log.entries(target=child_id)]
    assert actions == ["child_linked", "qr_issued", "qr_disabled", "qr_enabled", "qr_reissued", "qr_mode_changed"]


def test_children_needing_consent_default_to_static(service: EduPocket, store: FlakyStore) -> None:
    pending = Child(
        id="c_7",
        name="Noah B.",
        school="Greenhill Academy",
        class_name="P1",
        method=LinkMethod.SCHOOL_INVITE,
        status=ChildStatus.NEEDS_CONSENT,
    )
    store.save_child("guardian-1", pending)

    credential = service.issue_credential("c_7")

    assert credential.mode is QRMode.STATIC
    assert service.payload("c_7") == "eduwallet://student/c_7?static=1"


def test_issue_for_unknown_child_fails(service: EduPocket) -> None:
    with pytest.raises(ChildNotFoundError):
        service.issue_credential("c_404")
    with pytest.raises(ChildNotFoundError):
        service.credential("c_404")


def test_credentials_survive_a_new_service_instance(service: EduPocket, store: FlakyStore, tokens) -> None:
    child_id = _linked_child_id(service)
    credential = service.credential(child_id)

    reopened = EduPocket("guardian-1", store=store, token_generator=tokens, scheme="eduwallet")

    assert reopened.credential(child_id) == credential
    assert reopened.rotate_credential(credential).version == credential.version + 1


def test_recent_audit_reads_from_store(service: EduPocket, store: FlakyStore, tokens) -> None:
    child_id = _linked_child_id(service)
    service.rotate_credential(service.credential(child_id))

    reopened = EduPocket("guardian-1", store=store, token_generator=tokens)

    assert [event.action for event in reopened.recent_audit(2)] == ["qr_rotated", "qr_issued"]
    assert reopened.recent_audit(0) == ()


def test_verification_preview(service: EduPocket) -> None:
    child_id = service.advance(_create_child(service, name="Maya R.")).child.id

    preview = service.verification_preview(child_id)
    assert preview.child_name == "Maya R."
    assert preview.class_line == "P4"
    assert preview.status is ChildStatus.NEEDS_CONSENT
    assert preview.chips == ("Photo missing", "QR valid")

    service.set_credential_enabled(service.credential(child_id), False)
    assert service.verification_preview(child_id).chips == ("Photo missing", "QR disabled")


def test_render_follows_payload(service: EduPocket) -> None:
    child_id = _linked_child_id(service)
    before = service.render_qr(child_id)

    service.rotate_credential(service.credential(child_id))
    after = service.render_qr(child_id)

    assert before.payload != after.payload
    assert "<svg" in service.qr_svg(child_id)


def test_cancel_linking(service: EduPocket) -> None:
    session_id = _create_child(service)

    service.cancel_linking(session_id)

    assert not service.has_session(session_id)
    assert service.list_children() == ()
    with pytest.raises(SessionNotFoundError):
        service.wizard(session_id)
    with pytest.raises(SessionNotFoundError):
        service.cancel_linking(session_id)


def test_operational_log_never_contains_tokens(service: EduPocket, tmp_path) -> None:
    log_path = tmp_path / "ops.log"
    service.logger.path = log_path
    child_id = _linked_child_id(service)
    service.rotate_credential(service.credential(child_id))

    events = [entry["event"] for entry in service.logger.tail()]
    assert "linking_completed" in events
    assert "credential_rotated" in events
    written = log_path.read_text(encoding="utf-8")
    assert "tok_" not in written
    assert "tok_" not in json.dumps(service.logger.tail(), default=str)


def test_audit_log_keeps_nothing_a_sink_rejected() -> None:
    log = AuditLog()

    def reject(event) -> None:
        raise RuntimeError("sink down")

    log.subscribe(reject)
    with pytest.raises(RuntimeError):
        log.record("guardian-1", "test", "qr_issued", "c_1")
    assert log.entries() == ()

    log.unsubscribe(reject)
    log.record("guardian-1", "test", "qr_issued", "c_1")
    assert [event.target for event in log.entries()] == ["c_1"]


def test_memory_store_audit_events_newest_first(store: FlakyStore, service: EduPocket) -> None:
    _linked_child_id(service)

    assert [event.action for event in store.audit_events(limit=1)] == ["qr_issued"]
    assert store.audit_events(limit=0) == ()
