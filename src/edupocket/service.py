"""High level service coordinating child linking and QR credentials for a guardian."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from uuid import uuid4

from .admin import AuditLog
from .credentials import DEFAULT_ROTATION_MINUTES, DEFAULT_SCHEME, QRCredentialManager, TokenGenerator
from .exceptions import ChildNotFoundError, SessionNotFoundError
from .linking import ChildProfile, LinkingWizard, placeholder_profile
from .models import (
    AuditEvent,
    Child,
    ChildStatus,
    LinkOutcome,
    QRCredential,
    QRMode,
    VerificationPreview,
)
from .ops import StructuredLogger
from .rendering import DEFAULT_CANVAS_PX, DEFAULT_GRID_SIZE, PseudoQR, render, to_svg
from .store import ChildStore, InMemoryChildStore

_CREDENTIAL_ACTIONS = {
    "issued": "qr_issued",
    "rotated": "qr_rotated",
    "enabled": "qr_enabled",
    "disabled": "qr_disabled",
    "reissued": "qr_reissued",
    "mode_changed": "qr_mode_changed",
}


def default_mode_for(child: Child) -> QRMode:
    """Children still waiting on consent get a printable static QR."""

    return QRMode.STATIC if child.status is ChildStatus.NEEDS_CONSENT else QRMode.DYNAMIC


class EduPocket:
    """Run linking sessions and credential changes on behalf of one guardian.

    Store writes happen before an action counts as done; a failing store
    leaves the wizard and credentials as they were and the error propagates.
    The child or credential write and its audit entry go together: when the
    audit write fails the first write is undone.
    """

    __slots__ = (
        "_guardian_id",
        "_device",
        "_store",
        "_audit_log",
        "_logger",
        "_credentials",
        "_sessions",
        "_profile_lookup",
        "_issue_on_link",
    )

    def __init__(
        self,
        guardian_id: str,
        *,
        device: str = "web",
        store: Optional[ChildStore] = None,
        token_generator: Optional[TokenGenerator] = None,
        scheme: str = DEFAULT_SCHEME,
        rotation_minutes: int = DEFAULT_ROTATION_MINUTES,
        log_path: Optional[Path] = None,
        profile_lookup: Callable[[str], ChildProfile] = placeholder_profile,
        issue_on_link: bool = True,
    ) -> None:
        self._guardian_id = guardian_id
        self._device = device
        self._store: ChildStore = store if store is not None else InMemoryChildStore()
        self._audit_log = AuditLog()
        self._audit_log.subscribe(self._store.append_audit)
        self._logger = StructuredLogger(path=log_path)
        self._credentials = QRCredentialManager(
            token_generator=token_generator,
            scheme=scheme,
            default_rotation_minutes=rotation_minutes,
            on_change=self._credential_changed,
        )
        self._sessions: Dict[str, LinkingWizard] = {}
        self._profile_lookup = profile_lookup
        self._issue_on_link = issue_on_link

    @property
    def guardian_id(self) -> str:
        return self._guardian_id

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def credentials(self) -> QRCredentialManager:
        return self._credentials

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------
    def list_children(self) -> Tuple[Child, ...]:
        return tuple(self._store.list_children(self._guardian_id))

    def get_child(self, child_id: str) -> Child:
        for child in self.list_children():
            if child.id == child_id:
                return child
        raise ChildNotFoundError(f"Child '{child_id}' is not linked to this guardian.")

    def has_child(self, child_id: str) -> bool:
        return any(child.id == child_id for child in self.list_children())

    # ------------------------------------------------------------------
    # Linking sessions
    # ------------------------------------------------------------------
    def start_linking(self) -> str:
        session_id = uuid4().hex
        self._sessions[session_id] = LinkingWizard(
            existing_children=self.list_children(),
            on_complete=self._link_completed,
            profile_lookup=self._profile_lookup,
        )
        self._logger.log("linking_started", guardian=self._guardian_id, session=session_id)
        return session_id

    def wizard(self, session_id: str) -> LinkingWizard:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise SessionNotFoundError(f"Linking session '{session_id}' does not exist.") from exc

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def advance(self, session_id: str, *, strict: bool = False) -> Optional[LinkOutcome]:
        """Move the session forward; return the outcome once it completes.

        A new child is issued its first credential right after the link is
        stored. If that fails the link still stands: the outcome comes back
        with ``credential_issued=False`` and the credential can be issued
        later with :meth:`issue_credential`.
        """

        wizard = self.wizard(session_id)
        wizard.next(strict=strict)
        if not wizard.is_completed:
            return None
        self._sessions.pop(session_id, None)
        outcome = wizard.outcome
        if outcome is not None and outcome.creates_child and outcome.child is not None and self._issue_on_link:
            outcome = self._issue_after_link(outcome)
        return outcome

    def cancel_linking(self, session_id: str) -> None:
        wizard = self._sessions.pop(session_id, None)
        if wizard is None:
            raise SessionNotFoundError(f"Linking session '{session_id}' does not exist.")
        wizard.cancel()
        self._logger.log("linking_cancelled", guardian=self._guardian_id, session=session_id)

    def _issue_after_link(self, outcome: LinkOutcome) -> LinkOutcome:
        child_id = outcome.child.id
        try:
            self.issue_credential(child_id)
        except Exception as exc:
            self._logger.log(
                "credential_issue_failed",
                guardian=self._guardian_id,
                child=child_id,
                error=type(exc).__name__,
            )
            return outcome
        return replace(outcome, credential_issued=True)

    def _link_completed(self, outcome: LinkOutcome) -> None:
        created = outcome.child if outcome.creates_child else None
        if created is not None:
            self._store.save_child(self._guardian_id, created)
        target = outcome.child.id if outcome.child is not None else outcome.code
        try:
            self._audit_log.record(
                self._guardian_id,
                self._device,
                "child_linked",
                target,
                details={
                    "method": outcome.method.value,
                    "outcome": outcome.kind.value,
                    "roster_correction_requested": outcome.roster_correction_requested,
                },
                timestamp=outcome.completed_at,
            )
        except Exception:
            if created is not None:
                self._store.remove_child(self._guardian_id, created.id)
            raise
        self._logger.log(
            "linking_completed",
            guardian=self._guardian_id,
            outcome=outcome.kind.value,
            method=outcome.method.value,
            child=outcome.child.id if outcome.child is not None else None,
        )

    # ------------------------------------------------------------------
    # QR credentials
    # ------------------------------------------------------------------
    def issue_credential(
        self,
        child_id: str,
        mode: Optional[QRMode] = None,
        rotation_interval_minutes: Optional[int] = None,
    ) -> QRCredential:
        child = self.get_child(child_id)
        self._reload_credential(child_id)
        return self._credentials.issue(child.id, mode or default_mode_for(child), rotation_interval_minutes)

    def credential(self, child_id: str) -> QRCredential:
        self.get_child(child_id)
        self._reload_credential(child_id)
        return self._credentials.get(child_id)

    def _reload_credential(self, child_id: str) -> None:
        if self._credentials.has_credential(child_id):
            return
        stored = self._store.load_credential(child_id)
        if stored is not None:
            self._credentials.load(stored)

    def rotate_credential(self, credential: QRCredential) -> QRCredential:
        return self._credentials.rotate(credential)

    def set_credential_enabled(self, credential: QRCredential, enabled: bool) -> QRCredential:
        return self._credentials.set_enabled(credential, enabled)

    def reissue_credential(self, credential: QRCredential) -> QRCredential:
        return self._credentials.reissue(credential)

    def change_credential_mode(
        self,
        credential: QRCredential,
        mode: QRMode,
        rotation_interval_minutes: Optional[int] = None,
    ) -> QRCredential:
        return self._credentials.set_mode(credential, mode, rotation_interval_minutes)

    def payload(self, child_id: str) -> str:
        return self._credentials.derive_payload(self.credential(child_id))

    def render_qr(self, child_id: str, *, grid_size: int = DEFAULT_GRID_SIZE, canvas_px: int = DEFAULT_CANVAS_PX) -> PseudoQR:
        return render(self.payload(child_id), grid_size=grid_size, canvas_px=canvas_px)

    def qr_svg(self, child_id: str) -> str:
        return to_svg(self.render_qr(child_id))

    def verification_preview(self, child_id: str) -> VerificationPreview:
        child = self.get_child(child_id)
        credential = self.credential(child_id)
        return VerificationPreview(
            child_name=child.name,
            school=child.school,
            class_line=child.class_line,
            status=child.status,
            qr_valid=credential.enabled,
            photo_provided=child.photo_provided,
            payload=self._credentials.derive_payload(credential),
        )

    def _credential_changed(self, previous: Optional[QRCredential], updated: QRCredential, action: str) -> None:
        self._store.save_credential(updated)
        details: Dict[str, object] = {"mode": updated.mode.value, "version": updated.version}
        if updated.rotation_interval_minutes is not None:
            details["rotation_interval_minutes"] = updated.rotation_interval_minutes
        if previous is not None and previous.current_token and previous.current_token != updated.current_token:
            details["previous_token_invalidated"] = True
        try:
            self._audit_log.record(
                self._guardian_id,
                self._device,
                _CREDENTIAL_ACTIONS[action],
                updated.child_id,
                details=details,
            )
        except Exception:
            # The manager keeps ``previous`` active; the store must agree.
            if previous is None:
                self._store.delete_credential(updated.child_id)
            else:
                self._store.save_credential(previous)
            raise
        self._logger.log(
            f"credential_{action}",
            guardian=self._guardian_id,
            child=updated.child_id,
            mode=updated.mode.value,
            enabled=updated.enabled,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def recent_audit(self, limit: int = 50) -> Tuple[AuditEvent, ...]:
        """Newest stored audit events, read back from the store."""

        return tuple(self._store.audit_events(limit=max(limit, 0)))


__all__ = ["EduPocket", "default_mode_for"]
