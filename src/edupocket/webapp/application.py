"""FastAPI surface for the child linking wizard and student QR credentials.

Every linking endpoint works on the wizard whose id is kept in the caller's
cookie session; credential endpoints take the child id from the path.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Any, Dict, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.sessions import SessionMiddleware

from ..codes import DEMO_CODES, helper_text
from ..conflicts import ConflictChoice
from ..exceptions import (
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
from ..linking import LinkingWizard
from ..models import Child, Currency, LinkMethod, LinkOutcome, QRCredential, QRMode
from ..rendering import to_svg
from ..service import EduPocket
from .config import (
    DEFAULT_ROTATION_MINUTES,
    GUARDIAN_DEVICE,
    GUARDIAN_ID,
    LINKING_SESSION_KEY,
    LOG_PATH,
    MAX_AUDIT_LIMIT,
    QR_CANVAS_PX,
    QR_GRID_SIZE,
    QR_SCHEME,
    SESSION_SECRET,
    clamp_rotation_minutes,
)
from .persistence import SqlModelChildStore, create_db_and_tables

app = FastAPI(title="EduPocket")
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, same_site="lax")

_SERVICE: Optional[EduPocket] = None


def configure_service(service: Optional[EduPocket]) -> None:
    """Install the service used by the endpoints (``None`` resets it)."""

    global _SERVICE
    _SERVICE = service


def get_service() -> EduPocket:
    global _SERVICE
    if _SERVICE is None:
        store = SqlModelChildStore()
        create_db_and_tables(store.engine)
        _SERVICE = EduPocket(
            GUARDIAN_ID,
            device=GUARDIAN_DEVICE,
            store=store,
            scheme=QR_SCHEME,
            rotation_minutes=DEFAULT_ROTATION_MINUTES,
            log_path=LOG_PATH,
        )
    return _SERVICE


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------
_STATUS_CODES = {
    SessionNotFoundError: 404,
    ChildNotFoundError: 404,
    CredentialNotFoundError: 404,
    GuardNotSatisfiedError: 409,
    WizardClosedError: 409,
    StaleCredentialError: 409,
    NotRotatableError: 409,
    InvalidConfigurationError: 400,
    StoreError: 503,
}


def error_response(exc: Exception) -> JSONResponse:
    status = 400
    for exc_type, code in _STATUS_CODES.items():
        if isinstance(exc, exc_type):
            status = code
            break
    return JSONResponse({"error": type(exc).__name__, "detail": str(exc)}, status_code=status)


@app.exception_handler(EduPocketError)
async def edupocket_error_handler(_request: Request, exc: EduPocketError) -> JSONResponse:
    return error_response(exc)


def child_payload(child: Child) -> Dict[str, Any]:
    return child.as_dict()


def wizard_payload(wizard: LinkingWizard) -> Dict[str, Any]:
    session = wizard.session
    summary = wizard.summary()
    return {
        "step": int(session.step),
        "step_label": session.step.label,
        "method": session.method.value if session.method else None,
        "child_name": session.child_name,
        "date_of_birth": session.date_of_birth.isoformat() if session.date_of_birth else None,
        "school": session.school,
        "class_name": session.class_name,
        "stream": session.stream,
        "currency": session.currency.value,
        "photo_requested": session.photo_requested,
        "code": session.code,
        "code_status": session.code_status.value,
        "code_help": helper_text(session.code_status),
        "conflict_choice": session.conflict_choice.value if session.conflict_choice else None,
        "existing_child_id": session.existing_child_id,
        "confirm_guardian": session.confirm_guardian,
        "can_next": wizard.can_next,
        "can_back": wizard.can_back,
        "existing_children": [child_payload(child) for child in wizard.existing_children],
        "summary": {"title": summary.title, "lines": list(summary.lines)} if summary else None,
    }


def outcome_payload(outcome: LinkOutcome) -> Dict[str, Any]:
    return {
        "completed": True,
        "outcome": outcome.kind.value,
        "method": outcome.method.value,
        "child": child_payload(outcome.child) if outcome.child else None,
        "roster_correction_requested": outcome.roster_correction_requested,
        "credential_issued": outcome.credential_issued,
    }


def credential_payload(service: EduPocket, credential: QRCredential) -> Dict[str, Any]:
    return {
        "child_id": credential.child_id,
        "mode": credential.mode.value,
        "enabled": credential.enabled,
        "rotation_interval_minutes": credential.rotation_interval_minutes,
        "version": credential.version,
        "issued_at": credential.issued_at.isoformat(),
        "payload": service.credentials.derive_payload(credential),
    }


def _current_wizard(request: Request) -> LinkingWizard:
    session_id = request.session.get(LINKING_SESSION_KEY)
    if not session_id:
        raise SessionNotFoundError("No linking session in progress.")
    return get_service().wizard(session_id)


def _wizard_call(request: Request, action) -> JSONResponse:
    try:
        wizard = _current_wizard(request)
        action(wizard)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(wizard_payload(wizard))


def _handle(service: EduPocket, child_id: str, version: Optional[int]) -> QRCredential:
    credential = service.credential(child_id)
    if version is None:
        return credential
    # The client's view of the credential; the manager rejects it if stale.
    return replace(credential, version=version)


# ---------------------------------------------------------------------------
# Linking wizard
# ---------------------------------------------------------------------------
@app.post("/linking/start")
def linking_start(request: Request) -> JSONResponse:
    service = get_service()
    previous = request.session.get(LINKING_SESSION_KEY)
    if previous and service.has_session(previous):
        service.cancel_linking(previous)
    session_id = service.start_linking()
    request.session[LINKING_SESSION_KEY] = session_id
    return JSONResponse(wizard_payload(service.wizard(session_id)), status_code=201)


@app.get("/linking")
def linking_state(request: Request) -> JSONResponse:
    return _wizard_call(request, lambda wizard: None)


@app.get("/linking/demo-codes")
def linking_demo_codes() -> JSONResponse:
    return JSONResponse({"codes": list(DEMO_CODES)})


@app.post("/linking/method")
def linking_method(request: Request, method: str = Form(...)) -> JSONResponse:
    return _wizard_call(request, lambda wizard: wizard.select_method(LinkMethod(method)))


@app.post("/linking/details")
def linking_details(
    request: Request,
    child_name: Optional[str] = Form(None),
    date_of_birth: Optional[str] = Form(None),
    school: Optional[str] = Form(None),
    class_name: Optional[str] = Form(None),
    stream: Optional[str] = Form(None),
    currency: Optional[str] = Form(None),
    photo_requested: Optional[bool] = Form(None),
) -> JSONResponse:
    def apply(wizard: LinkingWizard) -> None:
        changes: Dict[str, Any] = {}
        for name, value in (("child_name", child_name), ("school", school), ("class_name", class_name), ("stream", stream)):
            if value is not None:
                changes[name] = value
        if date_of_birth is not None:
            changes["date_of_birth"] = date.fromisoformat(date_of_birth) if date_of_birth.strip() else None
        if currency is not None:
            changes["currency"] = Currency(currency)
        if photo_requested is not None:
            changes["photo_requested"] = photo_requested
        wizard.update_details(**changes)

    return _wizard_call(request, apply)


@app.post("/linking/code")
def linking_code(request: Request, code: str = Form(""), source: str = Form("typed")) -> JSONResponse:
    if source == "scan":
        return _wizard_call(request, lambda wizard: wizard.scan(code))
    return _wizard_call(request, lambda wizard: wizard.enter_code(code))


@app.post("/linking/conflict")
def linking_conflict(
    request: Request,
    choice: str = Form(...),
    existing_child_id: Optional[str] = Form(None),
) -> JSONResponse:
    def apply(wizard: LinkingWizard) -> None:
        wizard.choose_conflict_resolution(ConflictChoice(choice))
        if existing_child_id:
            wizard.select_existing_child(existing_child_id)

    return _wizard_call(request, apply)


@app.post("/linking/confirm")
def linking_confirm(request: Request, confirmed: bool = Form(True)) -> JSONResponse:
    return _wizard_call(request, lambda wizard: wizard.confirm_guardian(confirmed))


@app.post("/linking/next")
def linking_next(request: Request) -> JSONResponse:
    service = get_service()
    session_id = request.session.get(LINKING_SESSION_KEY) or ""
    try:
        wizard = service.wizard(session_id)
        outcome = service.advance(session_id, strict=True)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    if outcome is None:
        return JSONResponse(wizard_payload(wizard))
    request.session.pop(LINKING_SESSION_KEY, None)
    return JSONResponse(outcome_payload(outcome))


@app.post("/linking/back")
def linking_back(request: Request) -> JSONResponse:
    return _wizard_call(request, lambda wizard: wizard.back())


@app.post("/linking/undo")
def linking_undo(request: Request) -> JSONResponse:
    try:
        wizard = _current_wizard(request)
        wizard.undo()
    except EduPocketError as exc:
        return error_response(exc)
    except LookupError as exc:
        return JSONResponse({"error": "NothingToUndo", "detail": str(exc)}, status_code=409)
    return JSONResponse(wizard_payload(wizard))


@app.post("/linking/cancel")
def linking_cancel(request: Request) -> JSONResponse:
    session_id = request.session.pop(LINKING_SESSION_KEY, None)
    if session_id:
        service = get_service()
        if service.has_session(session_id):
            service.cancel_linking(session_id)
    return JSONResponse({"cancelled": bool(session_id)})


# ---------------------------------------------------------------------------
# Children and QR credentials
# ---------------------------------------------------------------------------
@app.get("/children")
def children_list() -> JSONResponse:
    service = get_service()
    return JSONResponse({"children": [child_payload(child) for child in service.list_children()]})


@app.post("/children/{child_id}/qr")
def qr_issue(
    child_id: str,
    mode: Optional[str] = Form(None),
    rotation_minutes: Optional[int] = Form(None),
) -> JSONResponse:
    service = get_service()
    try:
        qr_mode = QRMode(mode) if mode else None
        minutes = clamp_rotation_minutes(rotation_minutes) if qr_mode is not QRMode.STATIC else None
        credential = service.issue_credential(child_id, qr_mode, minutes)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential), status_code=201)


@app.get("/children/{child_id}/qr")
def qr_show(child_id: str) -> JSONResponse:
    service = get_service()
    try:
        credential = service.credential(child_id)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential))


@app.post("/children/{child_id}/qr/rotate")
def qr_rotate(child_id: str, version: Optional[int] = Form(None)) -> JSONResponse:
    service = get_service()
    try:
        credential = service.rotate_credential(_handle(service, child_id, version))
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential))


@app.post("/children/{child_id}/qr/enabled")
def qr_enabled(child_id: str, enabled: bool = Form(...), version: Optional[int] = Form(None)) -> JSONResponse:
    service = get_service()
    try:
        credential = service.set_credential_enabled(_handle(service, child_id, version), enabled)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential))


@app.post("/children/{child_id}/qr/reissue")
def qr_reissue(child_id: str, version: Optional[int] = Form(None)) -> JSONResponse:
    service = get_service()
    try:
        credential = service.reissue_credential(_handle(service, child_id, version))
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential))


@app.post("/children/{child_id}/qr/mode")
def qr_mode(
    child_id: str,
    mode: str = Form(...),
    rotation_minutes: Optional[int] = Form(None),
    version: Optional[int] = Form(None),
) -> JSONResponse:
    service = get_service()
    try:
        qr_mode_value = QRMode(mode)
        minutes = None
        if qr_mode_value is QRMode.DYNAMIC and rotation_minutes is not None:
            minutes = clamp_rotation_minutes(rotation_minutes)
        credential = service.change_credential_mode(_handle(service, child_id, version), qr_mode_value, minutes)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(credential_payload(service, credential))


@app.get("/children/{child_id}/qr.svg")
def qr_svg(child_id: str) -> Response:
    service = get_service()
    try:
        svg = to_svg(service.render_qr(child_id, grid_size=QR_GRID_SIZE, canvas_px=QR_CANVAS_PX))
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return Response(content=svg, media_type="image/svg+xml")


@app.get("/children/{child_id}/qr/preview")
def qr_preview(child_id: str) -> JSONResponse:
    service = get_service()
    try:
        preview = service.verification_preview(child_id)
    except (EduPocketError, ValueError) as exc:
        return error_response(exc)
    return JSONResponse(
        {
            "child_name": preview.child_name,
            "school": preview.school,
            "class_line": preview.class_line,
            "status": preview.status.value,
            "qr_valid": preview.qr_valid,
            "chips": list(preview.chips),
            "payload": preview.payload,
        }
    )


@app.get("/audit")
def audit_list(limit: int = 50) -> JSONResponse:
    service = get_service()
    try:
        events = service.recent_audit(max(1, min(limit, MAX_AUDIT_LIMIT)))
    except EduPocketError as exc:
        return error_response(exc)
    return JSONResponse({"events": [event.as_dict() for event in events]})


__all__ = [
    "app",
    "configure_service",
    "get_service",
]
