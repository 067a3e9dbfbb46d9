"""Child linking wizard modelled as an immutable session and a pure transition."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import IntEnum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .codes import CodeStatus, classify, status_line
from .conflicts import ConflictChoice, is_resolved, resolve_conflict
from .exceptions import GuardNotSatisfiedError, WizardClosedError
from .models import Child, ChildStatus, Currency, LinkMethod, LinkOutcome, LinkOutcomeKind


class WizardStep(IntEnum):
    CHOOSE_METHOD = 0
    DETAILS = 1
    REVIEW = 2
    COMPLETED = 3

    @property
    def label(self) -> str:
        return ("Choose method", "Details", "Review", "Completed")[self]


MIN_CHILD_NAME_LENGTH = 2


@dataclass(frozen=True, slots=True)
class LinkingSession:
    """State of one wizard invocation.

    ``code_status`` is derived from ``code`` on every read, so it can never
    lag behind the code that is currently entered.
    """

    method: Optional[LinkMethod] = None
    step: WizardStep = WizardStep.CHOOSE_METHOD
    child_name: str = ""
    date_of_birth: Optional[date] = None
    school: str = ""
    class_name: str = ""
    stream: str = ""
    currency: Currency = Currency.UGX
    photo_requested: bool = True
    code: str = ""
    conflict_choice: Optional[ConflictChoice] = None
    existing_child_id: Optional[str] = None
    confirm_guardian: bool = False
    existing_child_ids: Tuple[str, ...] = ()

    @property
    def code_status(self) -> CodeStatus:
        if self.method is None or not self.method.is_code_based:
            return CodeStatus.IDLE
        return classify(self.code)

    @property
    def is_completed(self) -> bool:
        return self.step is WizardStep.COMPLETED


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


@dataclass(frozen=True, slots=True)
class SelectMethod:
    method: LinkMethod


@dataclass(frozen=True, slots=True)
class UpdateDetails:
    """Partial edit of the Create form; fields left as ``UNSET`` are unchanged."""

    child_name: Union[str, _Unset] = UNSET
    date_of_birth: Union[Optional[date], _Unset] = UNSET
    school: Union[str, _Unset] = UNSET
    class_name: Union[str, _Unset] = UNSET
    stream: Union[str, _Unset] = UNSET
    currency: Union[Currency, _Unset] = UNSET
    photo_requested: Union[bool, _Unset] = UNSET

    def changes(self) -> Dict[str, object]:
        names = ("child_name", "date_of_birth", "school", "class_name", "stream", "currency", "photo_requested")
        return {name: getattr(self, name) for name in names if getattr(self, name) is not UNSET}


@dataclass(frozen=True, slots=True)
class EnterCode:
    code: str


@dataclass(frozen=True, slots=True)
class ScanCode:
    code: str


@dataclass(frozen=True, slots=True)
class ChooseConflictResolution:
    choice: ConflictChoice


@dataclass(frozen=True, slots=True)
class SelectExistingChild:
    child_id: str


@dataclass(frozen=True, slots=True)
class ConfirmGuardian:
    confirmed: bool = True


@dataclass(frozen=True, slots=True)
class Next:
    pass


@dataclass(frozen=True, slots=True)
class Back:
    pass


WizardEvent = Union[
    SelectMethod,
    UpdateDetails,
    EnterCode,
    ScanCode,
    ChooseConflictResolution,
    SelectExistingChild,
    ConfirmGuardian,
    Next,
    Back,
]


# ---------------------------------------------------------------------------
# Guards and the transition function
# ---------------------------------------------------------------------------
def create_details_complete(session: LinkingSession) -> bool:
    return (
        len(session.child_name.strip()) >= MIN_CHILD_NAME_LENGTH
        and bool(session.school.strip())
        and bool(session.class_name.strip())
        and session.date_of_birth is not None
    )


def code_details_complete(session: LinkingSession) -> bool:
    if not session.code.strip():
        return False
    status = session.code_status
    if status is CodeStatus.INVALID:
        return False
    if status is CodeStatus.CONFLICT:
        return is_resolved(session.conflict_choice, session.existing_child_id, session.existing_child_ids)
    # Duplicates go through; the Review step surfaces them to the guardian.
    return status in (CodeStatus.VALID, CodeStatus.DUPLICATE)


def can_advance(session: LinkingSession) -> bool:
    """Return ``True`` when ``Next`` would move ``session`` forward."""

    if session.step is WizardStep.CHOOSE_METHOD:
        return session.method is not None
    if session.step is WizardStep.DETAILS:
        if session.method is None:
            return False
        if session.method is LinkMethod.CREATE:
            return create_details_complete(session)
        return code_details_complete(session)
    if session.step is WizardStep.REVIEW:
        return session.confirm_guardian
    return False


def can_go_back(session: LinkingSession) -> bool:
    return WizardStep.CHOOSE_METHOD < session.step < WizardStep.COMPLETED


def _set_code(session: LinkingSession, code: str) -> LinkingSession:
    if session.step is not WizardStep.DETAILS or session.method is None or not session.method.is_code_based:
        return session
    if code == session.code:
        return session
    return replace(session, code=code, conflict_choice=None, existing_child_id=None)


def transition(session: LinkingSession, event: WizardEvent) -> LinkingSession:
    """Apply ``event`` to ``session`` and return the resulting session.

    Events that do not apply to the current step, and ``Next`` while the step
    guard fails, return ``session`` unchanged.
    """

    if session.is_completed:
        return session

    if isinstance(event, SelectMethod):
        if session.step is not WizardStep.CHOOSE_METHOD:
            return session
        return replace(
            session,
            method=event.method,
            code="",
            conflict_choice=None,
            existing_child_id=None,
        )
    if isinstance(event, UpdateDetails):
        if session.step is not WizardStep.DETAILS or session.method is not LinkMethod.CREATE:
            return session
        changes = event.changes()
        return replace(session, **changes) if changes else session
    if isinstance(event, (EnterCode, ScanCode)):
        return _set_code(session, event.code)
    if isinstance(event, ChooseConflictResolution):
        if session.step is not WizardStep.DETAILS or session.code_status is not CodeStatus.CONFLICT:
            return session
        existing = session.existing_child_id if event.choice is ConflictChoice.LINK_TO_EXISTING else None
        return replace(session, conflict_choice=event.choice, existing_child_id=existing)
    if isinstance(event, SelectExistingChild):
        if session.step is not WizardStep.DETAILS or session.conflict_choice is not ConflictChoice.LINK_TO_EXISTING:
            return session
        return replace(session, existing_child_id=event.child_id)
    if isinstance(event, ConfirmGuardian):
        if session.step is not WizardStep.REVIEW:
            return session
        return replace(session, confirm_guardian=event.confirmed)
    if isinstance(event, Next):
        if not can_advance(session):
            return session
        return replace(session, step=WizardStep(session.step + 1))
    if isinstance(event, Back):
        if not can_go_back(session):
            return session
        # Consent must be given again for whatever the guardian changes.
        return replace(session, step=WizardStep(session.step - 1), confirm_guardian=False)
    raise TypeError(f"Unsupported wizard event: {event!r}")


# ---------------------------------------------------------------------------
# Review summary and completion
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReviewSummary:
    title: str
    lines: Tuple[str, ...]


_METHOD_TITLES = {
    LinkMethod.CREATE: "Create child wallet",
    LinkMethod.LINK: "Link existing child wallet",
    LinkMethod.APPROVE_REQUEST: "Approve child sign-up request",
    LinkMethod.SCHOOL_INVITE: "Accept school invite",
}


def review_summary(session: LinkingSession) -> Optional[ReviewSummary]:
    if session.method is None:
        return None
    title = _METHOD_TITLES[session.method]
    if session.method is LinkMethod.CREATE:
        class_line = session.class_name or "-"
        if session.stream:
            class_line = f"{class_line} • {session.stream}"
        return ReviewSummary(
            title=title,
            lines=(
                f"Name: {session.child_name or '-'}",
                f"DOB: {session.date_of_birth.isoformat() if session.date_of_birth else '-'}",
                f"School: {session.school or '-'}",
                f"Class: {class_line}",
                f"Currency: {session.currency.value}",
                f"Photo requested: {'Yes' if session.photo_requested else 'No'}",
            ),
        )
    choice = session.conflict_choice.value if session.conflict_choice else None
    return ReviewSummary(
        title=title,
        lines=(
            f"Code: {session.code or '-'}",
            f"Validation: {status_line(session.code_status, choice)}",
        ),
    )


@dataclass(frozen=True, slots=True)
class ChildProfile:
    """Roster details attached to a linking code."""

    name: str
    school: str = ""
    class_name: str = ""
    stream: Optional[str] = None


def placeholder_profile(code: str) -> ChildProfile:
    return ChildProfile(name=f"Student {code.strip().upper()}")


def build_outcome(
    session: LinkingSession,
    *,
    existing_children: Iterable[Child] = (),
    child_id: Optional[str] = None,
    profile_lookup: Callable[[str], ChildProfile] = placeholder_profile,
    at: Optional[datetime] = None,
) -> LinkOutcome:
    """Describe what completing ``session`` does to the guardian's children."""

    if session.method is None:
        raise ValueError("A linking method is required.")
    moment = at or datetime.utcnow()
    new_id = child_id or f"c_{uuid4().hex[:8]}"
    method = session.method

    if method is LinkMethod.CREATE:
        child = Child(
            id=new_id,
            name=session.child_name.strip(),
            school=session.school.strip(),
            class_name=session.class_name.strip(),
            stream=session.stream.strip() or None,
            method=method,
            date_of_birth=session.date_of_birth,
            currency=session.currency,
            photo_requested=session.photo_requested,
            # A new profile stays inactive until consent is given.
            status=ChildStatus.NEEDS_CONSENT,
            created_at=moment,
        )
        return LinkOutcome(kind=LinkOutcomeKind.CREATED, method=method, child=child, completed_at=moment)

    code = session.code.strip()
    status = session.code_status
    if status is CodeStatus.DUPLICATE:
        return LinkOutcome(kind=LinkOutcomeKind.DUPLICATE, method=method, code=code, completed_at=moment)

    roster_correction = False
    if status is CodeStatus.CONFLICT:
        resolution = resolve_conflict(session.conflict_choice, session.existing_child_id, existing_children)
        if resolution.existing_child is not None:
            return LinkOutcome(
                kind=LinkOutcomeKind.ATTACHED,
                method=method,
                child=resolution.existing_child,
                code=code,
                completed_at=moment,
            )
        roster_correction = resolution.requests_roster_correction

    profile = profile_lookup(code)
    child = Child(
        id=new_id,
        name=profile.name,
        school=profile.school,
        class_name=profile.class_name,
        stream=profile.stream,
        method=method,
        created_at=moment,
    )
    return LinkOutcome(
        kind=LinkOutcomeKind.CREATED,
        method=method,
        child=child,
        code=code,
        roster_correction_requested=roster_correction,
        completed_at=moment,
    )


class LinkingWizard:
    """Own a :class:`LinkingSession` for a single linking attempt.

    ``on_complete`` receives the :class:`LinkOutcome` before the session is
    marked completed; if it raises, the wizard stays on the Review step and
    the error propagates. A wizard is not reusable once completed or
    cancelled.
    """

    def __init__(
        self,
        *,
        existing_children: Sequence[Child] = (),
        on_complete: Optional[Callable[[LinkOutcome], None]] = None,
        profile_lookup: Callable[[str], ChildProfile] = placeholder_profile,
        child_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._existing = tuple(existing_children)
        self._session = LinkingSession(existing_child_ids=tuple(child.id for child in self._existing))
        self._history: List[LinkingSession] = []
        self._on_complete = on_complete
        self._profile_lookup = profile_lookup
        self._child_id_factory = child_id_factory
        self._outcome: Optional[LinkOutcome] = None
        self._cancelled = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def session(self) -> LinkingSession:
        return self._session

    @property
    def step(self) -> WizardStep:
        return self._session.step

    @property
    def existing_children(self) -> Tuple[Child, ...]:
        return self._existing

    @property
    def outcome(self) -> Optional[LinkOutcome]:
        return self._outcome

    @property
    def is_completed(self) -> bool:
        return self._session.is_completed

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def can_next(self) -> bool:
        return not self._closed and can_advance(self._session)

    @property
    def can_back(self) -> bool:
        return not self._closed and can_go_back(self._session)

    def summary(self) -> Optional[ReviewSummary]:
        return review_summary(self._session)

    @property
    def _closed(self) -> bool:
        return self._cancelled or self._session.is_completed

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def dispatch(self, event: WizardEvent) -> LinkingSession:
        if self._closed:
            raise WizardClosedError("This linking session is closed; start a new one.")
        if isinstance(event, Next) and self._session.step is WizardStep.REVIEW:
            self._complete()
            return self._session
        updated = transition(self._session, event)
        if updated is not self._session:
            self._history.append(self._session)
            self._session = updated
        return self._session

    def select_method(self, method: LinkMethod) -> LinkingSession:
        return self.dispatch(SelectMethod(method))

    def update_details(self, **changes: object) -> LinkingSession:
        return self.dispatch(UpdateDetails(**changes))  # type: ignore[arg-type]

    def enter_code(self, code: str) -> LinkingSession:
        return self.dispatch(EnterCode(code))

    def scan(self, code: str) -> LinkingSession:
        return self.dispatch(ScanCode(code))

    def choose_conflict_resolution(self, choice: ConflictChoice) -> LinkingSession:
        return self.dispatch(ChooseConflictResolution(choice))

    def select_existing_child(self, child_id: str) -> LinkingSession:
        return self.dispatch(SelectExistingChild(child_id))

    def confirm_guardian(self, confirmed: bool = True) -> LinkingSession:
        return self.dispatch(ConfirmGuardian(confirmed))

    def next(self, *, strict: bool = False) -> bool:
        """Advance one step; return whether the wizard moved."""

        before = self._session
        if not self._closed and not can_advance(before):
            if strict:
                raise GuardNotSatisfiedError(f"Cannot continue from step '{before.step.label}'.")
            return False
        self.dispatch(Next())
        return self._session is not before

    def back(self) -> bool:
        before = self._session
        self.dispatch(Back())
        return self._session is not before

    def undo(self) -> LinkingSession:
        if self._closed:
            raise WizardClosedError("This linking session is closed; start a new one.")
        if not self._history:
            raise LookupError("Nothing to undo.")
        self._session = self._history.pop()
        return self._session

    def cancel(self) -> None:
        """Abandon the attempt; nothing is handed to the store."""

        self._cancelled = True
        self._history.clear()
        self._session = LinkingSession(existing_child_ids=self._session.existing_child_ids)

    def _complete(self) -> None:
        if not can_advance(self._session):
            return
        outcome = build_outcome(
            self._session,
            existing_children=self._existing,
            child_id=self._child_id_factory() if self._child_id_factory else None,
            profile_lookup=self._profile_lookup,
        )
        if self._on_complete is not None:
            self._on_complete(outcome)
        self._history.clear()
        self._session = replace(self._session, step=WizardStep.COMPLETED)
        self._outcome = outcome


__all__ = [
    "Back",
    "ChildProfile",
    "ChooseConflictResolution",
    "ConfirmGuardian",
    "EnterCode",
    "LinkingSession",
    "LinkingWizard",
    "Next",
    "ReviewSummary",
    "ScanCode",
    "SelectExistingChild",
    "SelectMethod",
    "UNSET",
    "UpdateDetails",
    "WizardEvent",
    "WizardStep",
    "build_outcome",
    "can_advance",
    "can_go_back",
    "placeholder_profile",
    "review_summary",
    "transition",
]
