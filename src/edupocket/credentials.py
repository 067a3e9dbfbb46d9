"""QR credential issuance and token rotation for linked children."""

from __future__ import annotations

import hmac
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from secrets import token_urlsafe
from typing import Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import parse_qsl, urlsplit

from .exceptions import (
    CredentialNotFoundError,
    InvalidConfigurationError,
    NotRotatableError,
    StaleCredentialError,
)
from .models import QRCredential, QRMode

DEFAULT_SCHEME = "edupocket"
DEFAULT_ROTATION_MINUTES = 30
LOCK_STRIPES = 64


class TokenGenerator(Protocol):
    def __call__(self) -> str: ...


class SecureTokenGenerator:
    """Produce unguessable tokens from :mod:`secrets`."""

    def __init__(self, *, prefix: str = "tok_", nbytes: int = 16) -> None:
        self._prefix = prefix
        self._nbytes = nbytes

    def __call__(self) -> str:
        return f"{self._prefix}{token_urlsafe(self._nbytes)}"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------
def derive_payload(credential: QRCredential, *, scheme: str = DEFAULT_SCHEME) -> str:
    """Return the string encoded in the child's QR.

    Disabled credentials carry ``disabled=1`` and no token so that a verifier
    can reject them on sight.
    """

    base = f"{scheme}://student/{credential.child_id}"
    if not credential.enabled:
        return f"{base}?disabled=1"
    if credential.mode is QRMode.STATIC:
        return f"{base}?static=1"
    return f"{base}?token={credential.current_token}"


@dataclass(frozen=True, slots=True)
class ParsedPayload:
    scheme: str
    child_id: str
    token: Optional[str] = None
    static: bool = False
    disabled: bool = False


def parse_payload(payload: str) -> ParsedPayload:
    parts = urlsplit(payload)
    if parts.netloc != "student" or not parts.path.strip("/"):
        raise ValueError(f"Not a student QR payload: {payload!r}")
    query = dict(parse_qsl(parts.query))
    return ParsedPayload(
        scheme=parts.scheme,
        child_id=parts.path.strip("/"),
        token=query.get("token"),
        static=query.get("static") == "1",
        disabled=query.get("disabled") == "1",
    )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
ChangeListener = Callable[[Optional[QRCredential], QRCredential, str], None]


class QRCredentialManager:
    """Keep exactly one active credential per child.

    Every change is passed to ``on_change(previous, updated, action)`` before
    it becomes active; if the listener raises, nothing changes. Changes to the
    same child are serialised, and a handle that is no longer the active
    credential is rejected with :class:`StaleCredentialError`.
    """

    def __init__(
        self,
        *,
        token_generator: Optional[TokenGenerator] = None,
        scheme: str = DEFAULT_SCHEME,
        default_rotation_minutes: int = DEFAULT_ROTATION_MINUTES,
        on_change: Optional[ChangeListener] = None,
    ) -> None:
        if default_rotation_minutes <= 0:
            raise InvalidConfigurationError("Default rotation interval must be positive.")
        self._tokens: TokenGenerator = token_generator or SecureTokenGenerator()
        self._scheme = scheme
        self._default_rotation = default_rotation_minutes
        self._on_change = on_change
        self._active: Dict[str, QRCredential] = {}
        self._locks: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    @property
    def scheme(self) -> str:
        return self._scheme

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, child_id: str) -> QRCredential:
        try:
            return self._active[child_id]
        except KeyError as exc:
            raise CredentialNotFoundError(f"No QR credential issued for '{child_id}'.") from exc

    def has_credential(self, child_id: str) -> bool:
        return child_id in self._active

    def load(self, credential: QRCredential) -> None:
        """Register a credential read back from storage without notifying."""

        self._active[credential.child_id] = credential

    def derive_payload(self, credential: QRCredential) -> str:
        return derive_payload(credential, scheme=self._scheme)

    def is_token_valid(self, child_id: str, token: str) -> bool:
        credential = self._active.get(child_id)
        if credential is None or not credential.is_rotatable or not credential.current_token:
            return False
        return hmac.compare_digest(credential.current_token, token)

    def is_payload_valid(self, payload: str) -> bool:
        try:
            parsed = parse_payload(payload)
        except ValueError:
            return False
        if parsed.scheme != self._scheme or parsed.disabled:
            return False
        credential = self._active.get(parsed.child_id)
        if credential is None or not credential.enabled:
            return False
        if credential.mode is QRMode.STATIC:
            return parsed.static and parsed.token is None
        return parsed.token is not None and self.is_token_valid(parsed.child_id, parsed.token)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def issue(
        self,
        child_id: str,
        mode: QRMode,
        rotation_interval_minutes: Optional[int] = None,
        *,
        at: Optional[datetime] = None,
    ) -> QRCredential:
        """Create the child's credential, replacing any previous one."""

        interval = self._check_interval(mode, rotation_interval_minutes)
        with self._lock_for(child_id):
            previous = self._active.get(child_id)
            credential = QRCredential(
                child_id=child_id,
                mode=mode,
                enabled=True,
                rotation_interval_minutes=interval,
                current_token=self._fresh_token(previous) if mode is QRMode.DYNAMIC else None,
                version=previous.version + 1 if previous else 1,
                issued_at=at or datetime.utcnow(),
            )
            return self._commit(previous, credential, "issued")

    def rotate(self, credential: QRCredential, *, at: Optional[datetime] = None) -> QRCredential:
        """Replace the current token; the old one stops being valid at once."""

        if not credential.is_rotatable:
            raise NotRotatableError("Only enabled dynamic credentials can be rotated.")
        with self._lock_for(credential.child_id):
            current = self._require_current(credential)
            updated = replace(
                current,
                current_token=self._fresh_token(current),
                version=current.version + 1,
                issued_at=at or datetime.utcnow(),
            )
            return self._commit(current, updated, "rotated")

    def set_enabled(self, credential: QRCredential, enabled: bool) -> QRCredential:
        with self._lock_for(credential.child_id):
            current = self._require_current(credential)
            updated = replace(current, enabled=enabled, version=current.version + 1)
            return self._commit(current, updated, "enabled" if enabled else "disabled")

    def reissue(self, credential: QRCredential, *, at: Optional[datetime] = None) -> QRCredential:
        """Lost ID flow: mint a new token and re-enable the credential."""

        with self._lock_for(credential.child_id):
            current = self._require_current(credential)
            token = self._fresh_token(current) if current.mode is QRMode.DYNAMIC else None
            updated = replace(
                current,
                enabled=True,
                current_token=token,
                version=current.version + 1,
                issued_at=at or datetime.utcnow(),
            )
            return self._commit(current, updated, "reissued")

    def set_mode(
        self,
        credential: QRCredential,
        mode: QRMode,
        rotation_interval_minutes: Optional[int] = None,
    ) -> QRCredential:
        interval = self._check_interval(
            mode,
            rotation_interval_minutes if rotation_interval_minutes is not None else credential.rotation_interval_minutes,
        )
        with self._lock_for(credential.child_id):
            current = self._require_current(credential)
            if mode is current.mode and interval == current.rotation_interval_minutes:
                return current
            if mode is QRMode.DYNAMIC:
                token = current.current_token if current.mode is QRMode.DYNAMIC else self._fresh_token(current)
            else:
                token = None
            updated = replace(
                current,
                mode=mode,
                rotation_interval_minutes=interval,
                current_token=token,
                version=current.version + 1,
            )
            return self._commit(current, updated, "mode_changed")

    def set_rotation_interval(self, credential: QRCredential, minutes: int) -> QRCredential:
        if credential.mode is not QRMode.DYNAMIC:
            raise InvalidConfigurationError("Rotation intervals only apply to dynamic credentials.")
        return self.set_mode(credential, QRMode.DYNAMIC, minutes)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _check_interval(self, mode: QRMode, minutes: Optional[int]) -> Optional[int]:
        if mode is QRMode.STATIC:
            return None
        interval = self._default_rotation if minutes is None else minutes
        if interval <= 0:
            raise InvalidConfigurationError("Dynamic credentials need a positive rotation interval.")
        return interval

    def _lock_for(self, child_id: str) -> threading.Lock:
        # Fixed pool: children sharing a stripe are serialised together.
        return self._locks[hash(child_id) % len(self._locks)]

    def _require_current(self, credential: QRCredential) -> QRCredential:
        current = self._active.get(credential.child_id)
        if current is None:
            raise CredentialNotFoundError(f"No QR credential issued for '{credential.child_id}'.")
        if current.version != credential.version:
            raise StaleCredentialError("Credential has changed since it was read; reload it first.")
        return current

    def _fresh_token(self, previous: Optional[QRCredential]) -> str:
        stale = previous.current_token if previous else None
        token = self._tokens()
        while not token or token == stale:
            token = self._tokens()
        return token

    def _commit(self, previous: Optional[QRCredential], updated: QRCredential, action: str) -> QRCredential:
        if self._on_change is not None:
            self._on_change(previous, updated, action)
        self._active[updated.child_id] = updated
        return updated


__all__ = [
    "DEFAULT_ROTATION_MINUTES",
    "DEFAULT_SCHEME",
    "LOCK_STRIPES",
    "ParsedPayload",
    "QRCredentialManager",
    "SecureTokenGenerator",
    "TokenGenerator",
    "derive_payload",
    "parse_payload",
]
