"""Custom exception hierarchy for the EduPocket package."""

from __future__ import annotations


class EduPocketError(Exception):
    """Base class for all EduPocket specific errors."""


class GuardNotSatisfiedError(EduPocketError):
    """Raised by strict advance helpers when the current step cannot progress."""


class WizardClosedError(EduPocketError):
    """Raised when an event is sent to a completed or cancelled linking wizard."""


class InvalidConfigurationError(EduPocketError):
    """Raised when a credential mode and rotation interval do not agree."""


class NotRotatableError(EduPocketError):
    """Raised when a rotation is requested for a static or disabled credential."""


class StaleCredentialError(NotRotatableError):
    """Raised when a credential handle no longer carries the active token."""


class SessionNotFoundError(EduPocketError):
    """Raised when a linking session lookup fails."""


class ChildNotFoundError(EduPocketError):
    """Raised when a child lookup fails."""


class CredentialNotFoundError(EduPocketError):
    """Raised when no QR credential has been issued for a child."""


class StoreError(EduPocketError):
    """Raised when the persistence backend cannot complete a write or read."""
