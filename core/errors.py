"""
core/errors.py -- Exception hierarchy for Keyward.

Every failure the core surfaces carries a machine-distinguishable kind so
callers (the HTTP layer, the CLI, tests) can branch on it without parsing
messages. Kinds are transport-agnostic: no status codes live here. The
routing layer maps ErrorKind -> HTTP status on its own side of the seam.

Hierarchy:
    KeywardError
    ├── UnauthenticatedError
    │   └── MalformedTokenError
    ├── ForbiddenError
    ├── InvalidInputError
    ├── NotFoundError
    ├── ConflictError
    ├── ExpiredError
    │   └── TokenExpiredError
    ├── AlreadyVerifiedError
    ├── AttemptsExhaustedError
    ├── IncorrectCodeError
    ├── TransientError
    └── FatalError

Layer rule: core/ is the kernel. No imports from auth/ or notify/.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    unauthenticated = "unauthenticated"
    forbidden = "forbidden"
    invalid_input = "invalid_input"
    not_found = "not_found"
    conflict = "conflict"
    expired = "expired"
    already_verified = "already_verified"
    attempts_exhausted = "attempts_exhausted"
    incorrect = "incorrect"
    transient = "transient"
    fatal = "fatal"


class KeywardError(Exception):
    """Base exception for all Keyward errors.

    Attributes:
        message: Human-readable description, safe to show to the caller.
        kind:    ErrorKind the caller branches on.
        details: Extra context (role names, ids). Never secrets.
    """

    kind: ErrorKind = ErrorKind.fatal
    default_message: str = "Keyward error."

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.transient

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for logging/serialization."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value!r}, message={self.message!r})"


class UnauthenticatedError(KeywardError):
    kind = ErrorKind.unauthenticated
    default_message = "Authentication required."


class MalformedTokenError(UnauthenticatedError):
    """Token failed structure, signature, or claims checks."""

    default_message = "Invalid token."


class ForbiddenError(KeywardError):
    kind = ErrorKind.forbidden
    default_message = "Insufficient permissions."


class InvalidInputError(KeywardError):
    kind = ErrorKind.invalid_input
    default_message = "Invalid input."


class NotFoundError(KeywardError):
    kind = ErrorKind.not_found
    default_message = "Not found."


class ConflictError(KeywardError):
    """Uniqueness violation (username, email, phone, token)."""

    kind = ErrorKind.conflict
    default_message = "Username or email already exists."


class ExpiredError(KeywardError):
    kind = ErrorKind.expired
    default_message = "Expired."


class TokenExpiredError(ExpiredError):
    default_message = "Token has expired."


class AlreadyVerifiedError(KeywardError):
    """A single-use artifact was already consumed."""

    kind = ErrorKind.already_verified
    default_message = "Already verified."


class AttemptsExhaustedError(KeywardError):
    kind = ErrorKind.attempts_exhausted
    default_message = "Too many failed attempts. Request a new code."


class IncorrectCodeError(KeywardError):
    """Wrong verification code. One attempt has been consumed."""

    kind = ErrorKind.incorrect
    default_message = "Incorrect verification code."


class TransientError(KeywardError):
    """Store or notification timeout. Safe for the caller to retry."""

    kind = ErrorKind.transient
    default_message = "Temporary failure. Try again."


class FatalError(KeywardError):
    """Cryptographic or configuration failure. Not retryable."""

    kind = ErrorKind.fatal
    default_message = "Unrecoverable internal error."
