"""Error taxonomy shared by the store, the challenge binder and the ceremonies."""
from __future__ import annotations

from typing import Optional

__all__ = [
    "AlreadyExists",
    "ChallengeExpired",
    "CounterReplay",
    "DuplicateCredential",
    "DuplicateIdentity",
    "InvalidSession",
    "Mismatch",
    "NoCredentials",
    "NotAuthenticated",
    "PasskeyError",
    "UnknownCredential",
    "UnknownIdentity",
    "VerificationFailed",
]


class PasskeyError(Exception):
    """Base class for every failure reported to a ceremony caller.

    ``message`` is safe to show to the client; ``status_code`` is the HTTP
    status the routes answer with.
    """

    default_message = "Invalid request"
    status_code = 400

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code


class UnknownIdentity(PasskeyError):
    default_message = "No account found with this email. Please create an account first."


class AlreadyExists(PasskeyError):
    default_message = "Account already exists"


class DuplicateIdentity(AlreadyExists):
    default_message = "Email already registered. Please use the login page instead."


class DuplicateCredential(AlreadyExists):
    default_message = "Credential is already registered"


class NoCredentials(PasskeyError):
    default_message = "No passkeys found for this account. Please try registering again."


class UnknownCredential(PasskeyError):
    default_message = "Authenticator not found"


class InvalidSession(PasskeyError):
    default_message = "Invalid session"


class Mismatch(PasskeyError):
    """Raised by the binder when a challenge cannot be consumed."""

    default_message = "No matching challenge for this session"


class ChallengeExpired(Mismatch):
    default_message = "Challenge expired"


class VerificationFailed(PasskeyError):
    default_message = "Verification failed"


class CounterReplay(VerificationFailed):
    """Signature counter did not advance; the credential may have been cloned."""


class NotAuthenticated(PasskeyError):
    default_message = "Not authenticated"
    status_code = 401
