"""Failures raised by the passkey ceremonies.

Each error keeps an internal ``reason`` that is only ever logged, next to the
``code``/``message`` pair exposed to the browser. Account-related failures on
the authentication path share a single external code and message so that a
caller cannot tell an unknown email from a wrong or replayed credential.
"""

from __future__ import annotations

from typing import Optional


class CeremonyError(Exception):
    code = "ceremony_failed"
    message = "Request failed"
    status_code = 400

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or self.message
        super().__init__(self.reason)


class ValidationError(CeremonyError):
    code = "invalid_identity"
    message = "A valid email address is required"


class IdentityConflict(CeremonyError):
    code = "identity_conflict"
    message = "Email not matching current session"


class ConflictError(CeremonyError):
    code = "conflict"
    message = "Already registered"
    status_code = 409


class AttestationError(CeremonyError):
    code = "registration_failed"
    message = "Registration failed"


class ChallengeExpired(CeremonyError):
    code = "challenge_expired"
    message = "Challenge expired"


class AuthenticationFailed(CeremonyError):
    """Base for every failure reported to the caller as a plain auth failure."""

    code = "authentication_failed"
    message = "Authentication failed"
    status_code = 401


class AssertionFailedError(AuthenticationFailed):
    pass


class ReplayDetected(AuthenticationFailed):
    pass


class UserNotFound(AuthenticationFailed):
    pass


class CredentialNotFound(AuthenticationFailed):
    pass
