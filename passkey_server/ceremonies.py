"""Registration and authentication ceremonies.

A ceremony receives its long-lived collaborators (verifier, session sink)
when it is constructed and everything request scoped through a
:class:`CeremonyContext`. Steps run strictly in order: nothing is written
before verification succeeds and no session exists before the unit of work
has been committed.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .challenges import ChallengeStore, new_attempt_id, new_challenge
from .credentials import CredentialRegistry
from .errors import (
    AssertionFailedError,
    AttestationError,
    ChallengeExpired,
    ConflictError,
    CredentialNotFound,
    IdentityConflict,
    ReplayDetected,
    UserNotFound,
    ValidationError,
)
from .events import SECURITY_LOGGER, log_event
from .models import Credential, User
from .sessions import SessionSink
from .users import UserDirectory
from .verifier import Verifier, asserted_credential_id

# Authenticators without a signature counter report zero on every use.
COUNTER_UNSUPPORTED = 0

DEFAULT_CHALLENGE_TTL = 300.0

_EMAIL = TypeAdapter(EmailStr)


def counter_is_admissible(stored: int, reported: int) -> bool:
    if stored == COUNTER_UNSUPPORTED and reported == COUNTER_UNSUPPORTED:
        return True
    return reported > stored


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _no_commit() -> None:
    return None


@dataclass
class CeremonyContext:
    users: UserDirectory
    credentials: CredentialRegistry
    challenges: ChallengeStore
    active_email: Optional[str] = None
    request_id: str = field(default_factory=lambda: secrets.token_hex(4))
    commit: Callable[[], None] = _no_commit


@dataclass
class CeremonyStart:
    attempt_id: str
    challenge: str
    credentials: List[Credential]


@dataclass
class CeremonyResult:
    user: User
    credential: Credential
    session: Any


class _Ceremony:
    stage = ""

    def __init__(
        self,
        verifier: Verifier,
        session_sink: SessionSink,
        challenge_ttl: float = DEFAULT_CHALLENGE_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.verifier = verifier
        self.session_sink = session_sink
        self.challenge_ttl = challenge_ttl
        self._clock = clock

    def _issue(self, ctx: CeremonyContext, credentials: List[Credential]) -> CeremonyStart:
        start = CeremonyStart(
            attempt_id=new_attempt_id(),
            challenge=new_challenge(),
            credentials=credentials,
        )
        ctx.challenges.issue(start.attempt_id, start.challenge, self.challenge_ttl)
        return start

    def _consume(self, ctx: CeremonyContext, attempt_id: str) -> str:
        try:
            return ctx.challenges.consume(attempt_id)
        except ChallengeExpired as exc:
            log_event(
                self.stage,
                "verify.expired",
                ctx.request_id,
                level=logging.WARNING,
                attempt_id=attempt_id,
                reason=exc.reason,
            )
            raise

    def _establish(self, ctx: CeremonyContext, user: User) -> Any:
        ctx.commit()
        return self.session_sink.establish(user, self._clock())


class RegistrationCeremony(_Ceremony):
    """Links a freshly attested passkey to the user owning ``email``."""

    stage = "register"

    def begin(self, ctx: CeremonyContext, email: str) -> CeremonyStart:
        log_event("register", "options.start", ctx.request_id, user=email)
        self._validate_identity(ctx, email)
        user = ctx.users.find_by_email(email)
        existing = ctx.credentials.find_all_by_user_id(user.id) if user else []
        start = self._issue(ctx, existing)
        log_event(
            "register",
            "options.success",
            ctx.request_id,
            user=email,
            attempt_id=start.attempt_id,
            credential_count=len(existing),
        )
        return start

    def complete(
        self,
        ctx: CeremonyContext,
        email: str,
        attempt_id: str,
        payload: Mapping[str, Any],
    ) -> CeremonyResult:
        log_event("register", "verify.start", ctx.request_id, user=email, attempt_id=attempt_id)
        self._validate_identity(ctx, email)

        challenge = self._consume(ctx, attempt_id)
        try:
            verified = self.verifier.verify_registration(challenge, payload)
        except AttestationError as exc:
            log_event(
                "register",
                "verify.rejected",
                ctx.request_id,
                level=logging.WARNING,
                user=email,
                reason=exc.reason,
            )
            raise

        user = ctx.users.find_by_email(email)
        if user is None:
            user = ctx.users.create(email)
            log_event("register", "user.create", ctx.request_id, user=email, user_id=user.id)

        try:
            credential = ctx.credentials.save(
                user.id,
                verified.credential_id,
                verified.public_key,
                verified.counter,
                verified.backed_up,
                verified.transports,
            )
        except ConflictError:
            log_event(
                "register",
                "verify.duplicate",
                ctx.request_id,
                level=logging.WARNING,
                user=email,
                credential_id=verified.credential_id,
            )
            raise

        handle = self._establish(ctx, user)
        log_event(
            "register",
            "verify.success",
            ctx.request_id,
            user=email,
            user_id=user.id,
            credential_id=credential.id,
            counter=credential.counter,
            backed_up=credential.backed_up,
            transports=list(credential.transports),
        )
        return CeremonyResult(user=user, credential=credential, session=handle)

    def _validate_identity(self, ctx: CeremonyContext, email: str) -> None:
        if ctx.active_email and ctx.active_email != email:
            log_event(
                "register",
                "verify.identity_conflict",
                ctx.request_id,
                level=logging.WARNING,
                user=email,
                session_user=ctx.active_email,
            )
            raise IdentityConflict(f"session belongs to {ctx.active_email}")
        try:
            # Validation only: the stored identity keeps the caller's exact spelling.
            _EMAIL.validate_python(email)
        except PydanticValidationError as exc:
            log_event(
                "register",
                "verify.invalid_identity",
                ctx.request_id,
                level=logging.WARNING,
                user=str(email),
            )
            raise ValidationError(f"invalid email {email!r}") from exc


class AuthenticationCeremony(_Ceremony):
    """Signs a user in with a previously registered passkey."""

    stage = "authn"

    def begin(self, ctx: CeremonyContext, email: Optional[str] = None) -> CeremonyStart:
        log_event("authn", "options.start", ctx.request_id, user=email)
        allowed = self._allowed_credentials(ctx, email) if email else []
        start = self._issue(ctx, allowed)
        log_event(
            "authn",
            "options.success",
            ctx.request_id,
            user=email,
            attempt_id=start.attempt_id,
            credential_count=len(allowed),
        )
        return start

    def complete(
        self,
        ctx: CeremonyContext,
        attempt_id: str,
        payload: Mapping[str, Any],
        email: Optional[str] = None,
    ) -> CeremonyResult:
        log_event("authn", "verify.start", ctx.request_id, user=email, attempt_id=attempt_id)
        allowed = self._allowed_credentials(ctx, email) if email else None

        credential_id = asserted_credential_id(payload)
        credential = ctx.credentials.find_by_id(credential_id) if credential_id else None
        if credential is None:
            log_event(
                "authn",
                "verify.unknown_credential",
                ctx.request_id,
                level=logging.WARNING,
                credential_id=credential_id,
            )
            raise CredentialNotFound(f"unknown credential {credential_id!r}")

        challenge = self._consume(ctx, attempt_id)
        candidates = allowed if allowed is not None else [credential]
        try:
            verified = self.verifier.verify_authentication(challenge, payload, candidates)
            if verified.credential_id != credential.id:
                raise AssertionFailedError("verifier matched a different credential")
        except AssertionFailedError as exc:
            log_event(
                "authn",
                "verify.rejected",
                ctx.request_id,
                level=logging.WARNING,
                credential_id=credential.id,
                reason=exc.reason,
            )
            raise

        stored_counter = credential.counter
        if not counter_is_admissible(stored_counter, verified.new_counter):
            fields = dict(
                credential_id=credential.id,
                user_id=credential.user_id,
                stored_counter=stored_counter,
                reported_counter=verified.new_counter,
            )
            log_event("authn", "verify.replay", ctx.request_id, level=logging.WARNING, **fields)
            log_event(
                "authn",
                "verify.replay",
                ctx.request_id,
                level=logging.WARNING,
                logger=SECURITY_LOGGER,
                **fields,
            )
            raise ReplayDetected(
                f"counter {verified.new_counter} not above stored {stored_counter}"
            )
        ctx.credentials.update_counter(credential.id, verified.new_counter)

        user = ctx.users.find_by_id(credential.user_id)
        if user is None:
            log_event(
                "authn",
                "verify.orphan_credential",
                ctx.request_id,
                level=logging.ERROR,
                credential_id=credential.id,
                user_id=credential.user_id,
            )
            raise UserNotFound(f"credential {credential.id} has no owner")

        handle = self._establish(ctx, user)
        log_event(
            "authn",
            "verify.success",
            ctx.request_id,
            user=user.email,
            user_id=user.id,
            credential_id=credential.id,
            counter=verified.new_counter,
        )
        return CeremonyResult(user=user, credential=credential, session=handle)

    def _allowed_credentials(self, ctx: CeremonyContext, email: str) -> List[Credential]:
        user = ctx.users.find_by_email(email)
        credentials = ctx.credentials.find_all_by_user_id(user.id) if user else []
        if not credentials:
            log_event(
                "authn",
                "verify.unknown_user",
                ctx.request_id,
                level=logging.WARNING,
                user=email,
                known=user is not None,
            )
            raise UserNotFound(f"no passkeys for {email}")
        return credentials
