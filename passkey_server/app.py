"""Flask application exposing the passkey ceremony endpoints."""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from typing import Iterator, List, Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from pydantic import BaseModel
from pydantic import ValidationError as PayloadError

from .ceremonies import (
    AuthenticationCeremony,
    CeremonyContext,
    CeremonyStart,
    RegistrationCeremony,
)
from .challenges import ChallengeCache, ChallengeStore, SqlChallengeStore
from .config import RPSettings
from .credentials import CredentialRegistry
from .database import Database
from .errors import CeremonyError
from .events import log_event
from .models import Credential
from .schemas import (
    AuthenticateOptionsRequest,
    AuthenticateOptionsResponse,
    AuthenticateVerifyRequest,
    CeremonyOptions,
    CredentialDescriptor,
    RegisterOptionsRequest,
    RegisterOptionsResponse,
    RegisterVerifyRequest,
    RPResponse,
    SessionResponse,
)
from .sessions import FlaskSessionSink
from .users import UserDirectory
from .verifier import Verifier, WebAuthnVerifier, b64url_encode

LOGGER = logging.getLogger(__name__)


def _descriptors(credentials: List[Credential]) -> List[CredentialDescriptor]:
    return [
        CredentialDescriptor(id=cred.id, transports=list(cred.transports or []))
        for cred in credentials
    ]


def _options_response(start: CeremonyStart, options: BaseModel) -> Response:
    body = CeremonyOptions(attempt_id=start.attempt_id, options=options.model_dump())
    return jsonify(RPResponse(success=True, data=body.model_dump()).model_dump())


def create_app(
    settings: Optional[RPSettings] = None,
    verifier: Optional[Verifier] = None,
    challenge_store: Optional[ChallengeStore] = None,
) -> Flask:
    settings = settings or RPSettings()
    db = Database(settings)
    db.create_all()
    if challenge_store is None:
        if settings.challenge_store == "database":
            challenge_store = SqlChallengeStore(db)
        else:
            challenge_store = ChallengeCache()
    verifier = verifier or WebAuthnVerifier(settings)
    sessions = FlaskSessionSink()
    registration = RegistrationCeremony(verifier, sessions, settings.challenge_ttl_seconds)
    authentication = AuthenticationCeremony(verifier, sessions, settings.challenge_ttl_seconds)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config.update(SESSION_COOKIE_HTTPONLY=True, SESSION_COOKIE_SAMESITE="Lax")
    app.extensions["passkey_server"] = {
        "settings": settings,
        "db": db,
        "challenges": challenge_store,
    }
    CORS(app, supports_credentials=True, origins=[settings.origin])

    @contextmanager
    def ceremony_context() -> Iterator[CeremonyContext]:
        with db.session() as session:
            yield CeremonyContext(
                users=UserDirectory(session),
                credentials=CredentialRegistry(session),
                challenges=challenge_store,
                active_email=sessions.active_email(),
                request_id=secrets.token_hex(4),
                commit=session.commit,
            )

    @app.post("/register/options")
    def register_options():
        payload = RegisterOptionsRequest.model_validate(request.get_json(silent=True) or {})
        with ceremony_context() as ctx:
            start = registration.begin(ctx, payload.email)
        options = RegisterOptionsResponse(
            challenge=start.challenge,
            rp={"id": settings.rp_id, "name": settings.rp_name},
            user={
                "id": b64url_encode(payload.email.encode("utf-8")),
                "name": payload.email,
                "displayName": payload.email,
            },
            pubKeyCredParams=[
                {"type": "public-key", "alg": alg} for alg in settings.supported_algorithms
            ],
            timeout=settings.ceremony_timeout_ms,
            authenticatorSelection={
                "residentKey": "preferred",
                "requireResidentKey": False,
                "userVerification": "required"
                if settings.require_user_verification
                else "preferred",
            },
            excludeCredentials=_descriptors(start.credentials),
        )
        return _options_response(start, options)

    @app.post("/register/verify")
    def register_verify():
        payload = RegisterVerifyRequest.model_validate(request.get_json(silent=True) or {})
        with ceremony_context() as ctx:
            result = registration.complete(
                ctx, payload.email, payload.attempt_id, payload.credential
            )
        return jsonify(RPResponse(success=True, data=result.session).model_dump())

    @app.post("/authenticate/options")
    def authenticate_options():
        payload = AuthenticateOptionsRequest.model_validate(request.get_json(silent=True) or {})
        with ceremony_context() as ctx:
            start = authentication.begin(ctx, payload.email)
        options = AuthenticateOptionsResponse(
            challenge=start.challenge,
            rpId=settings.rp_id,
            allowCredentials=_descriptors(start.credentials),
            timeout=settings.ceremony_timeout_ms,
            userVerification="required" if settings.require_user_verification else "preferred",
        )
        return _options_response(start, options)

    @app.post("/authenticate/verify")
    def authenticate_verify():
        payload = AuthenticateVerifyRequest.model_validate(request.get_json(silent=True) or {})
        with ceremony_context() as ctx:
            result = authentication.complete(
                ctx, payload.attempt_id, payload.credential, email=payload.email
            )
        return jsonify(RPResponse(success=True, data=result.session).model_dump())

    @app.get("/session")
    def current_session():
        current = sessions.current()
        if current is None:
            return jsonify(RPResponse(success=False, code="no_session").model_dump()), 401
        data = SessionResponse.model_validate(current).model_dump()
        return jsonify(RPResponse(success=True, data=data).model_dump())

    @app.delete("/session")
    def clear_session():
        current = sessions.current()
        sessions.clear()
        log_event(
            "session",
            "clear",
            secrets.token_hex(4),
            user=current["user"].get("email") if current else None,
        )
        return jsonify(RPResponse(success=True).model_dump())

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(error: CeremonyError):
        body = RPResponse(success=False, code=error.code, message=error.message)
        return jsonify(body.model_dump()), error.status_code

    @app.errorhandler(PayloadError)
    def handle_invalid_payload(error: PayloadError):
        LOGGER.info("Rejected request payload: %s", error.errors(include_url=False))
        body = RPResponse(success=False, code="invalid_request", message="Invalid request")
        return jsonify(body.model_dump()), 400

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
