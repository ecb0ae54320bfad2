from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from passkey_server.ceremonies import (
    AuthenticationCeremony,
    CeremonyContext,
    RegistrationCeremony,
)
from passkey_server.challenges import ChallengeCache
from passkey_server.config import RPSettings
from passkey_server.credentials import CredentialRegistry
from passkey_server.database import Database
from passkey_server.errors import AssertionFailedError, AttestationError
from passkey_server.sessions import session_payload
from passkey_server.users import UserDirectory
from passkey_server.verifier import VerifiedAuthentication, VerifiedRegistration


class FakeVerifier:
    """Verifier driven by the payload: ``{"id", "counter", "fail"}``."""

    def __init__(self) -> None:
        self.challenges: List[str] = []

    def verify_registration(self, challenge: str, payload: Dict[str, Any]) -> VerifiedRegistration:
        self.challenges.append(challenge)
        if payload.get("fail"):
            raise AttestationError("bad signature")
        return VerifiedRegistration(
            credential_id=payload["id"],
            public_key=f"pk-{payload['id']}",
            counter=payload.get("counter", 0),
            backed_up=payload.get("backed_up", False),
            transports=tuple(payload.get("transports", ("internal",))),
        )

    def verify_authentication(self, challenge, payload, candidates) -> VerifiedAuthentication:
        self.challenges.append(challenge)
        if payload.get("fail"):
            raise AssertionFailedError("bad signature")
        if payload["id"] not in {candidate.id for candidate in candidates}:
            raise AssertionFailedError("credential not allowed")
        return VerifiedAuthentication(credential_id=payload["id"], new_counter=payload["counter"])


class RecordingSessionSink:
    def __init__(self) -> None:
        self.sessions: List[Tuple[str, datetime]] = []

    def establish(self, user, logged_in_at: datetime) -> Dict[str, Any]:
        self.sessions.append((user.email, logged_in_at))
        return session_payload(user, logged_in_at)


@pytest.fixture
def temp_settings(tmp_path: Path) -> RPSettings:
    return RPSettings(
        database_url=f"sqlite:///{tmp_path / 'passkeys.db'}",
        rp_id="localhost",
        origin="http://localhost:3000",
        secret_key="test-secret",
    )


@pytest.fixture
def db(temp_settings):
    database = Database(temp_settings)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def challenge_cache() -> ChallengeCache:
    return ChallengeCache()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def session_sink() -> RecordingSessionSink:
    return RecordingSessionSink()


@pytest.fixture
def registration(verifier, session_sink) -> RegistrationCeremony:
    return RegistrationCeremony(verifier, session_sink)


@pytest.fixture
def authentication(verifier, session_sink) -> AuthenticationCeremony:
    return AuthenticationCeremony(verifier, session_sink)


@pytest.fixture
def ceremony_context(db, challenge_cache):
    @contextmanager
    def factory(active_email=None, users_factory=UserDirectory):
        with db.session() as session:
            yield CeremonyContext(
                users=users_factory(session),
                credentials=CredentialRegistry(session),
                challenges=challenge_cache,
                active_email=active_email,
                commit=session.commit,
            )

    return factory
