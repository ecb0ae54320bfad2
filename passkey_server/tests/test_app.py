from __future__ import annotations

import logging

import pytest
from sqlalchemy import select

from passkey_server import create_app
from passkey_server.models import Credential, User
from soft_authenticator import SoftAuthenticator

ALICE = "alice@example.com"


@pytest.fixture
def app(temp_settings):
    return create_app(temp_settings)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def soft_authenticator() -> SoftAuthenticator:
    return SoftAuthenticator(rp_id="localhost", origin="http://localhost:3000")


def start(client, path: str, email=None) -> dict:
    body = {"email": email} if email is not None else {}
    response = client.post(path, json=body)
    assert response.status_code == 200, response.get_json()
    return response.get_json()["data"]


def register(client, authenticator, email=ALICE):
    data = start(client, "/register/options", email)
    credential = authenticator.create(data["options"]["challenge"])
    response = client.post(
        "/register/verify",
        json={"email": email, "attempt_id": data["attempt_id"], "credential": credential},
    )
    return credential, response


def login(client, authenticator, credential_id, email=None, sign_count=None):
    data = start(client, "/authenticate/options", email)
    assertion = authenticator.get(credential_id, data["options"]["challenge"], sign_count=sign_count)
    return client.post(
        "/authenticate/verify",
        json={"email": email, "attempt_id": data["attempt_id"], "credential": assertion},
    )


def stored(app, credential_id: str) -> Credential:
    db = app.extensions["passkey_server"]["db"]
    with db.session() as session:
        return session.scalar(select(Credential).where(Credential.id == credential_id))


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_register_options_shape(client):
    data = start(client, "/register/options", ALICE)
    options = data["options"]

    assert data["attempt_id"]
    assert options["rp"] == {"id": "localhost", "name": "Passkey Server"}
    assert options["user"]["name"] == ALICE
    assert [p["alg"] for p in options["pubKeyCredParams"]] == [-8, -7, -257]
    assert options["excludeCredentials"] == []


def test_end_to_end_register_login_replay(app, client, soft_authenticator):
    credential, response = register(client, soft_authenticator)
    assert response.status_code == 200
    assert response.get_json()["data"]["user"]["email"] == ALICE

    session = client.get("/session").get_json()
    assert session["data"]["user"]["email"] == ALICE
    assert client.delete("/session").status_code == 200
    assert client.get("/session").status_code == 401

    response = login(client, soft_authenticator, credential["id"])
    assert response.status_code == 200
    assert response.get_json()["data"]["user"]["email"] == ALICE
    assert stored(app, credential["id"]).counter == 1

    replay = login(client, soft_authenticator, credential["id"], sign_count=1)
    assert replay.status_code == 401
    assert replay.get_json()["code"] == "authentication_failed"
    assert stored(app, credential["id"]).counter == 1


def test_login_with_claimed_identity_lists_allowed_credentials(client, soft_authenticator):
    credential, _ = register(client, soft_authenticator)
    client.delete("/session")

    data = start(client, "/authenticate/options", ALICE)
    assert [c["id"] for c in data["options"]["allowCredentials"]] == [credential["id"]]
    assert data["options"]["allowCredentials"][0]["transports"] == ["hybrid", "internal"]

    response = login(client, soft_authenticator, credential["id"], email=ALICE)
    assert response.status_code == 200


def test_second_passkey_excluded_and_linked(app, client, soft_authenticator):
    first, _ = register(client, soft_authenticator)

    data = start(client, "/register/options", ALICE)
    assert [c["id"] for c in data["options"]["excludeCredentials"]] == [first["id"]]

    second, response = register(client, soft_authenticator)
    assert response.status_code == 200
    assert stored(app, first["id"]).user_id == stored(app, second["id"]).user_id


def test_register_rejects_other_identity_while_signed_in(app, client, soft_authenticator):
    register(client, soft_authenticator)

    response = client.post("/register/options", json={"email": "other@example.com"})
    assert response.status_code == 400
    assert response.get_json()["code"] == "identity_conflict"

    db = app.extensions["passkey_server"]["db"]
    with db.session() as session:
        assert session.scalar(select(User).where(User.email == "other@example.com")) is None


def test_register_rejects_invalid_email(client):
    response = client.post("/register/options", json={"email": "nope"})

    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_identity"


def test_reused_attempt_id_expires(client, soft_authenticator):
    data = start(client, "/register/options", ALICE)
    credential = soft_authenticator.create(data["options"]["challenge"])
    body = {"email": ALICE, "attempt_id": data["attempt_id"], "credential": credential}

    assert client.post("/register/verify", json=body).status_code == 200
    client.delete("/session")
    response = client.post("/register/verify", json=body)

    assert response.status_code == 400
    assert response.get_json()["code"] == "challenge_expired"


def test_tampered_attestation_is_generic(client, soft_authenticator):
    data = start(client, "/register/options", ALICE)
    credential = soft_authenticator.create("not-the-issued-challenge")
    response = client.post(
        "/register/verify",
        json={"email": ALICE, "attempt_id": data["attempt_id"], "credential": credential},
    )

    assert response.status_code == 400
    assert response.get_json() == {
        "success": False,
        "code": "registration_failed",
        "message": "Registration failed",
        "data": None,
    }


def test_enumeration_resistant_failures(client, soft_authenticator):
    credential, _ = register(client, soft_authenticator)
    client.delete("/session")

    unknown_user = client.post("/authenticate/options", json={"email": "ghost@example.com"})

    data = start(client, "/authenticate/options", ALICE)
    stranger = SoftAuthenticator()
    foreign = stranger.create("unused")
    wrong_credential = client.post(
        "/authenticate/verify",
        json={
            "email": ALICE,
            "attempt_id": data["attempt_id"],
            "credential": stranger.get(foreign["id"], data["options"]["challenge"]),
        },
    )

    assert unknown_user.status_code == wrong_credential.status_code == 401
    assert unknown_user.get_json() == wrong_credential.get_json()


def test_invalid_payload(client):
    response = client.post("/register/verify", json={"email": ALICE})

    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_request"


def test_database_challenge_store(temp_settings, soft_authenticator):
    settings = temp_settings.model_copy(update={"challenge_store": "database"})
    client = create_app(settings).test_client()

    credential, response = register(client, soft_authenticator)
    assert response.status_code == 200
    assert login(client, soft_authenticator, credential["id"]).status_code == 200


@pytest.mark.parametrize("credential_id", [{"x": 1}, ["abc"], 42])
def test_non_string_credential_id_fails_authentication(client, credential_id):
    data = start(client, "/authenticate/options")
    response = client.post(
        "/authenticate/verify",
        json={"attempt_id": data["attempt_id"], "credential": {"id": credential_id}},
    )

    assert response.status_code == 401
    assert response.get_json()["code"] == "authentication_failed"


def test_string_transports_rejected_at_registration(app, client, soft_authenticator):
    data = start(client, "/register/options", ALICE)
    credential = soft_authenticator.create(data["options"]["challenge"])
    credential["response"]["transports"] = "usb"
    response = client.post(
        "/register/verify",
        json={"email": ALICE, "attempt_id": data["attempt_id"], "credential": credential},
    )

    assert response.status_code == 400
    assert response.get_json()["code"] == "registration_failed"
    assert stored(app, credential["id"]) is None


def test_malformed_json_is_invalid_request(client):
    response = client.post(
        "/authenticate/verify", data="{not json", content_type="application/json"
    )

    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_request"


def test_create_app_leaves_logging_alone(temp_settings, monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    create_app(temp_settings)

    assert calls == []
