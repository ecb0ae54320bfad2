"""Attestation and assertion verification.

The ceremonies only depend on the :class:`Verifier` protocol. The
:class:`WebAuthnVerifier` shipped here accepts ``none`` attestation and
delegates COSE key handling and signature checks to ``fido2``.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple, Type

import cbor2
from cryptography.exceptions import InvalidSignature
from fido2.cose import CoseKey

from .config import RPSettings
from .errors import AssertionFailedError, AttestationError, CeremonyError
from .models import Credential

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padding_ = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding_)


@dataclass(frozen=True)
class VerifiedRegistration:
    credential_id: str
    public_key: str
    counter: int
    backed_up: bool = False
    transports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VerifiedAuthentication:
    credential_id: str
    new_counter: int


class Verifier(Protocol):
    def verify_registration(
        self, challenge: str, payload: Mapping[str, Any]
    ) -> VerifiedRegistration:
        """Raise AttestationError when the attestation is not acceptable."""
        ...

    def verify_authentication(
        self,
        challenge: str,
        payload: Mapping[str, Any],
        candidates: Sequence[Credential],
    ) -> VerifiedAuthentication:
        """Raise AssertionFailedError when the assertion is not acceptable."""
        ...


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[Dict[int, Any]] = field(default=None)

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BS)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < 37:
        raise ValueError("Authenticator data too short")
    idx = 0
    rp_id_hash = data[idx : idx + 32]
    idx += 32
    flags = data[idx]
    idx += 1
    sign_count = int.from_bytes(data[idx : idx + 4], "big")
    idx += 4

    parsed = AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)
    if flags & FLAG_AT:
        if len(data) < idx + 18:
            raise ValueError("Malformed attested credential data")
        idx += 16  # AAGUID
        cred_len = int.from_bytes(data[idx : idx + 2], "big")
        idx += 2
        if len(data) < idx + cred_len:
            raise ValueError("Truncated credential id")
        parsed.credential_id = data[idx : idx + cred_len]
        idx += cred_len
        decoder = cbor2.CBORDecoder(BytesIO(data[idx:]))
        key = decoder.decode()
        if not isinstance(key, dict):
            raise ValueError("Credential public key is not a COSE map")
        parsed.credential_public_key = key
    return parsed


def parse_public_key(cose_key: Mapping[int, Any], allowed: Iterable[int]) -> CoseKey:
    """Return the fido2 key for ``cose_key`` if its algorithm is allowed."""
    alg = cose_key.get(3)
    if alg not in set(allowed) or alg not in set(CoseKey.supported_algorithms()):
        raise ValueError(f"Unsupported algorithm {alg!r}")
    return CoseKey.parse(cose_key)


class WebAuthnVerifier:
    def __init__(self, settings: RPSettings) -> None:
        self.rp_id = settings.rp_id
        self.origin = settings.origin
        self.supported_algorithms = set(settings.supported_algorithms)
        self.require_user_verification = settings.require_user_verification
        self._rp_id_hash = hashlib.sha256(settings.rp_id.encode("idna")).digest()

    def verify_registration(
        self, challenge: str, payload: Mapping[str, Any]
    ) -> VerifiedRegistration:
        response = _response(payload, AttestationError)
        client_data_raw = _b64_field(response, "clientDataJSON", AttestationError)
        self._check_client_data(client_data_raw, "webauthn.create", challenge, AttestationError)

        try:
            attestation = cbor2.loads(_b64_field(response, "attestationObject", AttestationError))
        except cbor2.CBORError as exc:
            raise AttestationError("Malformed attestationObject") from exc
        if not isinstance(attestation, dict):
            raise AttestationError("Malformed attestationObject")
        fmt = attestation.get("fmt")
        if fmt != "none":
            raise AttestationError(f"Unsupported attestation format {fmt!r}")
        auth_data_bytes = attestation.get("authData")
        if not isinstance(auth_data_bytes, (bytes, bytearray)):
            raise AttestationError("Invalid authenticator data")

        parsed = self._parse(bytes(auth_data_bytes), AttestationError)
        if parsed.credential_id is None or parsed.credential_public_key is None:
            raise AttestationError("Missing attested credential data")
        cose_key = parsed.credential_public_key
        try:
            parse_public_key(cose_key, self.supported_algorithms)
        except ValueError as exc:
            raise AttestationError(str(exc)) from exc

        credential_id = b64url_encode(parsed.credential_id)
        claimed_id = payload.get("id")
        if claimed_id is not None and claimed_id != credential_id:
            raise AttestationError("Credential id mismatch")

        transports = response.get("transports", payload.get("transports")) or []
        if not isinstance(transports, list) or not all(isinstance(t, str) for t in transports):
            raise AttestationError("transports must be a list of strings")
        return VerifiedRegistration(
            credential_id=credential_id,
            public_key=b64url_encode(cbor2.dumps(cose_key)),
            counter=parsed.sign_count,
            backed_up=parsed.backed_up,
            transports=tuple(transports),
        )

    def verify_authentication(
        self,
        challenge: str,
        payload: Mapping[str, Any],
        candidates: Sequence[Credential],
    ) -> VerifiedAuthentication:
        credential_id = asserted_credential_id(payload)
        credential = next((c for c in candidates if c.id == credential_id), None)
        if credential_id is None or credential is None:
            raise AssertionFailedError("Credential not allowed for this ceremony")

        response = _response(payload, AssertionFailedError)
        client_data_raw = _b64_field(response, "clientDataJSON", AssertionFailedError)
        self._check_client_data(client_data_raw, "webauthn.get", challenge, AssertionFailedError)
        auth_data_bytes = _b64_field(response, "authenticatorData", AssertionFailedError)
        parsed = self._parse(auth_data_bytes, AssertionFailedError)
        signature = _b64_field(response, "signature", AssertionFailedError)

        try:
            cose_key = parse_public_key(
                cbor2.loads(b64url_decode(credential.public_key)), self.supported_algorithms
            )
            cose_key.verify(auth_data_bytes + hashlib.sha256(client_data_raw).digest(), signature)
        except (InvalidSignature, ValueError, KeyError, TypeError, cbor2.CBORError) as exc:
            raise AssertionFailedError("Invalid signature") from exc

        return VerifiedAuthentication(credential_id=credential.id, new_counter=parsed.sign_count)

    # Helpers -----------------------------------------------------------
    def _check_client_data(
        self,
        raw: bytes,
        expected_type: str,
        challenge: str,
        error: Type[CeremonyError],
    ) -> None:
        try:
            client_data = json.loads(raw)
        except ValueError as exc:
            raise error("Malformed clientDataJSON") from exc
        if not isinstance(client_data, dict):
            raise error("Malformed clientDataJSON")
        if client_data.get("type") != expected_type:
            raise error("Unexpected client data type")
        if client_data.get("challenge") != challenge:
            raise error("Challenge mismatch")
        if client_data.get("origin") != self.origin:
            raise error("Origin mismatch")

    def _parse(self, data: bytes, error: Type[CeremonyError]) -> AuthenticatorData:
        try:
            parsed = parse_authenticator_data(data)
        except (ValueError, cbor2.CBORError) as exc:
            raise error(str(exc)) from exc
        if parsed.rp_id_hash != self._rp_id_hash:
            raise error("RP ID hash mismatch")
        if not parsed.user_present:
            raise error("User not present")
        if self.require_user_verification and not parsed.user_verified:
            raise error("User not verified")
        return parsed


def asserted_credential_id(payload: Mapping[str, Any]) -> Optional[str]:
    """Return the credential id a client asserted, or None if it is not a string."""
    for key in ("id", "rawId"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _response(payload: Mapping[str, Any], error: Type[CeremonyError]) -> Mapping[str, Any]:
    response = payload.get("response")
    if not isinstance(response, Mapping):
        raise error("Missing authenticator response")
    return response


def _b64_field(response: Mapping[str, Any], name: str, error: Type[CeremonyError]) -> bytes:
    value = response.get(name)
    if not isinstance(value, str) or not value:
        raise error(f"Missing {name}")
    try:
        return b64url_decode(value)
    except ValueError as exc:
        raise error(f"Invalid base64 in {name}") from exc
