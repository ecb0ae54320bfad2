"""Structured ceremony log lines."""

from __future__ import annotations

import json
import logging
from typing import Optional

LOGGER = logging.getLogger("passkey_server")
SECURITY_LOGGER = logging.getLogger("passkey_server.security")

STAGE_LABELS = {
    "register": "Register",
    "authn": "Authenticate",
    "session": "Session",
}

EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.identity_conflict"): "Registration Identity Conflict",
    ("register", "verify.invalid_identity"): "Registration Identity Invalid",
    ("register", "verify.expired"): "Registration Challenge Expired",
    ("register", "verify.rejected"): "Registration Attestation Rejected",
    ("register", "user.create"): "Creating user record",
    ("register", "verify.duplicate"): "Credential Already Registered",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.unknown_user"): "Authentication Unknown User",
    ("authn", "verify.unknown_credential"): "Authentication Unknown Credential",
    ("authn", "verify.expired"): "Authentication Challenge Expired",
    ("authn", "verify.rejected"): "Authentication Assertion Rejected",
    ("authn", "verify.replay"): "Authentication Replay Detected",
    ("authn", "verify.orphan_credential"): "Credential Owner Missing",
    ("authn", "verify.success"): "Authentication Completed",
    ("session", "clear"): "Session Cleared",
}


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": req}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def log_event(
    stage: str,
    event: str,
    req: str,
    level: int = logging.INFO,
    logger: Optional[logging.Logger] = None,
    **fields: object,
) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True, default=str)
    message = f"[Passkey Server: {stage_label}]: {event_label}\n{payload}"
    (logger or LOGGER).log(level, message)
