"""Pydantic schemas for request/response payloads."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RegisterOptionsRequest(BaseModel):
    email: str


class RegisterVerifyRequest(BaseModel):
    email: str
    attempt_id: str = Field(min_length=1)
    credential: dict


class AuthenticateOptionsRequest(BaseModel):
    email: Optional[str] = None


class AuthenticateVerifyRequest(BaseModel):
    email: Optional[str] = None
    attempt_id: str = Field(min_length=1)
    credential: dict


class RPResponse(BaseModel):
    success: bool = True
    code: Optional[str] = None
    message: Optional[str] = None
    data: Optional[dict] = None


class CredentialDescriptor(BaseModel):
    id: str
    type: Literal["public-key"] = "public-key"
    transports: List[str] = Field(default_factory=list)


class RegisterOptionsResponse(BaseModel):
    challenge: str
    rp: dict
    user: dict
    pubKeyCredParams: List[dict]
    timeout: int
    attestation: Literal["none"] = "none"
    authenticatorSelection: dict
    excludeCredentials: List[CredentialDescriptor] = Field(default_factory=list)


class AuthenticateOptionsResponse(BaseModel):
    challenge: str
    rpId: str
    allowCredentials: List[CredentialDescriptor] = Field(default_factory=list)
    timeout: int
    userVerification: Literal["required", "preferred", "discouraged"] = "preferred"


class CeremonyOptions(BaseModel):
    attempt_id: str
    options: dict


class SessionUser(BaseModel):
    id: int
    email: str


class SessionResponse(BaseModel):
    user: SessionUser
    logged_in_at: Optional[str] = None
