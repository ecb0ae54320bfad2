"""Pydantic based configuration for the passkey server."""

from __future__ import annotations

import secrets
from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DB_PATH = DATA_DIR / "passkeys.db"


class RPSettings(BaseSettings):
    """Runtime settings for the relying party."""

    model_config = SettingsConfigDict(env_prefix="PASSKEY_", env_file=".env", extra="ignore")

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string for users and credentials",
    )
    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="Passkey Server", description="Human readable RP name")
    origin: str = Field(
        default="http://localhost:3000",
        description="Expected origin for clientDataJSON validation",
    )
    supported_algorithms: List[int] = Field(
        default_factory=lambda: [-8, -7, -257],
        description="COSE algorithm identifiers the RP will accept",
    )
    require_user_verification: bool = Field(
        default=False,
        description="Reject ceremonies whose authenticator data lacks the UV flag",
    )
    challenge_store: Literal["memory", "database"] = Field(
        default="memory",
        description="Backend holding issued challenges until they are consumed",
    )
    challenge_ttl_seconds: int = Field(default=300, gt=0)
    ceremony_timeout_ms: int = Field(default=90_000, gt=0)
    secret_key: str = Field(
        default_factory=lambda: secrets.token_hex(32),
        description="Flask secret used to sign the session cookie",
    )
    log_level: str = Field(default="INFO")
