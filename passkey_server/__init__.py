"""Passkey server package exposing the Flask app factory and ceremonies."""

from .app import create_app
from .ceremonies import AuthenticationCeremony, CeremonyContext, RegistrationCeremony
from .config import RPSettings

__all__ = [
    "create_app",
    "RPSettings",
    "CeremonyContext",
    "RegistrationCeremony",
    "AuthenticationCeremony",
]
