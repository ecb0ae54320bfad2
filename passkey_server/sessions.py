"""Session establishment on top of Flask's signed cookie session."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from flask import session

from .models import User


class SessionSink(Protocol):
    def establish(self, user: User, logged_in_at: datetime) -> Any:
        ...


def session_payload(user: User, logged_in_at: datetime) -> Dict[str, Any]:
    return {
        "user": {"id": user.id, "email": user.email},
        "logged_in_at": logged_in_at.isoformat(),
    }


class FlaskSessionSink:
    """Stores ``{user, logged_in_at}`` in the request's Flask session."""

    def establish(self, user: User, logged_in_at: datetime) -> Dict[str, Any]:
        payload = session_payload(user, logged_in_at)
        session.clear()
        session.update(payload)
        return payload

    @staticmethod
    def current() -> Optional[Dict[str, Any]]:
        user = session.get("user")
        if not user:
            return None
        return {"user": dict(user), "logged_in_at": session.get("logged_in_at")}

    def active_email(self) -> Optional[str]:
        current = self.current()
        return current["user"].get("email") if current else None

    @staticmethod
    def clear() -> None:
        session.clear()
