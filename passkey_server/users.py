"""User directory keyed by email."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError
from .models import User


class UserDirectory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email))

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def create(self, email: str) -> User:
        if self.find_by_email(email) is not None:
            raise ConflictError(f"user {email} already exists")
        user = User(email=email)
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"user {email} already exists") from exc
        return user
