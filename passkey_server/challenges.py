"""Single-use challenge storage."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Callable, Dict, Protocol, Tuple

from sqlalchemy import delete, select

from .database import Database
from .errors import ChallengeExpired
from .models import Challenge

CHALLENGE_SIZE = 32


def new_challenge(size: int = CHALLENGE_SIZE) -> str:
    return secrets.token_urlsafe(size)


def new_attempt_id() -> str:
    return secrets.token_urlsafe(16)


class ChallengeStore(Protocol):
    def issue(self, attempt_id: str, value: str, ttl: float) -> None:
        ...

    def consume(self, attempt_id: str) -> str:
        """Return the challenge and forget it; raise ChallengeExpired if there is none."""
        ...


class ChallengeCache:
    """In-process challenge store shared by every worker thread of the app."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._challenges: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def issue(self, attempt_id: str, value: str, ttl: float) -> None:
        now = self._clock()
        with self._lock:
            self._purge(now)
            self._challenges[attempt_id] = (value, now + ttl)

    def consume(self, attempt_id: str) -> str:
        with self._lock:
            entry = self._challenges.pop(attempt_id, None)
        if entry is None:
            raise ChallengeExpired(f"no challenge for attempt {attempt_id}")
        value, expires_at = entry
        if self._clock() >= expires_at:
            raise ChallengeExpired(f"challenge for attempt {attempt_id} expired")
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._challenges.items() if expires_at <= now]
        for key in expired:
            del self._challenges[key]


class SqlChallengeStore:
    """Challenge store backed by the ``challenges`` table.

    Every call runs in its own transaction, independent of the ceremony's
    unit of work, so a consumed challenge stays deleted even when the
    ceremony fails and rolls back afterwards.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time) -> None:
        self.db = db
        self._clock = clock

    def issue(self, attempt_id: str, value: str, ttl: float) -> None:
        now = self._clock()
        with self.db.session() as session:
            session.execute(delete(Challenge).where(Challenge.expires_at <= now))
            session.merge(Challenge(attempt_id=attempt_id, value=value, expires_at=now + ttl))

    def consume(self, attempt_id: str) -> str:
        with self.db.session() as session:
            row = session.execute(
                select(Challenge.value, Challenge.expires_at).where(
                    Challenge.attempt_id == attempt_id
                )
            ).first()
            if row is None:
                raise ChallengeExpired(f"no challenge for attempt {attempt_id}")
            # Only the request whose delete removes the row owns the challenge.
            result = session.execute(
                delete(Challenge).where(
                    Challenge.attempt_id == attempt_id, Challenge.value == row.value
                )
            )
            if result.rowcount != 1:
                raise ChallengeExpired(f"challenge for attempt {attempt_id} already consumed")
        if self._clock() >= row.expires_at:
            raise ChallengeExpired(f"challenge for attempt {attempt_id} expired")
        return row.value
