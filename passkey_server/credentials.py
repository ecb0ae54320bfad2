"""Credential registry."""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from .errors import ConflictError
from .models import Credential


class CredentialRegistry:
    """Persistence for passkeys.

    ``update_counter`` is a blind write; deciding whether a counter is
    acceptable belongs to the authentication ceremony.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def save(
        self,
        user_id: int,
        credential_id: str,
        public_key: str,
        counter: int,
        backed_up: bool,
        transports: Iterable[str],
    ) -> Credential:
        if self.session.get(Credential, credential_id) is not None:
            raise ConflictError(f"credential {credential_id} already registered")
        credential = Credential(
            id=credential_id,
            user_id=user_id,
            public_key=public_key,
            counter=counter,
            backed_up=backed_up,
            transports=sorted(set(transports)),
        )
        self.session.add(credential)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"credential {credential_id} already registered") from exc
        return credential

    def find_by_id(self, credential_id: str) -> Optional[Credential]:
        return self.session.scalar(
            select(Credential)
            .options(joinedload(Credential.user))
            .where(Credential.id == credential_id)
        )

    def find_all_by_user_id(self, user_id: int) -> List[Credential]:
        return list(self.session.scalars(select(Credential).where(Credential.user_id == user_id)))

    def update_counter(self, credential_id: str, new_counter: int) -> None:
        self.session.execute(
            update(Credential).where(Credential.id == credential_id).values(counter=new_counter)
        )
