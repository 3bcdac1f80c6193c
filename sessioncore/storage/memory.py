from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from sessioncore.logging import get_logger
from sessioncore.storage.errors import ConstraintViolation
from sessioncore.storage.models import (
    Identity,
    LockoutState,
    RevocationEntry,
    SubjectRevocation,
)


class MemoryStore:
    """In-process credential and revocation store for tests and local runs.

    Implements both the credential and the revocation store contracts. Every
    read hands out a copy so callers can never mutate stored state without
    going through the conditional update methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self._email_index: Dict[str, str] = {}
        self.revoked_tokens: Dict[str, RevocationEntry] = {}
        self.subject_revocations: Dict[str, SubjectRevocation] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(identity: Optional[Identity]) -> Optional[Identity]:
        return replace(identity) if identity is not None else None

    # identities
    async def create_identity(self, identity: Identity) -> Identity:
        email = identity.email.strip().lower()
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            stored = replace(identity, email=email)
            self.identities[stored.id] = stored
            self._email_index[email] = stored.id
        return replace(stored)

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self._copy(self.identities.get(identity_id))

    async def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._email_index.get(email.strip().lower())
            if identity_id is None:
                return None
            return self._copy(self.identities.get(identity_id))

    async def compare_and_set_lockout(
        self, identity_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None or identity.lockout != expected:
                return False
            identity.lockout = new
            return True

    async def reset_lockout(self, identity_id: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is not None:
                identity.lockout = LockoutState()

    async def record_login(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is not None:
                identity.last_login_at = at

    async def update_password_hash(self, identity_id: str, password_hash: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is not None:
                identity.password_hash = password_hash

    async def set_active(self, identity_id: str, is_active: bool) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return False
            identity.is_active = is_active
            return True

    # revocations
    async def add_revoked_token(
        self,
        token_id: str,
        expires_at: datetime,
        *,
        subject_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._data_lock:
            if token_id in self.revoked_tokens:
                return False
            self.revoked_tokens[token_id] = RevocationEntry(
                token_id=token_id, subject_id=subject_id, expires_at=expires_at
            )
            return True

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.revoked_tokens.get(token_id)
            return entry is not None and now < entry.expires_at

    async def set_subject_cutoff(
        self, subject_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        with self._data_lock:
            existing = self.subject_revocations.get(subject_id)
            if existing is not None and existing.revoked_before > revoked_before:
                return
            self.subject_revocations[subject_id] = SubjectRevocation(
                subject_id=subject_id, revoked_before=revoked_before, expires_at=expires_at
            )

    async def get_subject_cutoff(self, subject_id: str, now: datetime) -> Optional[datetime]:
        with self._data_lock:
            entry = self.subject_revocations.get(subject_id)
            if entry is None or now >= entry.expires_at:
                return None
            return entry.revoked_before

    async def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            stale_tokens = [
                jti for jti, entry in self.revoked_tokens.items() if entry.expires_at <= now
            ]
            for jti in stale_tokens:
                self.revoked_tokens.pop(jti, None)
            stale_subjects = [
                sub
                for sub, entry in self.subject_revocations.items()
                if entry.expires_at <= now
            ]
            for sub in stale_subjects:
                self.subject_revocations.pop(sub, None)
        purged = len(stale_tokens) + len(stale_subjects)
        if purged:
            self.logger.debug("memory_revocations_purged", count=purged)
        return purged

    async def close(self) -> None:
        return None
