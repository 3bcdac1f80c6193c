from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from sessioncore.logging import get_logger
from sessioncore.service.guard import guarded
from sessioncore.service.tokens import TokenClaims
from sessioncore.storage.models import as_utc

logger = get_logger(__name__)


class RevocationStore(Protocol):
    async def add_revoked_token(
        self,
        token_id: str,
        expires_at: datetime,
        *,
        subject_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool: ...

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool: ...

    async def set_subject_cutoff(
        self, subject_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None: ...

    async def get_subject_cutoff(self, subject_id: str, now: datetime) -> Optional[datetime]: ...

    async def purge_expired(self, now: datetime) -> int: ...

    async def close(self) -> None: ...


class RevocationLedger:
    """Denylist of refresh tokens whose entries expire with the token.

    An entry only needs to live as long as the token it blocks; afterwards
    signature/expiry verification rejects the token anyway, which is what
    lets the backing store be TTL-indexed or size-bounded.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        refresh_ttl: timedelta,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.refresh_ttl = refresh_ttl
        self.timeout = timeout

    async def revoke(self, claims: TokenClaims, now: datetime) -> bool:
        """Deny ``claims.token_id`` until the token's own expiry.

        Returns True when this call created the entry and False when it was
        already present (or the token is already dead), making the operation
        idempotent while still telling a rotating caller whether it won.
        """
        now = as_utc(now)
        if claims.expires_at <= now:
            return False
        inserted = await guarded(
            self.store.add_revoked_token(
                claims.token_id, claims.expires_at, subject_id=claims.subject_id, now=now
            ),
            op="add_revoked_token",
            timeout=self.timeout,
        )
        if inserted:
            logger.info(
                "refresh_token_revoked",
                subject_id=claims.subject_id,
                jti=claims.token_id,
                expires_at=claims.expires_at.isoformat(),
            )
        return inserted

    async def is_revoked(self, claims: TokenClaims, now: datetime) -> bool:
        now = as_utc(now)
        if await guarded(
            self.store.is_token_revoked(claims.token_id, now),
            op="is_token_revoked",
            timeout=self.timeout,
        ):
            return True
        cutoff = await guarded(
            self.store.get_subject_cutoff(claims.subject_id, now),
            op="get_subject_cutoff",
            timeout=self.timeout,
        )
        # iat has one-second resolution; tokens minted in the cutoff second are revoked too
        return cutoff is not None and claims.issued_at <= cutoff

    async def revoke_subject(self, subject_id: str, now: datetime) -> None:
        """Deny every refresh token of ``subject_id`` issued up to ``now``."""
        now = as_utc(now)
        await guarded(
            self.store.set_subject_cutoff(subject_id, now, now + self.refresh_ttl),
            op="set_subject_cutoff",
            timeout=self.timeout,
        )
        logger.info("subject_tokens_revoked", subject_id=subject_id)

    async def purge_expired(self, now: datetime) -> int:
        now = as_utc(now)
        purged = await guarded(
            self.store.purge_expired(now), op="purge_expired", timeout=self.timeout
        )
        if purged:
            logger.debug("revocations_purged", count=purged)
        return purged
