from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessioncore.logging import get_logger
from sessioncore.storage.errors import StoreUnavailable

T = TypeVar("T")


def _epoch(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


class RedisRevocationStore:
    """Revocation ledger kept in Redis keys that expire with the token.

    Each key stores the absolute expiry as its value as well as carrying a
    native TTL: Redis evicts on wall-clock time, while lookups compare the
    stored value with the caller's ``now``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Keep the later cutoff when two "logout everywhere" calls race.
    _SUBJECT_CUTOFF_SCRIPT = """
local key = KEYS[1]
local cutoff = tonumber(ARGV[1])
local expires_at = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local current = redis.call('HMGET', key, 'cutoff', 'expires_at')
local current_cutoff = tonumber(current[1])
local current_expiry = tonumber(current[2])
if current_cutoff ~= nil and current_cutoff > cutoff then
  cutoff = current_cutoff
end
if current_expiry ~= nil and current_expiry > expires_at then
  expires_at = current_expiry
end
redis.call('HSET', key, 'cutoff', cutoff, 'expires_at', expires_at)
local remaining = redis.call('TTL', key)
if remaining < ttl then
  redis.call('EXPIRE', key, ttl)
end
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._subject_cutoff = self.client.register_script(self._SUBJECT_CUTOFF_SCRIPT)

    @staticmethod
    def _token_key(token_id: str) -> str:
        return f"auth:refresh:revoked:{token_id}"

    @staticmethod
    def _subject_key(subject_id: str) -> str:
        return f"auth:subject:revoked_before:{subject_id}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds from ``now`` (wall clock when omitted) until ``expires_at``, at least one."""

        start = now if now is not None else datetime.now(timezone.utc)
        remaining = _epoch(expires_at) - _epoch(start)
        return max(1, math.ceil(remaining))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, awaitable: Awaitable[T], op: str) -> T:
        try:
            return await awaitable
        except RedisError as exc:
            self.logger.warning("redis_operation_failed", operation=op, error_type=type(exc).__name__)
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def add_revoked_token(
        self,
        token_id: str,
        expires_at: datetime,
        *,
        subject_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        created = await self._call(
            self.client.set(
                self._token_key(token_id),
                repr(_epoch(expires_at)),
                ex=self._ttl_seconds(expires_at, now),
                nx=True,
            ),
            "add_revoked_token",
        )
        return bool(created)

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        value = await self._call(self.client.get(self._token_key(token_id)), "is_token_revoked")
        if value is None:
            return False
        try:
            return _epoch(now) < float(value)
        except (TypeError, ValueError):
            # Unreadable entry; a present key still means the token was revoked.
            return True

    async def set_subject_cutoff(
        self, subject_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        await self._call(
            self._subject_cutoff(
                keys=[self._subject_key(subject_id)],
                args=[
                    repr(_epoch(revoked_before)),
                    repr(_epoch(expires_at)),
                    self._ttl_seconds(expires_at, revoked_before),
                ],
            ),
            "set_subject_cutoff",
        )

    async def get_subject_cutoff(self, subject_id: str, now: datetime) -> Optional[datetime]:
        cutoff, expires_at = await self._call(
            self.client.hmget(self._subject_key(subject_id), ["cutoff", "expires_at"]),
            "get_subject_cutoff",
        )
        if cutoff is None or expires_at is None:
            return None
        if _epoch(now) >= float(expires_at):
            return None
        return datetime.fromtimestamp(float(cutoff), tz=timezone.utc)

    async def purge_expired(self, now: datetime) -> int:
        # Keys carry their own TTL; Redis evicts them.
        return 0

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
