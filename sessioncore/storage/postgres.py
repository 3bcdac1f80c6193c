from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessioncore.logging import get_logger
from sessioncore.storage.errors import ConstraintViolation, StoreUnavailable
from sessioncore.storage.models import Identity, LockoutState, Role

T = TypeVar("T")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_identity_email_key ON auth_identity (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_revoked_token (
        token_id TEXT PRIMARY KEY,
        subject_id TEXT,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_revoked_token_expires_idx ON auth_revoked_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS auth_subject_revocation (
        subject_id TEXT PRIMARY KEY,
        revoked_before TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _identity_from_row(row: dict[str, Any]) -> Identity:
    return Identity(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        role=Role(row.get("role", "user")),
        lockout=LockoutState(
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
        ),
        is_active=row.get("is_active", True),
        created_at=row["created_at"],
        last_login_at=row.get("last_login_at"),
    )


class PostgresStore:
    """Postgres-backed credential and revocation store.

    psycopg's pool is blocking, so each operation runs in a worker thread via
    ``asyncio.to_thread``. Driver errors surface as ``StoreUnavailable``;
    unique violations on insert surface as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the identity and revocation tables if they are missing."""

        try:
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
        except psycopg.Error as exc:
            self.logger.error("postgres_schema_init_failed", error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except psycopg.Error as exc:
            self.logger.warning(
                "postgres_operation_failed",
                operation=getattr(fn, "__name__", "unknown"),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    # identities
    def _create_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_identity (id, email, password_hash, role, failed_attempts, locked_until, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        identity.password_hash,
                        identity.role.value,
                        identity.lockout.failed_attempts,
                        identity.lockout.locked_until,
                        identity.is_active,
                        identity.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    async def create_identity(self, identity: Identity) -> Identity:
        return await self._run(self._create_identity, identity)

    def _get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return _identity_from_row(row) if row else None

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        return await self._run(self._get_identity, identity_id)

    def _get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return _identity_from_row(row) if row else None

    async def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return await self._run(self._get_identity_by_email, email)

    def _compare_and_set_lockout(
        self, identity_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_identity
                SET failed_attempts = %s, locked_until = %s
                WHERE id = %s AND failed_attempts = %s AND locked_until IS NOT DISTINCT FROM %s
                """,
                (
                    new.failed_attempts,
                    new.locked_until,
                    identity_id,
                    expected.failed_attempts,
                    expected.locked_until,
                ),
            )
            return result.rowcount == 1

    async def compare_and_set_lockout(
        self, identity_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        return await self._run(self._compare_and_set_lockout, identity_id, expected, new)

    def _reset_lockout(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_identity SET failed_attempts = 0, locked_until = NULL WHERE id = %s",
                (identity_id,),
            )

    async def reset_lockout(self, identity_id: str) -> None:
        await self._run(self._reset_lockout, identity_id)

    def _record_login(self, identity_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_identity SET last_login_at = %s WHERE id = %s", (at, identity_id)
            )

    async def record_login(self, identity_id: str, at: datetime) -> None:
        await self._run(self._record_login, identity_id, at)

    def _update_password_hash(self, identity_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_identity SET password_hash = %s WHERE id = %s",
                (password_hash, identity_id),
            )

    async def update_password_hash(self, identity_id: str, password_hash: str) -> None:
        await self._run(self._update_password_hash, identity_id, password_hash)

    def _set_active(self, identity_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_identity SET is_active = %s WHERE id = %s", (is_active, identity_id)
            )
            return result.rowcount == 1

    async def set_active(self, identity_id: str, is_active: bool) -> bool:
        return await self._run(self._set_active, identity_id, is_active)

    # revocations
    def _add_revoked_token(
        self, token_id: str, expires_at: datetime, subject_id: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_revoked_token (token_id, subject_id, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (token_id) DO NOTHING
                RETURNING token_id
                """,
                (token_id, subject_id, expires_at),
            ).fetchone()
        return row is not None

    async def add_revoked_token(
        self,
        token_id: str,
        expires_at: datetime,
        *,
        subject_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        return await self._run(self._add_revoked_token, token_id, expires_at, subject_id)

    def _is_token_revoked(self, token_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM auth_revoked_token WHERE token_id = %s AND expires_at > %s",
                (token_id, now),
            ).fetchone()
        return row is not None

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        return await self._run(self._is_token_revoked, token_id, now)

    def _set_subject_cutoff(
        self, subject_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_subject_revocation (subject_id, revoked_before, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (subject_id) DO UPDATE
                SET revoked_before = GREATEST(auth_subject_revocation.revoked_before, EXCLUDED.revoked_before),
                    expires_at = GREATEST(auth_subject_revocation.expires_at, EXCLUDED.expires_at)
                """,
                (subject_id, revoked_before, expires_at),
            )

    async def set_subject_cutoff(
        self, subject_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        await self._run(self._set_subject_cutoff, subject_id, revoked_before, expires_at)

    def _get_subject_cutoff(self, subject_id: str, now: datetime) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT revoked_before FROM auth_subject_revocation
                WHERE subject_id = %s AND expires_at > %s
                """,
                (subject_id, now),
            ).fetchone()
        return row["revoked_before"] if row else None

    async def get_subject_cutoff(self, subject_id: str, now: datetime) -> Optional[datetime]:
        return await self._run(self._get_subject_cutoff, subject_id, now)

    def _purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            tokens = conn.execute(
                "DELETE FROM auth_revoked_token WHERE expires_at <= %s", (now,)
            )
            subjects = conn.execute(
                "DELETE FROM auth_subject_revocation WHERE expires_at <= %s", (now,)
            )
            return max(tokens.rowcount, 0) + max(subjects.rowcount, 0)

    async def purge_expired(self, now: datetime) -> int:
        return await self._run(self._purge_expired, now)

    async def close(self) -> None:
        await asyncio.to_thread(self.pool.close)
