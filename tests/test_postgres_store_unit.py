from contextlib import contextmanager
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors

from conftest import T0
from sessioncore.storage.errors import ConstraintViolation, StoreUnavailable
from sessioncore.storage.models import Identity, LockoutState, Role
from sessioncore.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        if self.pool.results:
            return self.pool.results.pop(0)
        return FakeCursor()


class FakePool:
    """Records SQL instead of talking to a database."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []
        self.closed = False

    @contextmanager
    def connection(self):
        yield FakeConnection(self)

    def close(self):
        self.closed = True


def _store(pool):
    return PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)


def _row(**overrides):
    row = {
        "id": "id-1",
        "email": "gus@example.com",
        "password_hash": "hash",
        "role": "admin",
        "failed_attempts": 2,
        "locked_until": None,
        "is_active": True,
        "created_at": T0,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_ensure_schema_creates_tables_and_indexes():
    pool = FakePool()
    PostgresStore("postgresql://unused", pool=pool)

    sql = "\n".join(statement for statement, _ in pool.statements)
    assert "CREATE TABLE IF NOT EXISTS auth_identity" in sql
    assert "ON auth_identity (lower(email))" in sql
    assert "CREATE TABLE IF NOT EXISTS auth_revoked_token" in sql
    assert "CREATE TABLE IF NOT EXISTS auth_subject_revocation" in sql


async def test_identity_rows_are_mapped():
    pool = FakePool(results=[FakeCursor(row=_row())])

    identity = await _store(pool).get_identity_by_email("Gus@Example.com")

    assert identity.role is Role.ADMIN
    assert identity.lockout == LockoutState(failed_attempts=2)
    assert "lower(email) = lower(%s)" in pool.statements[0][0]


async def test_missing_identity_returns_none():
    assert await _store(FakePool()).get_identity("nope") is None


async def test_duplicate_email_raises_constraint_violation():
    pool = FakePool(error=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        await _store(pool).create_identity(Identity.new("gus@example.com", "hash"))


async def test_driver_errors_become_store_unavailable():
    pool = FakePool(error=psycopg.OperationalError("server closed the connection"))
    with pytest.raises(StoreUnavailable) as exc:
        await _store(pool).get_identity("id-1")
    assert exc.value.backend == "postgres"


async def test_compare_and_set_is_conditional_on_previous_state():
    pool = FakePool(results=[FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    store = _store(pool)
    expected = LockoutState(failed_attempts=2)
    new = LockoutState(failed_attempts=3, locked_until=T0 + timedelta(minutes=30))

    assert await store.compare_and_set_lockout("id-1", expected, new)
    assert not await store.compare_and_set_lockout("id-1", expected, new)

    statement, params = pool.statements[0]
    assert "failed_attempts = %s AND locked_until IS NOT DISTINCT FROM %s" in statement
    assert params == (3, T0 + timedelta(minutes=30), "id-1", 2, None)


async def test_set_active_reports_whether_a_row_changed():
    pool = FakePool(results=[FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    store = _store(pool)

    assert await store.set_active("id-1", False)
    assert not await store.set_active("missing", False)
    assert pool.statements[0] == ("UPDATE auth_identity SET is_active = %s WHERE id = %s", (False, "id-1"))


async def test_revoked_token_insert_reports_conflict():
    pool = FakePool(results=[FakeCursor(row={"token_id": "jti"}), FakeCursor(row=None)])
    store = _store(pool)

    assert await store.add_revoked_token("jti", T0, subject_id="u")
    assert not await store.add_revoked_token("jti", T0, subject_id="u")
    assert "ON CONFLICT (token_id) DO NOTHING" in pool.statements[0][0]


async def test_subject_cutoff_filters_expired_rows():
    pool = FakePool(results=[FakeCursor(row={"revoked_before": T0})])

    assert await _store(pool).get_subject_cutoff("u", T0) == T0
    assert pool.statements[0][1] == ("u", T0)


async def test_purge_counts_both_tables():
    pool = FakePool(results=[FakeCursor(rowcount=3), FakeCursor(rowcount=1)])
    assert await _store(pool).purge_expired(T0) == 4


async def test_close_closes_pool():
    pool = FakePool()
    await _store(pool).close()
    assert pool.closed
