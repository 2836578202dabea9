"""Unit tests for PostgresStore with the connection pool stubbed out."""

import contextlib
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import OperationalError, errors
from psycopg_pool import PoolTimeout

from validauth.logging import get_logger
from validauth.storage.errors import ConstraintViolation, StorageUnavailable
from validauth.storage.models import Identity
from validauth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    """Replays queued results and records every statement."""

    def __init__(self, results=None, raise_on_execute=None):
        self.results = list(results or [])
        self.raise_on_execute = raise_on_execute
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        if self.results:
            return self.results.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc

    @contextlib.contextmanager
    def connection(self, timeout=None):
        if self.exc is not None:
            raise self.exc
        yield self.conn


def create_test_store(pool) -> PostgresStore:
    """Create a PostgresStore instance for testing without database."""
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.timeout = 1.0
    store.logger = get_logger("test")
    return store


def identity_row(**overrides):
    row = {
        "id": "id-1",
        "username": "alice",
        "email": "a@x.com",
        "password_hash": "hash",
        "role": "ROLE_USER",
        "active": True,
        "enabled": True,
        "failed_attempts": 0,
        "locked": False,
        "locked_at": None,
        "created_at": NOW,
        "updated_at": None,
    }
    row.update(overrides)
    return row


class TestIdentityQueries:
    def test_find_by_email_is_case_insensitive_query(self):
        conn = FakeConnection([FakeCursor(identity_row())])
        store = create_test_store(FakePool(conn))

        identity = store.find_by_email("A@X.com")

        assert identity.username == "alice"
        sql, params = conn.statements[0]
        assert "lower(email) = lower(%s)" in sql
        assert params == ("A@X.com",)

    def test_find_by_email_absent(self):
        store = create_test_store(FakePool(FakeConnection([FakeCursor(None)])))
        assert store.find_by_email("a@x.com") is None

    def test_increment_is_single_atomic_update(self):
        conn = FakeConnection(
            [FakeCursor(identity_row(failed_attempts=5, locked=True, locked_at=NOW))]
        )
        store = create_test_store(FakePool(conn))

        identity = store.increment_failed_attempts("id-1", 5, NOW)

        assert identity.locked is True
        assert len(conn.statements) == 1
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE auth_identity SET failed_attempts = failed_attempts + 1")
        assert "RETURNING *" in sql
        assert params == (5, 5, NOW, "id-1")

    def test_mark_active_only_matches_pending_row(self):
        conn = FakeConnection([FakeCursor(identity_row(active=True)), FakeCursor(None)])
        store = create_test_store(FakePool(conn))

        assert store.mark_active("id-1").active is True
        assert store.mark_active("id-1") is None
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE auth_identity SET active = TRUE")
        assert "WHERE id = %s AND NOT active" in sql
        assert params == ("id-1",)

    def test_set_enabled_touches_only_enabled_column(self):
        conn = FakeConnection([FakeCursor(identity_row(enabled=False, failed_attempts=3))])
        store = create_test_store(FakePool(conn))

        identity = store.set_enabled("id-1", False)

        assert identity.enabled is False
        assert identity.failed_attempts == 3
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE auth_identity SET enabled = %s, updated_at = now()")
        assert "failed_attempts" not in sql
        assert params == (False, "id-1")

    def test_unique_violation_becomes_constraint_violation(self):
        conn = FakeConnection(
            raise_on_execute=errors.UniqueViolation(
                'duplicate key value violates unique constraint "auth_identity_username_key"'
            )
        )
        store = create_test_store(FakePool(conn))

        with pytest.raises(ConstraintViolation) as exc:
            store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
        assert exc.value.detail == {"field": "username"}


class TestRefreshTokens:
    def test_replace_locks_owner_then_deletes_and_inserts(self):
        expiry = NOW + timedelta(days=7)
        conn = FakeConnection(
            [
                FakeCursor({"id": "id-1"}),
                FakeCursor(),
                FakeCursor(
                    {"token": "new", "identity_id": "id-1", "expiry_date": expiry, "created_at": NOW}
                ),
            ]
        )
        store = create_test_store(FakePool(conn))

        record = store.replace_refresh_token("id-1", "new", expiry)

        assert record.token == "new"
        statements = [sql for sql, _ in conn.statements]
        assert statements[0].endswith("FOR UPDATE")
        assert statements[1].startswith("DELETE FROM auth_refresh_token")
        assert statements[2].startswith("INSERT INTO auth_refresh_token")

    def test_replace_returns_none_when_token_already_rotated(self):
        conn = FakeConnection([FakeCursor({"id": "id-1"}), FakeCursor(None)])
        store = create_test_store(FakePool(conn))

        assert store.replace_refresh_token("id-1", "new", NOW, replacing="old") is None
        assert not any(sql.startswith("DELETE") for sql, _ in conn.statements)

    def test_replace_for_missing_identity(self):
        store = create_test_store(FakePool(FakeConnection([FakeCursor(None)])))
        with pytest.raises(ConstraintViolation):
            store.replace_refresh_token("missing", "new", NOW)

    def test_delete_for_identity_returns_rowcount(self):
        store = create_test_store(FakePool(FakeConnection([FakeCursor(rowcount=2)])))
        assert store.delete_refresh_tokens_for("id-1") == 2


class TestTimeouts:
    def test_pool_timeout_surfaces_as_storage_unavailable(self):
        store = create_test_store(FakePool(exc=PoolTimeout("couldn't get a connection")))
        with pytest.raises(StorageUnavailable):
            store.find_by_id("id-1")

    def test_statement_timeout_surfaces_as_storage_unavailable(self):
        conn = FakeConnection(raise_on_execute=errors.QueryCanceled("statement timeout"))
        store = create_test_store(FakePool(conn))
        with pytest.raises(StorageUnavailable):
            store.find_by_id("id-1")

    def test_connection_loss_surfaces_as_storage_unavailable(self):
        conn = FakeConnection(raise_on_execute=OperationalError("server closed the connection"))
        store = create_test_store(FakePool(conn))
        with pytest.raises(StorageUnavailable):
            store.find_by_id("id-1")
