"""Unit tests for PostgresStore statements against a stubbed pool."""

from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import ACCOUNT_ACTIVE, CHANNEL_EMAIL, Credential
from passgate.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        outcome = self.results.pop(0) if self.results else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(*results):
    conn = FakeConnection(results)
    store = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store, conn


class TestConditionalUpdates:
    """Row counts decide whether a transition happened."""

    def test_consume_credential_is_compare_and_set(self):
        store, conn = _store(FakeResult(rowcount=1), FakeResult(rowcount=0))
        assert store.consume_credential("cred-1", NOW) is True
        assert store.consume_credential("cred-1", NOW) is False
        sql, params = conn.executed[0]
        assert "AND used = false" in sql
        assert params == (NOW, "cred-1")

    def test_cancel_deletion_checks_grace(self):
        store, conn = _store(FakeResult(rowcount=0))
        assert store.cancel_account_deletion("acct-1", NOW) is False
        sql, params = conn.executed[0]
        assert "deletion_scheduled_at > %s" in sql
        assert params[-1] == NOW

    def test_schedule_deletion_only_from_active(self):
        store, conn = _store(FakeResult(rowcount=1))
        scheduled = NOW + timedelta(days=7)
        assert store.schedule_account_deletion("acct-1", scheduled, NOW) is True
        _, params = conn.executed[0]
        assert params[-1] == ACCOUNT_ACTIVE

    def test_sweep_returns_deleted_ids(self):
        store, conn = _store(FakeResult(rows=[{"id": "a"}, {"id": "b"}]))
        assert store.sweep_account_deletions(NOW) == ["a", "b"]
        sql, _ = conn.executed[0]
        assert "email = NULL" in sql and "RETURNING id" in sql

    def test_reserve_attempt_returns_new_count(self):
        store, conn = _store(FakeResult(rows=[{"attempts": 2}]))
        assert store.reserve_credential_attempt("cred-1", 5) == 2
        sql, params = conn.executed[0]
        assert "attempts < %s" in sql and "used = false" in sql
        assert params == ("cred-1", 5)

    def test_reserve_attempt_refused_when_exhausted(self):
        store, _ = _store(FakeResult())
        assert store.reserve_credential_attempt("cred-1", 5) is None


class TestRows:
    """Row mapping and constraint translation."""

    def test_latest_credential_mapped(self):
        row = {
            "id": "cred-1",
            "target": "user@example.com",
            "channel": CHANNEL_EMAIL,
            "purpose": "login",
            "digest": "d" * 64,
            "salt": None,
            "created_at": NOW,
            "expires_at": NOW + timedelta(minutes=15),
            "used": False,
            "used_at": None,
            "attempts": 0,
            "meta": {"method": "link"},
        }
        store, conn = _store(FakeResult(rows=[row]))
        credential = store.get_latest_credential("user@example.com", "login")
        assert isinstance(credential, Credential)
        assert credential.meta == {"method": "link"}
        sql, _ = conn.executed[0]
        assert "ORDER BY created_at DESC, seq DESC" in sql

    def test_duplicate_identity_is_constraint_violation(self):
        store, _ = _store(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            store.create_account(ACCOUNT_ACTIVE, email="user@example.com", now=NOW)

    def test_missing_account(self):
        store, _ = _store(FakeResult())
        assert store.get_account("missing") is None


class TestTimeouts:
    """Pool checkout, connect and statements are bounded."""

    def test_pool_configured_with_store_timeout(self, monkeypatch):
        captured = {}

        def fake_pool(dsn, **kwargs):
            captured["dsn"] = dsn
            captured.update(kwargs)
            return FakePool(FakeConnection([]))

        monkeypatch.setattr("passgate.storage.postgres.ConnectionPool", fake_pool)
        store = PostgresStore("postgresql://db/passgate", timeout_seconds=2.5)
        assert store.timeout_seconds == 2.5
        assert captured["timeout"] == 2.5
        assert captured["kwargs"]["options"] == "-c statement_timeout=2500"
        assert captured["kwargs"]["connect_timeout"] == 3
        assert captured["kwargs"]["row_factory"] is not None
