import uuid
from contextlib import contextmanager
from types import SimpleNamespace

import psycopg
import pytest
from psycopg import errors

from zust.logging import get_logger
from zust.storage.errors import ConstraintViolation, InvalidValueError, StorageUnavailableError
from zust.storage.postgres import _SCHEMA_STATEMENTS, PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row):
        self._row = row
        self.rowcount = 1 if row else 0

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, query, params=()):
        self.executed.append((" ".join(query.split()), params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class FakePool:
    def __init__(self, *rows, error=None):
        self.conn = FakeConnection(rows)
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


class UniqueEmailViolation(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="accounts_email_key")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def test_invalid_ids_never_reach_the_database():
    store = _store(DummyPool())
    assert store.get_account("not-a-uuid") is None
    assert store.get_token_version("not-a-uuid") is None
    assert store.increment_token_version("not-a-uuid") is None
    assert store.get_video_detail("not-a-uuid") is None
    assert store.unlike_video("not-a-uuid", str(uuid.uuid4())) is False


def test_increment_without_expected_is_unconditional():
    pool = FakePool({"token_version": 4})
    store = _store(pool)
    account_id = str(uuid.uuid4())

    assert store.increment_token_version(account_id) == 4
    query, params = pool.conn.executed[0]
    assert "token_version = token_version + 1" in query
    assert "AND token_version" not in query
    assert params == (account_id,)


def test_increment_with_expected_is_compare_and_swap():
    pool = FakePool(None)
    store = _store(pool)
    account_id = str(uuid.uuid4())

    assert store.increment_token_version(account_id, expected=3) is None
    query, params = pool.conn.executed[0]
    assert "WHERE id = %s AND token_version = %s RETURNING token_version" in query
    assert params == (account_id, 3)


def test_unique_violation_maps_constraint_to_field():
    store = _store(FakePool(error=UniqueEmailViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account_with_password("a@example.com", "alice", "digest")
    assert excinfo.value.field == "email"
    assert excinfo.value.constraint == "accounts_email_key"


def test_operational_error_becomes_storage_unavailable():
    store = _store(FakePool(error=psycopg.OperationalError("server closed the connection")))
    with pytest.raises(StorageUnavailableError) as excinfo:
        store.get_token_version(str(uuid.uuid4()))
    assert "server closed" not in str(excinfo.value)


def test_row_to_account_defaults():
    account_id = uuid.uuid4()
    account = PostgresStore._row_to_account(
        {
            "id": account_id,
            "email": "a@example.com",
            "username": "alice",
            "password_hash": None,
            "description": None,
            "status": "active",
            "role": None,
            "oauth_provider": "github",
            "oauth_provider_id": "42",
            "token_version": 7,
            "created_at": None,
        }
    )
    assert account.id == str(account_id)
    assert account.role == "user"
    assert account.token_version == 7
    assert account.is_active
    assert PostgresStore._row_to_account(None) is None


def test_title_uniqueness_skips_deleted_videos():
    (index,) = [s for s in _SCHEMA_STATEMENTS if "videos_title_key" in s]
    assert "CREATE UNIQUE INDEX" in index
    assert "WHERE status <> 'deleted'" in index


def test_oversized_value_becomes_invalid_value():
    store = _store(FakePool(error=errors.StringDataRightTruncation("value too long for type")))
    with pytest.raises(InvalidValueError):
        store.get_token_version(str(uuid.uuid4()))
