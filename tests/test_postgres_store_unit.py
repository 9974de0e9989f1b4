import uuid
from datetime import datetime, timezone

import pytest
from psycopg import errors

from pitchcoach.logging import get_logger
from pitchcoach.storage.errors import ConstraintViolation
from pitchcoach.storage.models import AuditEvent
from pitchcoach.storage.postgres import PostgresStore, _audit_from_row, _user_from_row


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else FakeResult()


class DummyPool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(conn)
    store.logger = get_logger(__name__)
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "a@b.com",
        "first_name": "A",
        "last_name": "B",
        "created_at": now,
        "updated_at": now,
        "last_login": None,
    }
    row.update(overrides)
    return row


def test_user_from_row_stringifies_uuid():
    row = _user_row()

    user = _user_from_row(row)

    assert user.id == str(row["id"])
    assert user.email == "a@b.com"


def test_audit_from_row_handles_nulled_user():
    row = {
        "id": 7,
        "user_id": None,
        "event_type": "logout",
        "ip_address": None,
        "user_agent": None,
        "created_at": datetime.now(timezone.utc),
    }

    entry = _audit_from_row(row)

    assert entry.user_id is None
    assert entry.event_type is AuditEvent.LOGOUT


def test_create_user_maps_unique_violation():
    store = _store(FakeConnection(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("a@b.com", "A", "B", password_hash="h", password_algo="argon2id")

    assert exc_info.value.field == "email"


def test_create_refresh_token_maps_foreign_key_violation():
    store = _store(FakeConnection(error=errors.ForeignKeyViolation("no such user")))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_refresh_token(str(uuid.uuid4()), ttl_minutes=10)

    assert exc_info.value.field == "user_id"


def test_consume_refresh_token_is_a_single_conditional_delete():
    owner = uuid.uuid4()
    conn = FakeConnection(results=[FakeResult(rows=[{"user_id": owner}], rowcount=1)])
    store = _store(conn)

    assert store.consume_refresh_token("tok") == str(owner)

    ((sql, params),) = conn.statements
    assert sql.startswith("DELETE FROM refresh_token")
    assert "expires_at > now()" in sql
    assert "RETURNING user_id" in sql
    assert params == ("tok",)


def test_consume_refresh_token_miss_returns_none():
    store = _store(FakeConnection(results=[FakeResult()]))

    assert store.consume_refresh_token("tok") is None


def test_get_user_skips_query_for_non_uuid():
    conn = FakeConnection()
    store = _store(conn)

    assert store.get_user("not-a-uuid") is None
    assert conn.statements == []


def test_append_audit_event_clips_fields():
    row = {
        "id": 1,
        "user_id": None,
        "event_type": "login",
        "ip_address": "1" * 45,
        "user_agent": "u" * 255,
        "created_at": datetime.now(timezone.utc),
    }
    conn = FakeConnection(results=[FakeResult(rows=[row])])
    store = _store(conn)

    store.append_audit_event(None, AuditEvent.LOGIN, ip_address="1" * 80, user_agent="u" * 999)

    (_, params) = conn.statements[0]
    assert params[1] == "login"
    assert len(params[2]) == 45
    assert len(params[3]) == 255


def test_verify_schema_reports_missing_tables():
    conn = FakeConnection(
        results=[
            FakeResult(rows=[{"oid": "app_user"}]),
            FakeResult(rows=[{"oid": None}]),
            FakeResult(rows=[{"oid": None}]),
        ]
    )
    store = _store(conn)

    with pytest.raises(RuntimeError, match="audit_log, refresh_token"):
        store._verify_required_schema()
