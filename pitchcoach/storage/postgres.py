from __future__ import annotations

import uuid
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from pitchcoach.logging import get_logger
from pitchcoach.storage.errors import ConstraintViolation
from pitchcoach.storage.models import (
    IP_ADDRESS_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    AuditEvent,
    AuditLogEntry,
    RefreshToken,
    User,
    clip,
)

REQUIRED_TABLES = ("app_user", "refresh_token", "audit_log")

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS citext;

CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email CITEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_algo TEXT NOT NULL DEFAULT 'argon2id',
    first_name VARCHAR(100) NOT NULL,
    last_name VARCHAR(100) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS refresh_token (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    token TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id BIGSERIAL PRIMARY KEY,
    user_id UUID REFERENCES app_user(id) ON DELETE SET NULL,
    event_type TEXT NOT NULL CHECK (
        event_type IN ('login', 'logout', 'register', 'password_change', 'token_refresh')
    ),
    ip_address VARCHAR(45),
    user_agent VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS audit_log_user_idx ON audit_log (user_id);
"""


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login=row.get("last_login"),
    )


def _audit_from_row(row: dict[str, Any]) -> AuditLogEntry:
    user_id = row.get("user_id")
    return AuditLogEntry(
        id=int(row["id"]),
        user_id=str(user_id) if user_id else None,
        event_type=AuditEvent(row["event_type"]),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store for users, refresh tokens and the audit log."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_schema_ensured", tables=list(REQUIRED_TABLES))

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Run scripts/init_db.py to install the schema.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Install it and rerun scripts/init_db.py."
                )

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, password_algo, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, password_algo, first_name, last_name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(user_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return _user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return _user_from_row(row)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            return result.rowcount > 0

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET first_name = COALESCE(%s, first_name),
                        last_name = COALESCE(%s, last_name),
                        email = COALESCE(%s, email),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (first_name, last_name, email, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            return None
        return _user_from_row(row)

    def touch_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = now() WHERE id = %s", (user_id,)
            )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def create_refresh_token(self, user_id: str, ttl_minutes: int) -> RefreshToken:
        record = RefreshToken.new(user_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return record

    def consume_refresh_token(self, token: str) -> Optional[str]:
        """Delete a live refresh token and return its owner in one statement.

        Concurrent callers presenting the same value race on the row lock; only
        one DELETE reports the row.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE token = %s AND expires_at > now()
                RETURNING user_id
                """,
                (token,),
            ).fetchone()
        if not row:
            return None
        return str(row["user_id"])

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s", (token,)
            )
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def purge_expired_refresh_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= now()"
            )
            count = result.rowcount
        if count:
            self.logger.info("refresh_tokens_purged", count=count)
        return count

    # audit log
    def append_audit_event(
        self,
        user_id: Optional[str],
        event_type: AuditEvent,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO audit_log (user_id, event_type, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        AuditEvent(event_type).value,
                        clip(ip_address, IP_ADDRESS_MAX_LENGTH),
                        clip(user_agent, USER_AGENT_MAX_LENGTH),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return _audit_from_row(row)

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE user_id = %s ORDER BY id DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
        return [_audit_from_row(row) for row in rows]

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
