from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Column widths shared by both backends
IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 255


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_CHANGE = "password_change"
    TOKEN_REFRESH = "token_refresh"


@dataclass
class User:
    """Identity record. The password hash lives in a separate credential record."""

    id: str
    email: str
    first_name: str
    last_name: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, ttl_minutes: int = 7 * 24 * 60) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=secrets.token_urlsafe(48),
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class AuditLogEntry:
    id: int
    user_id: Optional[str]
    event_type: AuditEvent
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


def clip(value: Optional[str], limit: int) -> Optional[str]:
    """Truncate a free-form request attribute to its column width."""
    if value is None:
        return None
    return value[:limit]
