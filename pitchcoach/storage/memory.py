from __future__ import annotations

import threading
import uuid
from typing import Dict, List, Optional

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
    utcnow,
)


class MemoryStore:
    """In-process backing store for local development and tests.

    Mirrors the relational constraints of the Postgres schema: case-insensitive
    unique email, refresh tokens cascade-deleted with their user, audit rows
    keep their history with the user reference nulled out.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_log: List[AuditLogEntry] = []
        self._audit_seq: int = 1
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    def _email_taken(self, email: str, *, exclude_user_id: Optional[str] = None) -> bool:
        needle = email.lower()
        return any(
            existing.email.lower() == needle and existing.id != exclude_user_id
            for existing in self.users.values()
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
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == needle:
                    return user
        return None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.credentials[user_id] = (password_hash, password_algo)
            user.updated_at = utcnow()
            return True

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and self._email_taken(email, exclude_user_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            if email is not None:
                user.email = email
            user.updated_at = utcnow()
            return user

    def touch_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = utcnow()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            # ON DELETE CASCADE
            for token, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    del self.refresh_tokens[token]
            # ON DELETE SET NULL
            for entry in self.audit_log:
                if entry.user_id == user_id:
                    entry.user_id = None
            return True

    # refresh tokens
    def create_refresh_token(self, user_id: str, ttl_minutes: int) -> RefreshToken:
        record = RefreshToken.new(user_id, ttl_minutes=ttl_minutes)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.refresh_tokens[record.token] = record
        return record

    def consume_refresh_token(self, token: str) -> Optional[str]:
        """Delete a live refresh token and return its owner in one step."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_expired():
                return None
            del self.refresh_tokens[token]
            return record.user_id

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, r in self.refresh_tokens.items() if r.user_id == user_id]
            for token in doomed:
                del self.refresh_tokens[token]
            return len(doomed)

    def purge_expired_refresh_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            doomed = [t for t, r in self.refresh_tokens.items() if r.is_expired(now)]
            for token in doomed:
                del self.refresh_tokens[token]
        if doomed:
            self.logger.info("refresh_tokens_purged", count=len(doomed))
        return len(doomed)

    # audit log
    def append_audit_event(
        self,
        user_id: Optional[str],
        event_type: AuditEvent,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        with self._data_lock:
            if user_id is not None and user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            entry = AuditLogEntry(
                id=self._audit_seq,
                user_id=user_id,
                event_type=AuditEvent(event_type),
                ip_address=clip(ip_address, IP_ADDRESS_MAX_LENGTH),
                user_agent=clip(user_agent, USER_AGENT_MAX_LENGTH),
            )
            self._audit_seq += 1
            self.audit_log.append(entry)
            return entry

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                entry
                for entry in reversed(self.audit_log)
                if user_id is None or entry.user_id == user_id
            ]
        return entries[:limit]

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None
