from __future__ import annotations

import re
import unicodedata
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pitchcoach.logging import get_logger
from pitchcoach.service.errors import (
    DuplicateEmailError,
    EmailInUseError,
    UserNotFoundError,
    ValidationError,
)
from pitchcoach.storage.errors import ConstraintViolation
from pitchcoach.storage.models import AuditEvent, AuditLogEntry, RefreshToken, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool: ...

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]: ...

    def touch_last_login(self, user_id: str) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_refresh_token(self, user_id: str, ttl_minutes: int) -> RefreshToken: ...

    def consume_refresh_token(self, token: str) -> Optional[str]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def purge_expired_refresh_tokens(self) -> int: ...

    def append_audit_event(
        self,
        user_id: Optional[str],
        event_type: AuditEvent,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry: ...

    def list_audit_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def canonical_email(value: str) -> str:
    """NFKC-fold, trim and lowercase an address without judging its shape."""
    return unicodedata.normalize("NFKC", value).strip().lower()


def normalize_email(value: str) -> str:
    """Canonicalize and validate an email address.

    Raises:
        ValidationError: if the address is not plausibly deliverable.
    """
    normalized = canonical_email(value)
    if len(normalized) > 254:
        raise ValidationError("Email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValidationError("Invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("Invalid email address")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError("Invalid email address")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("Invalid email address")
    return normalized


class CredentialService:
    """User identity and password handling on top of an :class:`AuthStore`."""

    def __init__(self, store: AuthStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store: AuthStore = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def check_password(self, stored_hash: str, candidate: str) -> bool:
        """Compare a candidate against a stored digest via argon2's own verify."""
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def burn_verify(self, candidate: str) -> None:
        """Spend one hash verification so unknown emails cost as much as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("pitchcoach-timing-equalizer")
        self.check_password(self._dummy_hash, candidate)

    def create_user(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> User:
        normalized = normalize_email(email)
        pwd_hash, algo = self.hash_password(password)
        try:
            user = self.store.create_user(
                normalized,
                first_name.strip(),
                last_name.strip(),
                password_hash=pwd_hash,
                password_algo=algo,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            raise
        logger.info("user_created", user_id=user.id)
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(canonical_email(email))

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def verify_password(self, user_id: str, candidate: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        if not self.check_password(stored_hash, candidate):
            logger.info("password_verification_failed", user_id=user_id)
            return False
        return True

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        if not self.store.update_password(user_id, pwd_hash, algo):
            raise UserNotFoundError()

    def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email) if email is not None else None
        if normalized is not None:
            # Early answer for the common case; the unique index still decides races
            existing = self.store.get_user_by_email(normalized)
            if existing and existing.id != user_id:
                raise EmailInUseError()
        try:
            user = self.store.update_user(
                user_id,
                first_name=first_name.strip() if first_name is not None else None,
                last_name=last_name.strip() if last_name is not None else None,
                email=normalized,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailInUseError() from exc
            raise
        if not user:
            raise UserNotFoundError()
        logger.info("user_profile_updated", user_id=user_id)
        return user
