from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from pitchcoach.logging import get_logger
from pitchcoach.service.audit import AuditRecorder, RequestMeta
from pitchcoach.service.credentials import (
    MAX_PASSWORD_LENGTH,
    MIN_PASSWORD_LENGTH,
    CredentialService,
)
from pitchcoach.service.errors import (
    IncorrectPasswordError,
    InvalidCredentialsError,
    UserNotFoundError,
    ValidationError,
)
from pitchcoach.service.tokens import TokenIssuer, TokenPair
from pitchcoach.storage.errors import ConstraintViolation
from pitchcoach.storage.models import AuditEvent, User

logger = get_logger(__name__)


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _check_password_length(password: str, *, label: str = "Password") -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"{label} must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"{label} must be at most {MAX_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class SessionManager:
    """Register, login, refresh and logout flows.

    There is no server-side session object. Identity is carried by a
    short-lived access token and continued by rotating single-use refresh
    tokens. Input validation always runs before any store access. Password
    hashing runs in a worker thread so it does not stall the event loop.
    """

    def __init__(
        self,
        credentials: CredentialService,
        tokens: TokenIssuer,
        audit: AuditRecorder,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.audit = audit

    async def register(
        self,
        email: Optional[str],
        password: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        if any(_blank(v) for v in (first_name, last_name, email)) or not password:
            raise ValidationError("All fields are required")
        _check_password_length(password)
        user = await asyncio.to_thread(
            self.credentials.create_user, email, password, first_name, last_name
        )
        pair = self.tokens.issue_pair(user.id)
        self.audit.record(AuditEvent.REGISTER, user.id, meta)
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        if _blank(email) or not password:
            raise ValidationError("Email and password are required")
        user = self.credentials.find_by_email(email)
        if not user:
            await asyncio.to_thread(self.credentials.burn_verify, password)
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        verified = await asyncio.to_thread(
            self.credentials.verify_password, user.id, password
        )
        if not verified:
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        self.credentials.store.touch_last_login(user.id)
        pair = self.tokens.issue_pair(user.id)
        self.audit.record(AuditEvent.LOGIN, user.id, meta)
        logger.info("user_logged_in", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def refresh(
        self, refresh_token: Optional[str], meta: Optional[RequestMeta] = None
    ) -> TokenPair:
        if _blank(refresh_token):
            raise ValidationError("Refresh token is required")
        # The presented token is gone from here on, whatever happens next
        user_id = self.tokens.consume_refresh_token(refresh_token)
        user = self.credentials.find_by_id(user_id)
        if not user:
            logger.warning("refresh_for_missing_user", user_id=user_id)
            raise UserNotFoundError()
        try:
            pair = self.tokens.issue_pair(user.id)
        except ConstraintViolation as exc:
            # User deleted between lookup and insert
            raise UserNotFoundError() from exc
        self.audit.record(AuditEvent.TOKEN_REFRESH, user.id, meta)
        logger.info("tokens_refreshed", user_id=user.id)
        return pair

    async def logout(
        self,
        refresh_token: Optional[str],
        user_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        if not _blank(refresh_token):
            try:
                removed = self.tokens.revoke_refresh_token(refresh_token)
            except Exception as exc:
                logger.error(
                    "logout_revoke_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                )
            else:
                logger.info("refresh_token_revoked", user_id=user_id, matched=removed)
        if user_id:
            self.audit.record(AuditEvent.LOGOUT, user_id, meta)

    async def get_profile(self, user_id: str) -> User:
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        # Empty strings count as "not provided"
        updates = {
            key: value
            for key, value in (
                ("first_name", first_name),
                ("last_name", last_name),
                ("email", email),
            )
            if not _blank(value)
        }
        if not updates:
            raise ValidationError("No updates provided")
        return self.credentials.update_profile(user_id, **updates)

    async def change_password(
        self,
        user_id: str,
        current_password: Optional[str],
        new_password: Optional[str],
        meta: Optional[RequestMeta] = None,
    ) -> None:
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required")
        _check_password_length(new_password, label="New password")
        if not self.credentials.find_by_id(user_id):
            raise UserNotFoundError()
        verified = await asyncio.to_thread(
            self.credentials.verify_password, user_id, current_password
        )
        if not verified:
            raise IncorrectPasswordError()
        await asyncio.to_thread(self.credentials.set_password, user_id, new_password)
        revoked = self.tokens.revoke_all_refresh_tokens(user_id)
        self.audit.record(AuditEvent.PASSWORD_CHANGE, user_id, meta)
        logger.info("password_changed", user_id=user_id, refresh_tokens_revoked=revoked)
