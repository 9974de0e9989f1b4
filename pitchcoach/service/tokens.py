from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple

from pitchcoach.config import Settings
from pitchcoach.logging import get_logger
from pitchcoach.service.credentials import AuthStore
from pitchcoach.service.errors import (
    InvalidTokenError,
    RefreshTokenInvalidError,
    TokenExpiredError,
)

logger = get_logger(__name__)

_JWT_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenIssuer:
    """Mints stateless HS256 access tokens and persisted opaque refresh tokens."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock
        self._key = settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps(_JWT_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        # Reject anything not signed with our algorithm (no "none", no RS/HS swaps)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        return payload

    def issue_access_token(self, user_id: str) -> Tuple[str, datetime]:
        issued_at = int(self._clock())
        expires_at = issued_at + self.settings.access_token_ttl_minutes * 60
        token = self._encode_jwt({"sub": user_id, "iat": issued_at, "exp": expires_at})
        return token, datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def verify_access_token(self, token: str) -> str:
        """Return the subject of a valid access token.

        Raises:
            TokenExpiredError: signature checks out but ``exp`` has passed.
            InvalidTokenError: any format, algorithm or signature problem.
        """
        payload = self._decode_jwt(token)
        subject = payload.get("sub")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError()
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        if exp <= self._clock():
            raise TokenExpiredError()
        return subject

    def issue_refresh_token(self, user_id: str) -> Tuple[str, datetime]:
        record = self.store.create_refresh_token(
            user_id, ttl_minutes=self.settings.refresh_token_ttl_minutes
        )
        return record.token, record.expires_at

    def consume_refresh_token(self, value: str) -> str:
        """Atomically remove a live refresh token and return its owner.

        Unknown and expired values fail identically.
        """
        user_id = self.store.consume_refresh_token(value)
        if not user_id:
            raise RefreshTokenInvalidError()
        return user_id

    def revoke_refresh_token(self, value: str) -> bool:
        return self.store.delete_refresh_token(value)

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        return self.store.delete_user_refresh_tokens(user_id)

    def issue_pair(self, user_id: str) -> TokenPair:
        refresh_token, refresh_expires_at = self.issue_refresh_token(user_id)
        access_token, access_expires_at = self.issue_access_token(user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
