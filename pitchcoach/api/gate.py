from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from pitchcoach.logging import get_logger
from pitchcoach.service.audit import RequestMeta
from pitchcoach.service.errors import AuthenticationError, AuthenticationRequiredError
from pitchcoach.service.runtime import Runtime
from pitchcoach.service.tokens import extract_bearer

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def require_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Resolve the caller from a bearer access token.

    Purely signature based; no store lookup happens here, so a deleted user's
    token keeps passing the gate until it expires.

    Raises:
        401 AUTH_REQUIRED: no bearer token presented
        401 TOKEN_EXPIRED: token was valid but is past its expiry
        401 INVALID_TOKEN: malformed, tampered or signed with another key
    """
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationRequiredError()
    user_id = runtime.tokens.verify_access_token(token)
    request.state.user_id = user_id
    return AuthContext(user_id=user_id)


async def optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    """Like :func:`require_user` but yields ``None`` instead of failing."""
    token = extract_bearer(authorization)
    if not token:
        return None
    try:
        user_id = runtime.tokens.verify_access_token(token)
    except AuthenticationError as exc:
        logger.info("optional_auth_ignored", error_code=exc.error_code)
        return None
    request.state.user_id = user_id
    return AuthContext(user_id=user_id)
