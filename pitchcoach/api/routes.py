from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from pitchcoach.api.gate import (
    AuthContext,
    get_runtime,
    optional_user,
    request_meta,
    require_user,
)
from pitchcoach.api.schemas import (
    MAX_TOKEN_LENGTH,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    TokenPairResponse,
    UserView,
)
from pitchcoach.service.runtime import Runtime

router = APIRouter()


@router.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Create a new user account.

    Returns the public user view with a fresh access/refresh token pair.

    Raises:
        400: If a field is missing, the password is too short, or the email
            is already registered (code DUPLICATE_EMAIL)
    """
    result = await runtime.sessions.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        meta=request_meta(request),
    )
    return AuthResponse(
        user=UserView.from_user(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
    )


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate user with email and password.

    Raises:
        400: If email or password is missing
        401: If credentials are invalid (same answer for unknown accounts)
    """
    result = await runtime.sessions.login(
        email=body.email, password=body.password, meta=request_meta(request)
    )
    return AuthResponse(
        user=UserView.from_user(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
    )


@router.post("/auth/refresh-token", response_model=TokenPairResponse, tags=["auth"])
async def refresh_token(
    body: RefreshTokenRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Exchange a refresh token for a new token pair.

    The presented token is consumed; it can never be used again.

    Raises:
        400: If refreshToken is missing
        401: If the token is unknown or expired
        404: If the owning user no longer exists
    """
    pair = await runtime.sessions.refresh(body.refresh_token, meta=request_meta(request))
    return TokenPairResponse(
        access_token=pair.access_token, refresh_token=pair.refresh_token
    )


async def _logout_token(request: Request) -> Optional[str]:
    """Pull ``refreshToken`` out of the logout body.

    Logout never fails on its input: an unreadable body, a non-string value or
    an oversized token all count as "no token presented".
    """
    try:
        payload = await request.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    token = payload.get("refreshToken")
    if not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
        return None
    return token


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    request: Request,
    principal: Optional[AuthContext] = Depends(optional_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.sessions.logout(
        await _logout_token(request),
        user_id=principal.user_id if principal else None,
        meta=request_meta(request),
    )
    return MessageResponse(message="Logged out successfully")


@router.get("/user/profile", response_model=UserView, tags=["user"])
async def get_profile(
    principal: AuthContext = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.sessions.get_profile(principal.user_id)
    return UserView.from_user(user)


@router.put("/user/profile", response_model=UserView, tags=["user"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Partially update first name, last name and/or email.

    Raises:
        400: If nothing to update, or the email belongs to another account
        404: If the authenticated user no longer exists
    """
    user = await runtime.sessions.update_profile(
        principal.user_id,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
    )
    return UserView.from_user(user)


@router.put("/user/change-password", response_model=MessageResponse, tags=["user"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Replace the caller's password after checking the current one.

    All outstanding refresh tokens of the user are revoked.

    Raises:
        400: If a field is missing or the new password is too short
        401: If the current password is incorrect
    """
    await runtime.sessions.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        meta=request_meta(request),
    )
    return MessageResponse(message="Password updated successfully")
