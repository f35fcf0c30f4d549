from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from campusauth.api.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    ResetPasswordRequest,
)
from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.service.auth import AuthContext, SessionTokens
from campusauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")


def _client_ip(request: Request, settings: Settings) -> Optional[str]:
    """First X-Forwarded-For hop when proxies are trusted, else the socket peer."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _set_refresh_cookie(
    response: Response, session: SessionTokens, settings: Settings
) -> None:
    max_age = session.refresh_token.max_age(datetime.now(timezone.utc))
    response.set_cookie(
        settings.refresh_cookie_name,
        session.refresh_token.value,
        max_age=max_age,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="strict",
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Dependency for handlers that need a verified access token."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Raises:
        401: If credentials are invalid or the account is disabled
        429: If the client IP exhausted its failed-login budget
    """
    runtime = get_runtime()
    session = await runtime.auth.login(
        body.username_or_email,
        body.password,
        _client_ip(request, runtime.settings),
    )
    _set_refresh_cookie(response, session, runtime.settings)
    return LoginResponse.from_session(session)


@router.post("/refresh", response_model=LoginResponse, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and issue a new access token."""
    runtime = get_runtime()
    presented = request.cookies.get(runtime.settings.refresh_cookie_name)
    session = await runtime.auth.refresh(presented)
    _set_refresh_cookie(response, session, runtime.settings)
    return LoginResponse.from_session(session)


@router.post("/logout", tags=["auth"])
async def logout(request: Request):
    runtime = get_runtime()
    presented = request.cookies.get(runtime.settings.refresh_cookie_name)
    await runtime.auth.logout(presented)
    response = Response(status_code=200)
    # Cleared whether or not a stored token matched
    _clear_refresh_cookie(response, runtime.settings)
    return response


@router.post("/forgot-password", tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always 200 so callers cannot probe which addresses are registered."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Response(status_code=200)


@router.post("/reset-password", tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Response(status_code=200)


@router.get("/me", response_model=MeResponse, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return MeResponse.from_context(principal)
