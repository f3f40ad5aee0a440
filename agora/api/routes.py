from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from agora.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    GoogleURLResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from agora.service.auth import AuthContext
from agora.service.errors import InvalidRefreshTokenError
from agora.service.runtime import Runtime
from agora.service.tokens import TokenPair
from agora.storage.models import User

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Authenticate from the access-token cookie, falling back to a Bearer header."""
    token = request.cookies.get(runtime.settings.access_token_cookie_key) or _bearer_token(
        authorization
    )
    return await runtime.auth.authenticate(token)


def _apply_token_cookies(response: Response, runtime: Runtime, pair: TokenPair) -> None:
    settings = runtime.settings
    for key, value, max_age in (
        (settings.access_token_cookie_key, pair.access_token, pair.access_expires_in),
        (settings.refresh_token_cookie_key, pair.refresh_token, pair.refresh_expires_in),
    ):
        response.set_cookie(
            key,
            value,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            max_age=max_age,
            path="/",
        )


def _clear_token_cookies(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    for key in (settings.access_token_cookie_key, settings.refresh_token_cookie_key):
        response.delete_cookie(
            key, path="/", secure=settings.is_production, httponly=True, samesite="lax"
        )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        avatar_url=user.avatar_url,
        auth_provider=user.auth_provider,
        created_at=user.created_at,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.access_expires_in,
        refresh_expires_in=pair.refresh_expires_in,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an email/password account. Does not sign the user in."""
    user = await runtime.auth.register(body.email, body.username, body.password)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Authenticate with email and password and set both token cookies.

    Raises:
        400: If the account was created through Google sign-in
        401: If credentials are invalid
    """
    user, pair = await runtime.auth.login(body.email, body.password)
    _apply_token_cookies(response, runtime, pair)
    return Envelope(
        status="ok", data=AuthResponse(user=_user_response(user), tokens=_token_response(pair))
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """Rotate the refresh token from the body or cookie; each token works once."""
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_token_cookie_key
    )
    if not token:
        raise InvalidRefreshTokenError()
    pair = await runtime.auth.refresh(token)
    _apply_token_cookies(response, runtime, pair)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_token_cookie_key
    )
    await runtime.auth.logout(token)
    _clear_token_cookies(response, runtime)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/google/url", response_model=Envelope, tags=["auth"])
async def google_url(runtime: Runtime = Depends(get_runtime)):
    url = await runtime.auth.google_authorization_url()
    return Envelope(status="ok", data=GoogleURLResponse(url=url))


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    response: Response,
    code: str = Query(""),
    state: str = Query(""),
    runtime: Runtime = Depends(get_runtime),
):
    """Finish the Google handshake and set both token cookies.

    Every state or provider failure is reported as one 401.
    """
    user, pair = await runtime.auth.complete_google_login(code, state)
    _apply_token_cookies(response, runtime, pair)
    return Envelope(
        status="ok", data=AuthResponse(user=_user_response(user), tokens=_token_response(pair))
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    """Email a reset link. The response is the same whether or not the account exists."""
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the email exists, a password reset link has been sent"},
    )


@router.post("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    token: str, body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.complete_password_reset(token, body.password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_current_user(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    user = await runtime.auth.current_user(principal)
    return Envelope(status="ok", data=_user_response(user))
