"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST     /api/v1/auth/register                 -- create account; returns {user, tokens} (201)
  POST     /api/v1/auth/login                    -- password login; returns {user, tokens}
  POST     /api/v1/auth/logout                   -- revoke every refresh token; clears cookie
  GET/POST /api/v1/auth/refresh-token            -- rotate the refresh token; returns a new pair
  POST     /api/v1/auth/verify-email             -- consume a verification token
  POST     /api/v1/auth/resend-verification      -- issue a fresh verification token
  POST     /api/v1/auth/forgot-password          -- mail a reset token; always succeeds
  POST     /api/v1/auth/reset-password           -- consume a reset token; revokes every session
  GET      /api/v1/auth/me                       -- current user
  GET      /api/v1/auth/providers                -- enabled OAuth providers (public)
  GET      /api/v1/auth/oauth/{provider}         -- redirect to the provider
  GET      /api/v1/auth/oauth/{provider}/callback -- finish OAuth login; returns {user, tokens}

Security:
  [H2] register, login and forgot-password are rate-limited per IP.
  [C1] AuthService.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers that touch the store or bcrypt are plain `def` so FastAPI runs them
in its threadpool. The OAuth handlers are async because authlib's starlette
client is; they hand the blocking account work to run_in_threadpool().
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    AuthData,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthProviderInfo,
    RegisterRequest,
    ResetPasswordRequest,
    TokensOut,
    UserOut,
    VerifyEmailRequest,
)
from api.responses import (
    REFRESH_COOKIE,
    REFRESH_HEADER,
    clear_refresh_cookie,
    set_refresh_cookie,
    success_response,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import BadRequestError
from auth.models import OAuthProfile, TokenPair, User
from auth.oauth import get_enabled_providers, get_oauth_profile
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("authx.api.auth")

_settings = get_settings()

# Auth policy:
# - register, login, refresh-token, verify-email, forgot-password,
#   reset-password, providers, oauth/*: public
# - logout, resend-verification, me: requires auth (get_current_user)
router = APIRouter()


def _auth_payload(message: str, user: User, pair: TokenPair, status_code: int = 200) -> JSONResponse:
    data = AuthData(
        user=UserOut.from_user(user),
        tokens=TokensOut(access_token=pair.access_token, refresh_token=pair.refresh_token),
    )
    resp = success_response(message, data, status_code=status_code, no_store=True)
    set_refresh_cookie(resp, pair.refresh_token)
    return resp


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
@limiter.limit(_settings.register_rate_limit)  # [H2] must sit BELOW @router so the registered endpoint is the limited one
def register(
    request: Request,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Create a local account and sign it in.

    The account starts unverified; a verification link is mailed on a
    best-effort basis.
    """
    user, pair = service.register(body.email, body.password, body.first_name, body.last_name)
    return _auth_payload(
        "User registered successfully. Please check your email to verify your account.",
        user,
        pair,
        status_code=201,
    )


@router.post("/auth/login")
@limiter.limit(_settings.login_rate_limit)  # [H2]
def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password.

    Every failure answers "Invalid email or password" so the response does
    not reveal whether the address is registered [C1].
    """
    user, pair = service.login(body.email, body.password)
    return _auth_payload("Login successful", user, pair)


@router.post("/auth/logout")
def logout(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke every refresh token of the caller and clear the cookie.

    Access tokens already issued stay valid until they expire.
    """
    service.logout(current_user)
    resp = success_response("Logout successful")
    clear_refresh_cookie(resp)
    return resp


@router.api_route("/auth/refresh-token", methods=["GET", "POST"])
def refresh_token(
    request: Request,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Exchange a refresh token for a new pair.

    The token is read from the X-Refresh-Token header when present (clients
    that cannot hold cookies), otherwise from the refreshToken cookie. It is
    spent by this call.
    """
    presented = request.headers.get(REFRESH_HEADER) or request.cookies.get(REFRESH_COOKIE)
    pair = service.refresh(presented)
    resp = success_response(
        "Token refreshed successfully",
        TokensOut(access_token=pair.access_token, refresh_token=pair.refresh_token),
        no_store=True,
    )
    set_refresh_cookie(resp, pair.refresh_token)
    return resp


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email")
def verify_email(
    body: VerifyEmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    user = service.verify_email(body.token)
    return success_response("Email verified successfully", {"user": UserOut.from_user(user).model_dump(by_alias=True)})


@router.post("/auth/resend-verification")
def resend_verification(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.resend_verification(current_user)
    return success_response("Verification email sent")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password")
@limiter.limit(_settings.forgot_password_rate_limit)  # [H2]
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Start a password reset. The answer is the same whether or not the account exists."""
    service.forgot_password(body.email)
    return success_response("If an account with that email exists, a password reset link has been sent")


@router.post("/auth/reset-password")
def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.reset_password(body.token, body.new_password)
    return success_response("Password reset successful. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the currently authenticated user."""
    return success_response(
        "User retrieved successfully",
        {"user": UserOut.from_user(current_user).model_dump(by_alias=True)},
    )


@router.get("/auth/providers")
async def list_providers() -> JSONResponse:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return success_response(
        "OAuth providers retrieved successfully",
        [OAuthProviderInfo(**p) for p in get_enabled_providers()],
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _require_enabled(provider: str) -> None:
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise BadRequestError(f"OAuth provider '{provider}' is not enabled")


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's consent page.

    authlib stores the state parameter in the session for the callback's
    CSRF check.
    """
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Finish the provider login and return a token pair.

    Flow:
      1. Exchange the authorization code (authlib verifies the state).
      2. Extract a verified email and stable subject id [H1].
      3. Find, link or create the account and issue a pair.
    """
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc)
        raise BadRequestError("OAuth authentication failed") from exc

    profile: OAuthProfile | None
    try:
        profile = await get_oauth_profile(client, provider, token)
    except ValueError as exc:
        logger.warning("OAuth login rejected for provider %r: %s", provider, exc)
        profile = None

    user, pair = await run_in_threadpool(service.oauth_login, profile)
    return _auth_payload("OAuth login successful", user, pair)
