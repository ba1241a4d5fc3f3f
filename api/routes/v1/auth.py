"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes (all under /api/v1):
  POST  /auth/signup                   -- create unverified account; 201, no tokens
  POST  /auth/login                    -- password login; access token + refresh cookie
  GET   /auth/verify-email/{token}     -- consume verification token; starts session
  POST  /auth/resend-verification      -- new verification email (unverified only)
  POST  /auth/refresh                  -- rotate refresh cookie; new access token
  POST  /auth/logout                   -- revoke refresh token; clear cookie
  GET   /auth/me                       -- current user (requires auth)
  PUT   /auth/profile                  -- update name / profile image (requires auth)
  PUT   /auth/change-password          -- re-verify + new password; ends session
  POST  /auth/forgot-password          -- send reset link; always 200
  POST  /auth/reset-password           -- consume reset token; new password
  PATCH /auth/users/{id}               -- role / active flag (admin only)
  GET   /auth/providers                -- enabled OAuth providers (public)
  GET   /auth/oauth/{provider}         -- start provider login
  GET   /auth/oauth/{provider}/callback

Security:
  [H2] Credential-mutating routes run the rate_limit dependency (per client
       address, fixed window, AUTH_RATE_LIMIT).
  [C1] SessionService.login() provides timing equalization -- use it, never inline.
  [M4] PATCH /users/{id} blocks self-deactivation.
  [M5] Cache-Control: no-store on every response that carries a token.

The refresh cookie is path-scoped to /api/v1/auth/refresh, so browsers do
not send it to /logout. Logout therefore accepts either the cookie (when a
client sends it) or the Bearer access token to identify the session.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import rate_limit
from api.models import (
    AccessTokenResponse,
    AccountPatch,
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    ProfileUpdate,
    ResetPasswordRequest,
    SignupRequest,
    SignupResponse,
    UserResponse,
)
from auth.dependencies import bearer_token, get_current_user, require_admin
from auth.errors import AuthError
from auth.models import AccessClaims, AuthResult
from auth.oauth import get_client, get_enabled_providers, identity_from_token
from auth.session import SessionService
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie
from core.config import get_settings

logger = logging.getLogger("authcore.api.auth")

# Auth policy:
# - signup, login, verify-email, resend-verification, refresh,
#   forgot-password, reset-password, providers, oauth/*: public
# - logout: public -- identifies the session by cookie or Bearer token
# - me, profile, change-password: requires auth (get_current_user)
# - users/{id}: requires admin (require_admin)
router = APIRouter()


def _service(request: Request) -> SessionService:
    return request.app.state.session_service


def _start_session_response(request: Request, response: Response, result: AuthResult, message: str) -> AuthResponse:
    """Attach the refresh cookie and build the {user, accessToken} body."""
    set_refresh_cookie(response, result.refresh.raw, _service(request).rotator.ttl_seconds)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        message=message,
        user=UserResponse.from_account(result.account),
        access_token=result.access_token,
        expires_in=_service(request).issuer.ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Signup and email verification
# ---------------------------------------------------------------------------


@router.post(
    "/auth/signup",
    response_model=SignupResponse,
    status_code=201,
    dependencies=[Depends(rate_limit)],
)
def signup(request: Request, body: SignupRequest) -> SignupResponse:
    """Create an unverified account and send the verification email.

    No tokens are issued here; the session starts when the emailed link is
    followed (GET /auth/verify-email/{token}).
    """
    account = _service(request).signup(
        full_name=body.full_name,
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
        role=body.role,
    )
    return SignupResponse(
        message="Registration successful. Please check your email to verify your account.",
        user=UserResponse.from_account(account),
    )


@router.get("/auth/verify-email/{token}", response_model=AuthResponse)
def verify_email(request: Request, response: Response, token: str) -> AuthResponse:
    """Consume a verification token; 400 when it is unknown, used, or expired."""
    result = _service(request).verify_email(token)
    return _start_session_response(request, response, result, "Email verified successfully.")


@router.post(
    "/auth/resend-verification",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit)],
)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    _service(request).resend_verification(body.email)
    return MessageResponse(message="Verification email sent. Please check your inbox.")


# ---------------------------------------------------------------------------
# Session: login / refresh / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=AuthResponse, dependencies=[Depends(rate_limit)])
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password both return 401 bad_credentials [C1].
    Deactivated and unverified accounts get distinct 403s.
    """
    result = _service(request).login(body.email, body.password)
    return _start_session_response(request, response, result, "Login successful.")


@router.post("/auth/refresh", response_model=AccessTokenResponse, dependencies=[Depends(rate_limit)])
def refresh(request: Request, response: Response) -> AccessTokenResponse:
    """Rotate the refresh cookie and return a new access token.

    The presented cookie value is single-use: after this call succeeds it is
    rejected with 401 invalid_refresh_token.
    """
    result = _service(request).refresh(request.cookies.get(REFRESH_COOKIE_NAME))
    set_refresh_cookie(response, result.refresh.raw, _service(request).rotator.ttl_seconds)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AccessTokenResponse(
        access_token=result.access_token,
        expires_in=_service(request).issuer.ttl_seconds,
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, response: Response) -> MessageResponse:
    """Revoke the stored refresh token and clear the cookie. Always 200."""
    service = _service(request)
    account_id: int | None = None
    token = bearer_token(request)
    if token:
        try:
            account_id = service.issuer.verify(token).account_id
        except AuthError as exc:
            logger.info("Logout with unusable access token: %s", exc.code)
    service.logout(request.cookies.get(REFRESH_COOKIE_NAME), account_id=account_id)
    clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully.")


# ---------------------------------------------------------------------------
# Authenticated account endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: AccessClaims = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the authenticated account."""
    return UserResponse.from_account(_service(request).get_account(current_user.account_id))


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    current_user: AccessClaims = Depends(get_current_user),
) -> UserResponse:
    account = _service(request).update_profile(
        current_user.account_id,
        full_name=body.full_name,
        profile_image=body.profile_image,
    )
    return UserResponse.from_account(account)


@router.put(
    "/auth/change-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit)],
)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    current_user: AccessClaims = Depends(get_current_user),
) -> MessageResponse:
    """Change the password after re-verifying the current one.

    The refresh session is revoked, so the client must log in again once the
    current access token expires.
    """
    _service(request).change_password(
        current_user.account_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    clear_refresh_cookie(response)
    return MessageResponse(message="Password changed successfully. Please log in again.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post(
    "/auth/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit)],
)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Always 200 with the same message, whether or not the email is registered."""
    _service(request).forgot_password(body.email)
    return MessageResponse(message="If an account exists for that email, a password reset link has been sent.")


@router.post(
    "/auth/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit)],
)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.password, body.confirm_password)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Account management (admin only)
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: AccountPatch,
    current_user: AccessClaims = Depends(require_admin),
) -> UserResponse:
    """Change a user's role or active flag. Admin only.

    [M4] Self-deactivation is rejected. Deactivation revokes the target's
    refresh session and invalidates its auth-cache entry, so protected
    requests with a still-valid access token fail immediately.
    """
    account = _service(request).update_account_status(
        current_user,
        user_id,
        is_active=body.is_active,
        role=body.role,
    )
    return UserResponse.from_account(account)


# ---------------------------------------------------------------------------
# Identity providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list when none are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_login(request: Request, provider: str):
    """Redirect to the provider's consent screen. authlib stores state in the session."""
    client = get_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"OAuth provider {provider!r} is not enabled."},
        )
    redirect_uri = request.url_for("oauth_callback", provider=provider)
    return await client.authorize_redirect(request, str(redirect_uri))


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the provider login and hand the session to the frontend.

    The access token goes in the URL fragment (never sent to servers or
    logged by proxies); the refresh token is set as the usual cookie.
    Any failure redirects to the frontend login page with an error flag.
    """
    frontend_url = get_settings().frontend_url.rstrip("/")
    client = get_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"OAuth provider {provider!r} is not enabled."},
        )

    try:
        token = await client.authorize_access_token(request)
        identity = identity_from_token(provider, token)
        result = await run_in_threadpool(_service(request).provider_login, identity)
    except AuthError as exc:
        logger.warning("%s OAuth login rejected: %s", provider, exc.code)
        return RedirectResponse(f"{frontend_url}/login?error={quote(exc.code)}", status_code=302)
    except Exception:
        logger.exception("%s OAuth callback failed", provider)
        return RedirectResponse(f"{frontend_url}/login?error=oauth_failed", status_code=302)

    response = RedirectResponse(
        f"{frontend_url}/auth/callback#access_token={quote(result.access_token)}",
        status_code=302,
    )
    set_refresh_cookie(response, result.refresh.raw, _service(request).rotator.ttl_seconds)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response
