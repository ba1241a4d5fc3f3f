"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected routes require an `Authorization: Bearer <accessToken>` header.
The token is verified by SessionService.authenticate(): signature and expiry
from the token itself, active state from the auth cache (store on a miss).

get_current_user() raises 401 on a missing, invalid or expired token, or an
unknown or deactivated account. require_role() wraps it and raises 403 when
the token's role is not allowed. require_admin is require_role("admin").

Layer rule: no imports from api/, cache/, or notify/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import AuthenticationError, AuthorizationError
from auth.models import AccessClaims


def bearer_token(request: Request) -> str | None:
    """Return the raw token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> AccessClaims:
    """Require authentication. Raises AuthenticationError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AccessClaims = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise AuthenticationError("Authentication required.")
    claims = request.app.state.session_service.authenticate(token)
    request.state.user = claims
    return claims


def require_role(*roles: str) -> Callable[..., AccessClaims]:
    """Build a dependency that admits only the given roles (403 otherwise)."""

    def _dependency(user: AccessClaims = Depends(get_current_user)) -> AccessClaims:
        if user.role not in roles:
            raise AuthorizationError("You do not have permission to perform this action.")
        return user

    return _dependency


require_admin = require_role("admin")
