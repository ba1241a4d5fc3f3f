"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered -- GET /api/v1/auth/providers reports the same set
via get_enabled_providers().

The handshake itself (redirect, code exchange, id_token validation) belongs
to authlib. This module's only other job is turning the provider's userinfo
into a ProviderIdentity, which is all SessionService.provider_login() sees.

Security notes:
  [H1] Email verification is mandatory. identity_from_token() raises
       ValueError if the provider does not confirm the email is verified.
       Linking by email to an existing account is only safe for an address
       the provider has verified.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback -- never trust state from query params
  alone.

Supported providers (both OIDC discovery):
  google   -- accounts.google.com
  linkedin -- "Sign In with LinkedIn using OpenID Connect"

Layer rule: no imports from api/, cache/, or notify/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import ProviderIdentity
from core.config import get_settings

logger = logging.getLogger("authcore.auth.oauth")

_PROVIDERS = {
    "google": {
        "label": "Google",
        "server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration",
        "client_kwargs": {"scope": "openid email profile"},
    },
    "linkedin": {
        "label": "LinkedIn",
        "server_metadata_url": "https://www.linkedin.com/oauth/.well-known/openid-configuration",
        # LinkedIn rejects client_secret_basic at the token endpoint.
        "client_kwargs": {"scope": "openid profile email", "token_endpoint_auth_method": "client_secret_post"},
    },
}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()


def _credentials(name: str) -> tuple[str, str]:
    cfg = get_settings()
    return getattr(cfg, f"{name}_client_id"), getattr(cfg, f"{name}_client_secret")


for _name, _meta in _PROVIDERS.items():
    _client_id, _client_secret = _credentials(_name)
    if _client_id and _client_secret:
        oauth.register(
            name=_name,
            client_id=_client_id,
            client_secret=_client_secret,
            server_metadata_url=_meta["server_metadata_url"],
            client_kwargs=_meta["client_kwargs"],
        )
        logger.info("%s OAuth provider registered", _meta["label"])


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    providers: list[dict] = []
    for name, meta in _PROVIDERS.items():
        client_id, client_secret = _credentials(name)
        if client_id and client_secret:
            providers.append({"name": name, "label": meta["label"]})
    return providers


def get_client(provider: str):
    """Return the registered authlib client, or None if the provider is not enabled."""
    if provider not in _PROVIDERS:
        return None
    return oauth.create_client(provider)


# ---------------------------------------------------------------------------
# Identity normalization [H1]
# ---------------------------------------------------------------------------


def identity_from_token(provider: str, token: dict) -> ProviderIdentity:
    """Build a ProviderIdentity from an authlib token response.

    Both providers return an id_token whose parsed claims (token["userinfo"])
    include sub, email, email_verified, name and picture.

    Raises:
        ValueError: no userinfo, unverified email, or missing email/sub.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    # LinkedIn sends email_verified as the string "true" in some responses.
    verified = userinfo.get("email_verified", False)
    if verified not in (True, "true"):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    display_name = userinfo.get("name") or " ".join(
        part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
    )
    return ProviderIdentity(
        provider=provider,
        provider_id=str(subject_id),
        email=email,
        display_name=display_name,
        photo_url=userinfo.get("picture"),
    )
