"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered; GET /api/v1/auth/providers lists them.

Security notes:
  [H1] Email verification is mandatory. get_oauth_profile() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email from GitHub could belong to an attacker who added a victim's
       address without confirming it, and the callback would then link the
       attacker's identity to the victim's account.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware.

Every outbound provider call uses a bounded timeout (OAUTH_TIMEOUT_SECONDS).

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel layer.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile
from core.config import get_settings

logger = logging.getLogger("authx.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email", "timeout": _cfg.oauth_timeout_seconds},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile", "timeout": _cfg.oauth_timeout_seconds},
    )
    logger.info("Google OAuth provider registered")

# Generic OIDC -- Okta, Azure AD, Keycloak, Authentik, etc.
if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile", "timeout": _cfg.oauth_timeout_seconds},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile.

    Raises:
        ValueError: unknown provider, or a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider in ("google", "oidc"):
        return _get_oidc_profile(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two API calls: /user for id/name/avatar, /user/emails for the address.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    return OAuthProfile(
        provider="github",
        subject=str(profile["id"]),
        email=email,
        display_name=profile.get("name") or profile.get("login") or "",
        avatar=profile.get("avatar_url"),
    )


def _get_oidc_profile(token: dict, provider: str) -> OAuthProfile:
    """Google and generic OIDC return claims in the id_token userinfo.

    [H1] The email claim is only accepted when email_verified is True. A
    missing email_verified claim is treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    display_name = userinfo.get("name") or " ".join(
        part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
    )
    return OAuthProfile(
        provider=provider,
        subject=str(subject),
        email=email,
        display_name=display_name,
        avatar=userinfo.get("picture"),
    )
