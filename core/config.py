"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthX happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation of the signing
      secrets. Dev mode generates missing secrets with a warning; production
      mode refuses to start without them.

Security notes:
  [M6] Any secret shorter than 32 chars is rejected outright. HMAC-SHA256 and
       JWT signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] Access and refresh tokens are signed with different secrets so that
       leaking one cannot be used to forge the other. Identical values are
       rejected.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authx.config")

_SECRET_FIELDS = ("secret_key", "jwt_access_secret", "jwt_refresh_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "AuthX"
    app_version: str = "1.0.0"
    # Public URL used to build links in outbound email.
    base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///authx.db"
    db_pool_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Secrets -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    secret_key: str = ""  # session middleware + HMAC of stored token digests
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    email_verification_expire_hours: int = 24
    password_reset_expire_minutes: int = 10

    # bcrypt work factor. 12 in production; tests lower it to 4.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_samesite: str = "lax"

    # ------------------------------------------------------------------
    # SMTP (empty host = dev mode, messages are logged instead of sent)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 10
    mail_from: str = "AuthX <noreply@authx.local>"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    oauth_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    forgot_password_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def refresh_cookie_max_age(self) -> int:
        return self.refresh_token_expire_days * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.
        """
        for field in _SECRET_FIELDS:
            value = getattr(self, field)
            env_name = field.upper()
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        f"Set {env_name} in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, field, value)
                logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", env_name)
            if len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.cookie_samesite.lower() not in ("lax", "strict", "none"):
            raise ValueError("COOKIE_SAMESITE must be one of: lax, strict, none.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
