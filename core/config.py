"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance and let the composition root pass it in.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_private_key -> JWT_PRIVATE_KEY). Type coercion is built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional signing key
      policy: dev mode runs on an ephemeral key with a warning, production mode
      refuses to start without key material.

Security notes:
  [K1] Signing keys are PEM text. Only the private key is secret; the public
       key may be distributed to any service that only verifies tokens.

  [K2] In production mode (DEBUG not set or false), missing key material is a
       hard startup failure. An ephemeral key would silently log every user out
       on each restart and break multi-instance deployments.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    jwt_issuer: str = "gatekeeper"

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60

    # How often the revocation store sweeps expired entries. Lookups honor
    # expiry regardless; this only bounds memory.
    blacklist_sweep_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    pkce_ttl_seconds: int = 10 * 60
    oauth_http_timeout_seconds: float = 10.0

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_url: str = ""
    google_scopes: str = "openid email profile"

    # Apple Sign In has no static client secret. The secret is an ES256 JWT
    # signed with this .p8 key, identified by team id + key id.
    apple_client_id: str = ""
    apple_team_id: str = ""
    apple_key_id: str = ""
    apple_private_key: str = ""
    apple_redirect_url: str = ""
    apple_scopes: str = "name email"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_auth_settings(self) -> "Settings":
        """Enforce TTL sanity and the signing key policy [K2].

        Dev mode (DEBUG=true): missing keys are allowed. TokenService generates
            an ephemeral RSA key; tokens will not survive a restart.

        Production mode: at least one of JWT_PRIVATE_KEY / JWT_PUBLIC_KEY must
            be set. A public key alone gives a verify-only deployment.
        """
        for name in (
            "access_token_ttl_seconds",
            "refresh_token_ttl_seconds",
            "blacklist_sweep_seconds",
            "pkce_ttl_seconds",
            "oauth_http_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")

        if self.refresh_token_ttl_seconds < self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must not be shorter than ACCESS_TOKEN_TTL_SECONDS.")

        if not self.jwt_private_key and not self.jwt_public_key:
            if self.debug:
                logger.warning(
                    "WARNING: No JWT signing keys configured. "
                    "An ephemeral key will be generated; tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "JWT_PRIVATE_KEY is required in production mode. "
                    "Set JWT_PRIVATE_KEY (and optionally JWT_PUBLIC_KEY) in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Services never call this themselves; the composition root does and passes
    the instance down.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
