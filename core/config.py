"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StaffAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic (dev mode generates a key with a warning, production mode refuses
      to start without one) and for the TTL / refresh-threshold relationship.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
  hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("staffauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "JovyWeb"
    jwt_audience: str = "JovyWeb-API"
    # 15 minutes for access tokens, 7 days for refresh tokens.
    access_token_ttl_seconds: int = Field(default=900, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    # Requests carrying an access token that expires within this window are
    # silently refreshed at the HTTP boundary.
    refresh_threshold_seconds: int = Field(default=120, ge=0)

    # ------------------------------------------------------------------
    # Sessions / blacklist
    # ------------------------------------------------------------------

    blacklist_retention_seconds: int = Field(default=24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Brute-force protection
    # ------------------------------------------------------------------

    rate_limit_max_attempts: int = Field(default=5, gt=0)
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_block_seconds: int = Field(default=15 * 60, gt=0)
    # Coarse per-route throttle applied by slowapi on /login and /refresh,
    # independent of the failed-attempt limiter above.
    login_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Device binding
    # ------------------------------------------------------------------

    device_validation_enabled: bool = False
    device_mismatch_action: Literal["WARN", "BLOCK"] = "WARN"

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    # Secure by default; local HTTP development sets SECURE_COOKIES=false.
    secure_cookies: bool = True

    # ------------------------------------------------------------------
    # Identity authority
    # ------------------------------------------------------------------

    # Empty string means no authority is configured and every login fails.
    identity_authority_url: str = ""
    identity_authority_timeout: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Keep the refresh threshold and TTLs consistent.

        A threshold at or above the access TTL would make every fresh token
        "near expiry" and trigger a refresh on every request. A refresh token
        that dies before its access token could never be redeemed.
        """
        if self.refresh_threshold_seconds >= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_THRESHOLD_SECONDS must be smaller than ACCESS_TOKEN_TTL_SECONDS.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be larger than ACCESS_TOKEN_TTL_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need a specific configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
