"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionVault happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. refresh_secret_key -> REFRESH_SECRET_KEY).

  @model_validator(mode="after"): Cross-field validation of the two signing
      keys once every field has been resolved.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright. HS256 relies
       on key entropy -- a short key weakens every token issued with it.

  [M7] In production mode (DEBUG not set or false), a missing signing key is a
       hard startup failure. Dev mode generates throwaway keys with a warning.

  [M8] Access and refresh tokens live in separate signing domains. Identical
       keys would let a refresh token pass as an access token, so equal keys
       are rejected.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionvault.config")

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    log_level: str = "INFO"
    # Empty string is the "not configured" sentinel, resolved by the validator.
    secret_key: str = ""
    refresh_secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "serverless-api"
    token_audience: str = "api-users"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    # Off: refresh returns a new access token only and the refresh token
    # stays valid until expiry or revocation.
    rotate_refresh_tokens: bool = False
    password_reset_expire_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    max_login_attempts: int = 5
    lockout_seconds: int = 30 * 60
    max_refresh_tokens: int = 5

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_ROOT / 'auth' / 'sessionvault_auth.db'}"
    db_timeout_seconds: int = 10
    state_cache_path: str = str(_ROOT / "cache" / "sessionvault_state.db")
    connection_state_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "5/15minutes"
    register_rate_limit: str = "3/hour"
    password_reset_rate_limit: str = "3/hour"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce signing-key policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.
        """
        for field, env_name in (("secret_key", "SECRET_KEY"), ("refresh_secret_key", "REFRESH_SECRET_KEY")):
            value = getattr(self, field)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        f"Set {env_name} in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, field, value)
                logger.warning("WARNING: Using auto-generated %s. Tokens will not persist across restarts.", env_name)
            if len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
