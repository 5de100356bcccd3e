"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the panel auth core happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or accept a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates a signing key with a warning;
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. The access token MAC
  relies on key entropy -- a short key makes offline brute force practical.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hostpanel.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true still needs to be set,
    or a SECRET_KEY supplied).
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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_DATA_DIR / 'hostpanel_auth.db'}"
    db_connect_timeout: float = 5.0
    # Empty string selects the SQLite-backed session cache in cache_path.
    redis_url: str = ""
    redis_socket_timeout: float = 2.0
    cache_path: str = str(_DATA_DIR / "hostpanel_sessions.db")

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    session_timeout_seconds: int = 24 * 3600
    token_issuer: str = "hostpanel"

    # ------------------------------------------------------------------
    # Password policy (each rule independently toggleable)
    # ------------------------------------------------------------------

    password_min_length: int = 8
    password_require_upper: bool = True
    password_require_lower: bool = True
    password_require_digit: bool = True
    password_require_special: bool = True

    # ------------------------------------------------------------------
    # Login hardening
    # ------------------------------------------------------------------

    # Gates new 2FA enrolments. Accounts already enrolled keep needing a code.
    two_factor_enabled: bool = True
    lockout_threshold: int = 5
    lockout_minutes: int = 30
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart -- acceptable locally.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Access tokens must be short-lived relative to the session they ride on."""
        if self.access_token_ttl_seconds <= 0 or self.refresh_token_ttl_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS.")
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
