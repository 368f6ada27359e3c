"""
core/config.py -- Keyward settings, read once from the environment.

Every environment lookup in Keyward goes through get_settings(); nothing else
reads os.environ. Values come from environment variables or a .env file in
the working directory, matched case-insensitively to the field names
(token_lifetime_seconds <- TOKEN_LIFETIME_SECONDS).

The signing key policy lives in the model validator:
  - DEBUG=true and no SECRET_KEY: a random key is generated and a warning is
    logged. Every token dies with the process.
  - DEBUG unset/false and no SECRET_KEY: startup fails. A random key in
    production would log every user out on each restart.
  - Any SECRET_KEY under 32 characters is refused in both modes.

get_settings() is memoized, so the key is fixed for the life of the process.
Tests that change the environment call get_settings.cache_clear().

Layer rule: core/ is the kernel. This module may not import from auth/ or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyward.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keyward.db'}"
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Keyward configuration. Every field has a default except a usable SECRET_KEY outside DEBUG."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- process -------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key() replaces it or raises.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # --- lifetimes ---------------------------------------------------

    token_lifetime_seconds: int = Field(default=14 * 24 * 3600, gt=0)
    email_token_ttl_hours: int = Field(default=48, gt=0)
    phone_code_ttl_minutes: int = Field(default=15, gt=0)
    phone_max_attempts: int = Field(default=5, gt=0)
    password_reset_ttl_minutes: int = Field(default=60, gt=0)

    # --- store and notification provider -----------------------------

    store_timeout_seconds: float = Field(default=5.0, gt=0)
    # No URL: LogSender is used and nothing leaves the process.
    notify_url: str = ""
    notify_timeout_seconds: float = Field(default=10.0, gt=0)
    verify_url_base: str = "http://localhost:8000/auth/verify/email/confirm"

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG is on and SECRET_KEY is unset; using a throwaway signing key.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings, built on first call."""
    return Settings()
