"""
core/config.py -- Bazaar API settings (pydantic-settings).

Every environment read goes through get_settings(); nothing else touches
os.environ. Values come from the process environment or a local .env file,
field name upper-cased (renewal_hash_rounds -> RENEWAL_HASH_ROUNDS).

get_settings() is cached, so the first call fixes the configuration for the
life of the process. Tests set their environment before importing the app.

SECRET_KEY signs access tokens and seeds the renewal-credential salt:
  - DEBUG=true and no key: a throwaway key is generated (sessions die on restart)
  - otherwise no key: startup fails
  - under 32 characters: startup fails
  - production: 64 characters minimum, no wildcard or localhost CORS origins

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import re
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("bazaar.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'bazaar_auth.db'}"

# Design defaults, used when a configured lifetime cannot be parsed.
DEFAULT_ACCESS_TOKEN_SECONDS = 15 * 60
DEFAULT_RENEWAL_TOKEN_SECONDS = 7 * 24 * 60 * 60

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])?$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: str, default: int) -> int:
    """Convert a lifetime string such as '15m', '7d', '1h' or '900' to seconds.

    A bare integer is read as seconds. Anything else falls back to `default`
    with a warning rather than failing startup.
    """
    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        logger.warning("Invalid duration %r, using default of %d seconds", value, default)
        return default
    amount = int(match.group(1))
    unit = match.group(2) or "s"
    return amount * _UNIT_SECONDS[unit]


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default; validate_secret_key()
    applies the SECRET_KEY and production rules once all values are loaded.
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
    environment: Literal["development", "production", "test"] = "development"
    # "" means unset; validate_secret_key() replaces it or fails.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    access_token_lifetime: str = "15m"
    renewal_token_lifetime: str = "7d"
    # bcrypt cost factor for renewal-credential hashes. Tests drop this to 4.
    renewal_hash_rounds: int = 10
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Login attempt limits (window queries over the attempt history)
    # ------------------------------------------------------------------

    login_max_attempts_per_email: int = 5
    login_max_failed_per_origin: int = 10
    login_window_minutes: int = 15

    # Per-IP HTTP limit applied by slowapi in front of the login route.
    login_rate_limit: str = "20/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]
    allowed_hosts: Annotated[list[str], NoDecode] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_seconds(self) -> int:
        return parse_duration(self.access_token_lifetime, DEFAULT_ACCESS_TOKEN_SECONDS)

    @property
    def renewal_token_seconds(self) -> int:
        return parse_duration(self.renewal_token_lifetime, DEFAULT_RENEWAL_TOKEN_SECONDS)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("cors_origins", "allowed_hosts", mode="before")
    @classmethod
    def split_csv(cls, value):
        """Accept a comma-separated string (CORS_ORIGINS=a,b) as well as a JSON list."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("renewal_hash_rounds")
    @classmethod
    def check_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("RENEWAL_HASH_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY and production policy.

        DEBUG=true with no key: generate one and warn.

        Otherwise: refuse to start if SECRET_KEY is missing.

        Always: reject keys shorter than 32 characters. In production, require
            64 characters and forbid wildcard or localhost CORS origins.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Set SECRET_KEY in your environment or .env file."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.environment == "production":
            if len(self.secret_key) < 64:
                raise ValueError("In production, SECRET_KEY must be at least 64 characters.")
            if any(origin == "*" or "localhost" in origin for origin in self.cors_origins):
                raise ValueError("In production, CORS_ORIGINS must not include wildcards or localhost.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Cached Settings instance. Call get_settings.cache_clear() to reload."""
    return Settings()
