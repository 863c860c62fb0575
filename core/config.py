"""
core/config.py -- Centralized configuration for the identity store via pydantic-settings.

All environment variable reads for idstore happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field checks run once every field is
      resolved. Used to reject an empty database URL and a non-positive API key
      staleness threshold at startup rather than at first use.

Layer rule: core/ is the kernel. This module may not import from store/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idstore.config")


class Settings(BaseSettings):
    """Store settings loaded from environment variables and .env file.

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

    # Relaxes OIDC redirect URI checks (http and loopback hosts allowed).
    debug: bool = False

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    # scheme:///relative/path or scheme:////absolute/path for embedded backends.
    database_url: str = "sqlite3:///idstore.db"
    # When true the store is opened read-only whatever the DSN says.
    database_readonly: bool = False

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    # Days without use after which a key is reported as stale.
    apikey_stale_days: int = 90

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_database(self) -> "Settings":
        """Fail fast on settings that would only surface as errors much later.

        DATABASE_URL must be set to something; the DSN itself is parsed when the
        store is opened. APIKEY_STALE_DAYS must be positive, otherwise every key
        that has ever been used would be classified as stale.
        """
        if not self.database_url.strip():
            raise ValueError("DATABASE_URL is required.")
        if self.apikey_stale_days < 1:
            raise ValueError("APIKEY_STALE_DAYS must be at least 1.")
        if self.debug:
            logger.warning("DEBUG is enabled: OIDC redirect URIs may use http and loopback hosts.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
