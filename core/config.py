"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the QR login service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. authority_url -> AUTHORITY_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Normalizes base URLs and derives the default redirect
      destinations from PUBLIC_BASE_URL.

Missing identity authority settings are NOT a startup failure. The HTTP layer
reports ConfigurationError on the first request that needs the authority, so
the health endpoint stays reachable for diagnosis.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
identity/, or qrauth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("qrlogin.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'qrlogin_tokens.db'}"


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
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Identity authority (GoTrue-compatible admin API)
    # ------------------------------------------------------------------

    authority_url: str = ""
    authority_service_key: str = ""
    # HS256 secret the authority signs user access tokens with. Used to
    # verify the caller of the issuance endpoints.
    authority_jwt_secret: str = ""
    authority_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # QR tokens
    # ------------------------------------------------------------------

    public_base_url: str = "http://localhost:3000"
    # Empty string means "derive from public_base_url" (see validator).
    login_redirect_url: str = ""
    error_redirect_url: str = ""
    # 0 = tokens never expire (persistent QR). Any positive value bounds
    # the lifetime of newly issued tokens.
    qr_token_ttl_seconds: int = 0
    # False = redemption leaves the token active (persistent QR).
    qr_single_use: bool = False
    # Resolve the magic link server-side once to pull session tokens out of
    # the verification redirect. Consumes the one-time link.
    exchange_resolve_links: bool = False

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    redeem_rate_limit: str = "30/minute"
    issue_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["*"]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def normalize_urls(self) -> "Settings":
        """Strip trailing slashes and fill in derived redirect URLs.

        login_redirect_url defaults to {public_base_url}/auth/callback -- the
        page the frontend uses to pick up a session. error_redirect_url
        defaults to the site root, which renders ?error= as a toast.
        """
        self.public_base_url = self.public_base_url.rstrip("/")
        self.authority_url = self.authority_url.rstrip("/")
        if not self.login_redirect_url:
            self.login_redirect_url = f"{self.public_base_url}/auth/callback"
        if not self.error_redirect_url:
            self.error_redirect_url = f"{self.public_base_url}/"
        if self.qr_token_ttl_seconds < 0:
            raise ValueError("QR_TOKEN_TTL_SECONDS must be 0 (no expiry) or a positive number of seconds.")
        if self.authority_timeout_seconds <= 0:
            raise ValueError("AUTHORITY_TIMEOUT_SECONDS must be positive.")
        return self

    @property
    def authority_configured(self) -> bool:
        return bool(self.authority_url and self.authority_service_key)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
