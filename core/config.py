"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, smtp_host -> SMTP_HOST).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Missing required configuration is a startup failure, never a
      per-request one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session JWTs and
       the HMAC digests of OTP codes both rely on key entropy.

  [M7] Outside DEBUG mode a missing SECRET_KEY is a hard startup failure. In
       production (ENVIRONMENT=production) BASE_URL and the SMTP credentials
       are required as well.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlsplit

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


@dataclass(frozen=True)
class RouteTable:
    """Static partition of URL paths into authentication tiers.

    auth_paths are matched exactly (sign-in / sign-up / reset pages).
    private_prefixes and admin_prefixes are matched with str.startswith, so
    "/admin" also covers "/admin/users" and "/administration".
    """

    auth_paths: tuple[str, ...]
    private_prefixes: tuple[str, ...]
    admin_prefixes: tuple[str, ...]
    sign_in_path: str
    landing_path: str

    def is_auth_page(self, path: str) -> bool:
        return path in self.auth_paths

    def is_admin(self, path: str) -> bool:
        return path.startswith(self.admin_prefixes)

    def is_private(self, path: str) -> bool:
        return path.startswith(self.private_prefixes)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

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
    # "production" turns on HSTS and the stricter startup checks below.
    environment: str = "development"
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    base_url: str = ""
    # Empty string = SQLite file beside auth/store.py.
    database_url: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_expire_seconds: int = 7 * 24 * 3600
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otp_expire_seconds: int = 600
    otp_max_attempts: int = 3

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Per (email, purpose) counters, enforced by core.ratelimit.
    otp_request_limit: int = 5
    otp_request_window_seconds: int = 15 * 60
    otp_verify_limit: int = 10
    otp_verify_window_seconds: int = 15 * 60
    rate_limit_sweep_seconds: int = 5 * 60

    # Per client IP, enforced by slowapi.
    login_rate_limit: str = "10/minute"
    otp_send_rate_limit: str = "5/minute"
    otp_verify_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Mail transport
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_secure: bool = False
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@authgate.local"
    # "auto" sends when credentials are configured, "false" logs to console.
    smtp_enabled: str = "auto"
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Route classification
    # ------------------------------------------------------------------

    auth_paths: list[str] = ["/connexion", "/inscription", "/mot-de-passe-oublie"]
    private_prefixes: list[str] = [
        "/dashboard",
        "/profil",
        "/profile",
        "/account",
        "/admin",
        "/organisations",
        "/settings",
        "/api/admin",
        "/api/user",
    ]
    admin_prefixes: list[str] = ["/admin", "/api/admin"]
    sign_in_path: str = "/connexion"
    landing_path: str = "/dashboard"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # Accounts created with one of these addresses start with role "admin".
    # Without it the first admin has to be promoted in the database.
    admin_emails: list[str] = []

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def smtp_configured(self) -> bool:
        """True when mail should go over SMTP rather than to the console log."""
        flag = self.smtp_enabled.lower()
        if flag == "false":
            return False
        if flag == "true":
            return True
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    @property
    def trusted_origins(self) -> list[str]:
        """Origins allowed for CORS. Seeded from BASE_URL plus localhost in dev."""
        origins: list[str] = []
        if self.base_url:
            parts = urlsplit(self.base_url)
            origins.append(f"{parts.scheme}://{parts.netloc}")
        if self.debug:
            origins.extend(["http://localhost:8000", "http://127.0.0.1:8000"])
        return origins

    @property
    def trusted_hosts(self) -> list[str]:
        hosts: list[str] = []
        if self.base_url:
            host = urlsplit(self.base_url).hostname
            if host:
                hosts.append(host)
        if self.debug or not hosts:
            hosts.extend(["localhost", "127.0.0.1", "testserver"])
        return hosts

    def route_table(self) -> RouteTable:
        return RouteTable(
            auth_paths=tuple(self.auth_paths),
            private_prefixes=tuple(self.private_prefixes),
            admin_prefixes=tuple(self.admin_prefixes),
            sign_in_path=self.sign_in_path,
            landing_path=self.landing_path,
        )

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Otherwise: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_production_requirements(self) -> "Settings":
        """BASE_URL and SMTP credentials are mandatory in production, and SMTP cannot be switched off."""
        if not self.is_production:
            return self
        missing = [
            name
            for name, value in (
                ("BASE_URL", self.base_url),
                ("SMTP_HOST", self.smtp_host),
                ("SMTP_USER", self.smtp_user),
                ("SMTP_PASSWORD", self.smtp_password),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required production configuration: {', '.join(missing)}")
        # Console mode writes message bodies, sign-in codes included, to the log.
        if self.smtp_enabled.lower() == "false":
            raise ValueError("SMTP_ENABLED=false is not allowed in production.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
