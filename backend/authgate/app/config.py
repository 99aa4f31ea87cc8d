"""Centralized application configuration for the authentication service.

Nested groups are populated from environment variables using ``__`` as the
delimiter, e.g. ``AUTH__SECRET``, ``WEBAUTHN__RP_ID``, ``GOOGLE__CLIENT_ID``,
``EMAIL__SMTP_HOST`` or ``STORAGE__DATABASE_URL``.
"""
from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT_DIR = Path(__file__).resolve().parents[3]
_SERVICE_DIR = _ROOT_DIR / "backend" / "authgate"
_DEFAULT_ENV_FILES: tuple[Path, ...] = (
    _ROOT_DIR / ".env",
    _SERVICE_DIR / ".env",
)


def origin_of(url: str) -> str:
    """Return the ``scheme://host[:port]`` part of ``url``."""

    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class RateLimitRule(BaseModel):
    """Requests allowed per client IP within a fixed window."""

    limit: int = Field(ge=1)
    window_seconds: int = Field(ge=1)


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {
        "sign-up": RateLimitRule(limit=5, window_seconds=600),
        "sign-in": RateLimitRule(limit=10, window_seconds=60),
        "email": RateLimitRule(limit=5, window_seconds=60),
        "otp": RateLimitRule(limit=10, window_seconds=60),
        "passkey": RateLimitRule(limit=20, window_seconds=60),
    }


class AuthSettings(BaseModel):
    """Session, token and account configuration."""

    secret: str = Field(default="change-me-in-production", min_length=8)
    public_base_url: str = Field(
        default="http://localhost:3000",
        description="External URL where verification and reset links point to.",
    )
    trusted_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    session_cookie_name: str = "authgate.session_token"
    cookie_secure: bool = Field(
        default=False,
        description="Mark session cookies as secure (HTTPS only).",
    )
    session_ttl_seconds: int = Field(default=604_800, ge=3_600)
    session_update_age_seconds: int = Field(default=86_400, ge=60)
    email_verification_token_ttl_seconds: int = Field(default=86_400, ge=300, le=604_800)
    password_reset_token_ttl_seconds: int = Field(default=3_600, ge=300, le=86_400)
    two_factor_challenge_ttl_seconds: int = Field(default=300, ge=60, le=900)
    revoke_sessions_on_password_reset: bool = True
    send_verification_on_sign_up: bool = True
    otp_length: int = Field(default=6, ge=4, le=10)
    otp_ttl_seconds: int = Field(default=300, ge=60, le=3_600)
    otp_allowed_attempts: int = Field(default=3, ge=1, le=10)
    totp_issuer: str = "Authgate"
    backup_code_count: int = Field(default=10, ge=4, le=20)
    login_rate_limit_attempts: int = Field(default=5, ge=1)
    login_rate_limit_window_seconds: int = Field(default=300, ge=1)
    login_rate_limit_namespace: str = "auth:bf"
    request_rate_limit_namespace: str = "auth:rl"
    request_rate_limit_enabled: bool = True
    rate_limits: dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _normalise_public_base_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("AUTH__PUBLIC_BASE_URL must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("AUTH__PUBLIC_BASE_URL must be a non-empty string")
        return cleaned.rstrip("/") or cleaned

    @field_validator("trusted_origins", mode="before")
    @classmethod
    def _normalise_origins(cls, value: list[str] | str | None) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            candidates = value.replace(",", " ").split()
        else:
            candidates = [str(item) for item in value]
        cleaned: list[str] = []
        for candidate in candidates:
            origin = candidate.strip().rstrip("/")
            if origin and origin not in cleaned:
                cleaned.append(origin)
        return cleaned

    @field_validator("login_rate_limit_namespace", "request_rate_limit_namespace", mode="before")
    @classmethod
    def _normalise_namespace(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("Rate limit namespace must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Rate limit namespace must be a non-empty string")
        return cleaned

    @property
    def allowed_origins(self) -> tuple[str, ...]:
        """Origins accepted for redirects, always including the public URL."""

        origins = [origin_of(self.public_base_url)]
        for origin in self.trusted_origins:
            if origin not in origins:
                origins.append(origin)
        return tuple(origins)


class WebAuthnSettings(BaseModel):
    """Relying party configuration for passkeys."""

    rp_id: str = Field(default="localhost", description="Relying party ID (domain without scheme).")
    rp_name: str = "Authgate"
    origin: str | None = Field(
        default=None,
        description="Expected client origin. Derived from the RP ID when unset.",
    )
    challenge_ttl_seconds: int = Field(default=300, ge=30, le=3_600)

    @field_validator("rp_id", mode="before")
    @classmethod
    def _strip_scheme(cls, value: str | None) -> str:
        if value is None:
            return "localhost"
        cleaned = value.strip()
        for prefix in ("https://", "http://"):
            if cleaned.startswith(prefix):
                cleaned = cleaned[len(prefix):]
        return cleaned.rstrip("/") or "localhost"

    @field_validator("origin", mode="before")
    @classmethod
    def _clean_origin(cls, value: str | None) -> str | None:
        cleaned = _clean_optional(value)
        return cleaned.rstrip("/") if cleaned else None


class GoogleSettings(BaseModel):
    """Google OAuth client configuration."""

    client_id: str | None = None
    client_secret: str | None = None
    authorization_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    issuers: list[str] = Field(
        default_factory=lambda: ["https://accounts.google.com", "accounts.google.com"]
    )
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    jwks_cache_ttl_seconds: int = Field(default=3_600, ge=60)
    state_ttl_seconds: int = Field(default=600, ge=60)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("client_id", "client_secret", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        return _clean_optional(value)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class EmailSettings(BaseModel):
    """Outgoing mail configuration."""

    smtp_host: str | None = None
    smtp_port: int = Field(default=465, ge=1, le=65_535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    email_from: str | None = None
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("smtp_host", "smtp_username", "smtp_password", "email_from", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        return _clean_optional(value)

    @property
    def use_tls(self) -> bool:
        """Implicit TLS for every port except the STARTTLS submission port."""

        return self.smtp_port != 587


class StorageSettings(BaseModel):
    """Relational and cache storage configuration."""

    database_url: str = "sqlite+aiosqlite:///./authgate.db"
    redis_url: str | None = None
    sqlalchemy_echo: bool = False

    @field_validator("database_url", mode="before")
    @classmethod
    def _ensure_database_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("STORAGE__DATABASE_URL must be configured")
        url = value.strip()
        if not url:
            raise ValueError("STORAGE__DATABASE_URL must be a non-empty string")
        return url

    @field_validator("redis_url", mode="before")
    @classmethod
    def _clean_redis_url(cls, value: str | None) -> str | None:
        return _clean_optional(value)


class Settings(BaseSettings):
    """Top level service configuration."""

    env: str = Field(default="dev", validation_alias=AliasChoices("ENV", "APP_ENV"))
    auth: AuthSettings = Field(default_factory=AuthSettings)
    webauthn: WebAuthnSettings = Field(default_factory=WebAuthnSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def is_dev(self) -> bool:
        return self.env in {"dev", "development"}

    @property
    def database_url(self) -> str:
        return self.storage.database_url

    @property
    def redis_url(self) -> str | None:
        return self.storage.redis_url

    @property
    def webauthn_origin(self) -> str:
        if self.webauthn.origin:
            return self.webauthn.origin
        scheme = "http" if self.is_dev else "https"
        return f"{scheme}://{self.webauthn.rp_id}"


settings = Settings()

__all__ = [
    "AuthSettings",
    "EmailSettings",
    "GoogleSettings",
    "RateLimitRule",
    "Settings",
    "StorageSettings",
    "WebAuthnSettings",
    "origin_of",
    "settings",
]
