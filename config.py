"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.

Two settings classes live here:
  Settings       — the letsync server (ACME, scheduler, agent API)
  AgentSettings  — the letsync-agent process on each host (LETSYNC_AGENT_ prefix)
"""
from __future__ import annotations

import re
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run.  A plain comma-separated
    value like ``https://a.example/hook,https://b.example/hook`` is not valid
    JSON; this mixin hands the raw string to the field_validator instead,
    which splits on commas.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


def _split_csv(v: object) -> object:
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


_CA_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "zerossl":             "https://acme.zerossl.com/v2/DV90",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA Provider ────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "zerossl", "custom"] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""
    ACME_EMAIL: str = ""
    # EAB: required by ZeroSSL, optional elsewhere
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""
    ACME_KEY_TYPE: Literal["ec256", "ec384", "rsa2048", "rsa4096"] = "ec256"
    ACCOUNT_KEY_PATH: str = "./data/account.key"

    # ── ACME TLS (for testing against Pebble / self-signed CAs) ───────────
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── DNS-01 challenge ───────────────────────────────────────────────────
    CHALLENGE_TIMEOUT_SECONDS: int = 300
    PROPAGATION_POLL_SECONDS: float = 5.0

    # ── Scheduling ─────────────────────────────────────────────────────────
    RENEW_BEFORE_DAYS: int = 30
    RENEW_SCHEDULE_TIME: str = "03:00"
    RETRY_SWEEP_MINUTES: int = 10

    # ── Security ───────────────────────────────────────────────────────────
    AGENT_SECRET: str = ""         # HMAC key for agent signatures
    ENCRYPTION_KEY: str = ""       # hex AES key for DNS provider credentials
    DOWNLOAD_RATE_LIMIT: int = 10  # cert downloads per IP per minute

    # ── Server ─────────────────────────────────────────────────────────────
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8080
    PUBLIC_URL: str = ""           # base URL agents connect to; defaults to http://host:port
    DATABASE_PATH: str = "./data/letsync.db"
    AGENT_DEFAULT_POLL_INTERVAL: int = 300

    # ── Notifications ──────────────────────────────────────────────────────
    NOTIFY_WEBHOOK_URLS: List[str] = []

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("NOTIFY_WEBHOOK_URLS", mode="before")
    @classmethod
    def parse_webhooks(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        return _split_csv(v)  # type: ignore[return-value]

    @field_validator("RENEW_SCHEDULE_TIME")
    @classmethod
    def validate_schedule_time(cls, v: str) -> str:
        if not re.fullmatch(r"([01]\d|2[0-3]):[0-5]\d", v):
            raise ValueError("RENEW_SCHEDULE_TIME must be HH:MM (24h)")
        return v

    @field_validator(
        "CHALLENGE_TIMEOUT_SECONDS",
        "RETRY_SWEEP_MINUTES",
        "DOWNLOAD_RATE_LIMIT",
        "AGENT_DEFAULT_POLL_INTERVAL",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        if v and len(v) not in (32, 48, 64):
            raise ValueError("ENCRYPTION_KEY must be 16, 24 or 32 bytes hex encoded")
        if v:
            bytes.fromhex(v)
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _CA_PRESETS:
            self.ACME_DIRECTORY_URL = _CA_PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self

    @property
    def public_url(self) -> str:
        if self.PUBLIC_URL:
            return self.PUBLIC_URL.rstrip("/")
        host = "localhost" if self.SERVER_HOST in ("0.0.0.0", "::") else self.SERVER_HOST
        return f"http://{host}:{self.SERVER_PORT}"


class AgentSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LETSYNC_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    STATE_PATH: str = "/var/lib/letsync/state.json"
    HTTP_TIMEOUT: float = 30.0
    RELOAD_TIMEOUT: float = 30.0
    DEFAULT_POLL_INTERVAL: int = 300
    # Base directories certificates may be deployed under
    ALLOWED_PATHS: List[str] = [
        "/etc/ssl",
        "/etc/nginx/ssl",
        "/etc/nginx/certs",
        "/etc/apache2/ssl",
        "/etc/httpd/ssl",
        "/etc/letsencrypt",
        "/var/lib/letsync",
        "/opt/certs",
        "/home",
        "/root/certs",
    ]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("ALLOWED_PATHS", mode="before")
    @classmethod
    def parse_allowed_paths(cls, v: object) -> List[str]:
        return _split_csv(v)  # type: ignore[return-value]


# Module-level singleton; import and use everywhere on the server side.
settings = Settings()
