from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from .errors import ConfigError

ProviderName = Literal["twilio", "plivo", "gateway"]

PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Gateway/modem backends deliver with more lag than the carrier APIs.
DEFAULT_LOOKBACK_MINUTES: dict[str, int] = {
    "twilio": 5,
    "plivo": 5,
    "gateway": 24 * 60,
}


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials and monitored number for the selected carrier backend."""

    provider: ProviderName
    phone_number: str
    # account SID / auth id / gateway base URL, depending on provider
    account: str
    # auth token / bearer token
    secret: str


class Settings(BaseModel):
    # Database URL:
    # - Default for local dev: sqlite file under data/ in the project root
    # - Override in Docker / production using the DATABASE_URL env var
    database_url: str = Field(
        default_factory=lambda: _env("DATABASE_URL")
        or f"sqlite:///{PROJECT_ROOT / 'data' / 'sms_codes.db'}"
    )

    sms_provider: str = Field(default_factory=lambda: (_env("SMS_PROVIDER") or "twilio").lower())

    # --- Twilio ---
    twilio_account_sid: str | None = Field(default_factory=lambda: _env("TWILIO_ACCOUNT_SID"))
    twilio_auth_token: str | None = Field(default_factory=lambda: _env("TWILIO_AUTH_TOKEN"))
    twilio_phone_number: str | None = Field(default_factory=lambda: _env("TWILIO_PHONE_NUMBER"))

    # --- Plivo ---
    plivo_auth_id: str | None = Field(default_factory=lambda: _env("PLIVO_AUTH_ID"))
    plivo_auth_token: str | None = Field(default_factory=lambda: _env("PLIVO_AUTH_TOKEN"))
    plivo_phone_number: str | None = Field(default_factory=lambda: _env("PLIVO_PHONE_NUMBER"))

    # --- Proxy / modem gateway ---
    gateway_base_url: str | None = Field(default_factory=lambda: _env("GATEWAY_BASE_URL"))
    gateway_api_token: str | None = Field(default_factory=lambda: _env("GATEWAY_API_TOKEN"))
    gateway_phone_number: str | None = Field(default_factory=lambda: _env("GATEWAY_PHONE_NUMBER"))

    # --- Polling ---
    poll_interval_seconds: float = Field(
        default_factory=lambda: _env_float("POLL_INTERVAL_SECONDS", 30.0)
    )
    lookback_minutes: int | None = Field(
        default_factory=lambda: _env_int("LOOKBACK_MINUTES", 0) or None
    )
    fetch_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("FETCH_TIMEOUT_SECONDS", 10.0)
    )
    fetch_limit: int = Field(default_factory=lambda: _env_int("FETCH_LIMIT", 20))

    # --- Retention ---
    retention_days: int = Field(default_factory=lambda: _env_int("RETENTION_DAYS", 7))
    cleanup_interval_hours: float = Field(
        default_factory=lambda: _env_float("CLEANUP_INTERVAL_HOURS", 24.0)
    )

    # --- Logging / server ---
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL") or "INFO")
    log_format: str = Field(default_factory=lambda: (_env("LOG_FORMAT") or "text").lower())
    host: str = Field(default_factory=lambda: _env("HOST") or "0.0.0.0")
    port: int = Field(default_factory=lambda: _env_int("PORT", 3002))

    @property
    def effective_lookback_minutes(self) -> int:
        if self.lookback_minutes:
            return self.lookback_minutes
        return DEFAULT_LOOKBACK_MINUTES.get(self.sms_provider, 5)

    def provider_config(self) -> ProviderConfig:
        """
        Resolve credentials for SMS_PROVIDER.

        Raises ConfigError naming every missing variable so the operator can
        fix the environment in one go.
        """
        if self.sms_provider == "twilio":
            label = "Twilio"
            required = {
                "TWILIO_ACCOUNT_SID": self.twilio_account_sid,
                "TWILIO_AUTH_TOKEN": self.twilio_auth_token,
                "TWILIO_PHONE_NUMBER": self.twilio_phone_number,
            }
        elif self.sms_provider == "plivo":
            label = "Plivo"
            required = {
                "PLIVO_AUTH_ID": self.plivo_auth_id,
                "PLIVO_AUTH_TOKEN": self.plivo_auth_token,
                "PLIVO_PHONE_NUMBER": self.plivo_phone_number,
            }
        elif self.sms_provider == "gateway":
            label = "gateway"
            required = {
                "GATEWAY_BASE_URL": self.gateway_base_url,
                "GATEWAY_API_TOKEN": self.gateway_api_token,
                "GATEWAY_PHONE_NUMBER": self.gateway_phone_number,
            }
        else:
            raise ConfigError(
                f"Unknown SMS_PROVIDER {self.sms_provider!r}; expected twilio, plivo or gateway"
            )

        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigError(f"Missing required {label} configuration: {', '.join(missing)}")

        account, secret, phone_number = (str(v) for v in required.values())
        return ProviderConfig(
            provider=self.sms_provider,  # type: ignore[arg-type]
            phone_number=phone_number,
            account=account,
            secret=secret,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
