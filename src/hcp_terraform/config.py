"""Configuration management for the HCP Terraform run client."""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from hcp_terraform.utils.http import normalize_base_url

_config_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.terraform.io/api/v2"

# Polling bounds; out-of-range values are clamped, never rejected.
MIN_POLL_INTERVAL_SECONDS = 2
MAX_POLL_INTERVAL_SECONDS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_STREAM_TIMEOUT_MINUTES = 1
MAX_STREAM_TIMEOUT_MINUTES = 60
DEFAULT_STREAM_TIMEOUT_MINUTES = 10


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class APISettings(BaseModel):
    base_url: str = Field(default=DEFAULT_BASE_URL)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    user_agent: str = Field(default="hcp-terraform-run-client")

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        return normalize_base_url(value)


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0, le=10)
    min_backoff_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    max_backoff_seconds: float = Field(default=30.0, ge=0.0, le=600.0)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "RetrySettings":
        if self.max_backoff_seconds < self.min_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= min_backoff_seconds")
        return self


class StreamingSettings(BaseModel):
    poll_interval_seconds: int = Field(default=DEFAULT_POLL_INTERVAL_SECONDS)
    timeout_minutes: int = Field(default=DEFAULT_STREAM_TIMEOUT_MINUTES)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=clamp_poll_interval(self.poll_interval_seconds))

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=clamp_timeout_minutes(self.timeout_minutes))


class AuthSettings(BaseModel):
    token: SecretStr | None = Field(
        default=None,
        description="API token (HCP_TERRAFORM_TOKEN / TFE_TOKEN). Never logged.",
    )
    credentials_file: str | None = Field(
        default=None,
        description="Override for ~/.terraform.d/credentials.tfrc.json",
    )


class Settings(BaseModel):
    api: APISettings = Field(default_factory=APISettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


ENV_KEYS = {
    "token": "HCP_TERRAFORM_TOKEN",
    "token_fallback": "TFE_TOKEN",
    "credentials_file": "TF_CLI_CREDENTIALS_FILE",
    "address": "TFE_ADDRESS",
    "base_url": "HCP_TERRAFORM_BASE_URL",
    "timeout_seconds": "HCP_TERRAFORM_TIMEOUT_SECONDS",
    "user_agent": "HCP_TERRAFORM_USER_AGENT",
    "max_retries": "HCP_TERRAFORM_MAX_RETRIES",
    "min_backoff_seconds": "HCP_TERRAFORM_MIN_BACKOFF_SECONDS",
    "max_backoff_seconds": "HCP_TERRAFORM_MAX_BACKOFF_SECONDS",
    "poll_interval_seconds": "HCP_TERRAFORM_POLL_INTERVAL_SECONDS",
    "stream_timeout_minutes": "HCP_TERRAFORM_STREAM_TIMEOUT_MINUTES",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}


def clamp_poll_interval(seconds: int | float) -> int | float:
    return min(max(seconds, MIN_POLL_INTERVAL_SECONDS), MAX_POLL_INTERVAL_SECONDS)


def clamp_timeout_minutes(minutes: int | float) -> int | float:
    return min(max(minutes, MIN_STREAM_TIMEOUT_MINUTES), MAX_STREAM_TIMEOUT_MINUTES)


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _env_str(key: str) -> str | None:
    value = os.getenv(key)
    if value is None:
        return None
    return value.strip() or None


def _base_url_from_env() -> str:
    explicit = _env_str(ENV_KEYS["base_url"])
    if explicit:
        return explicit
    address = _env_str(ENV_KEYS["address"])
    if address:
        # TFE_ADDRESS is a host address; normalize_base_url appends /api/v2.
        return address
    return APISettings().base_url


def load_settings(*, dotenv: bool = True) -> Settings:
    """Build a fresh ``Settings`` from the environment.

    The result is meant to be constructed once by the caller and passed to
    ``HCPTerraformClient``; nothing here is cached at module level.
    """
    if dotenv:
        load_dotenv(dotenv_path=_project_root() / ".env")

    token = _env_str(ENV_KEYS["token"]) or _env_str(ENV_KEYS["token_fallback"])

    settings_data: dict[str, object] = {
        "api": {
            "base_url": _base_url_from_env(),
            "timeout_seconds": _env_float(
                ENV_KEYS["timeout_seconds"], APISettings().timeout_seconds
            ),
            "user_agent": os.getenv(ENV_KEYS["user_agent"], APISettings().user_agent),
        },
        "retry": {
            "max_retries": _env_int(ENV_KEYS["max_retries"], RetrySettings().max_retries),
            "min_backoff_seconds": _env_float(
                ENV_KEYS["min_backoff_seconds"], RetrySettings().min_backoff_seconds
            ),
            "max_backoff_seconds": _env_float(
                ENV_KEYS["max_backoff_seconds"], RetrySettings().max_backoff_seconds
            ),
        },
        "streaming": {
            "poll_interval_seconds": _env_int(
                ENV_KEYS["poll_interval_seconds"],
                StreamingSettings().poll_interval_seconds,
            ),
            "timeout_minutes": _env_int(
                ENV_KEYS["stream_timeout_minutes"],
                StreamingSettings().timeout_minutes,
            ),
        },
        "auth": {
            "token": token,
            "credentials_file": _env_str(ENV_KEYS["credentials_file"]),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _env_str(ENV_KEYS["log_file"]),
        },
    }

    try:
        return Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc
