"""
Configuration management for the log shipper.

Uses Pydantic Settings for environment variable handling and validation.
Settings are frozen once built; a missing or invalid field fails construction
with a ConfigurationError instead of returning a partial object.
"""

import os
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.exceptions import ConfigurationError

ENV_PREFIX = "LOGSHIP_"

DEFAULT_ENDPOINT_URL = "https://http-intake.logs.datadoghq.com/api/v2/logs"
# Intake limits: https://docs.datadoghq.com/api/latest/logs/#send-logs
MAX_BATCH_ENTRIES = 1000
DEFAULT_MAX_PAYLOAD_BYTES = 5_000_000
DEFAULT_MAX_ENTRY_BYTES = 1_000_000

OverflowPolicy = Literal["drop_oldest", "drop_newest"]


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        for path in ("logship.yaml", "logship.yml"):
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if not os.path.exists(config_path):
        raise ConfigurationError(
            f"Config file not found: {config_path}",
            details={"path": str(config_path)},
        )

    with open(config_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    if not isinstance(config_data, dict):
        raise ConfigurationError(
            "Config file must contain a mapping",
            details={"path": str(config_path)},
        )
    return config_data


class RetrySettings(BaseSettings):
    """Exponential backoff parameters for batch delivery."""

    model_config = SettingsConfigDict(env_prefix=f"{ENV_PREFIX}RETRY_", frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total send attempts per batch")
    initial_backoff_seconds: float = Field(default=0.5, ge=0.0, description="Delay before the first retry")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor between retries")
    max_backoff_seconds: float = Field(default=30.0, ge=0.0, description="Upper bound for a single delay")
    jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Proportional random spread applied to each delay")


class ShipperSettings(BaseSettings):
    """DataDog log shipping configuration."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        frozen=True,
    )

    # Identity
    service: str = Field(min_length=1, description="Name of the application or service generating logs")
    hostname: str = Field(min_length=1, description="Name of the originating host")
    api_key: SecretStr = Field(description="DataDog API key")
    source: str = Field(default="python", min_length=1, description="Integration name sent as ddsource")
    tags: Dict[str, str] = Field(default_factory=dict, description="Tags rendered into ddtags")

    # Transport
    endpoint_url: str = Field(default=DEFAULT_ENDPOINT_URL, description="Log intake URL")
    request_timeout_seconds: float = Field(default=10.0, gt=0.0, description="Per-request timeout")
    gzip: bool = Field(default=True, description="Compress request bodies")
    max_payload_bytes: int = Field(default=DEFAULT_MAX_PAYLOAD_BYTES, gt=0, description="Maximum uncompressed request size")
    max_entry_bytes: int = Field(default=DEFAULT_MAX_ENTRY_BYTES, gt=0, description="Maximum size of a single encoded entry")

    # Batching
    batch_size: int = Field(default=100, ge=1, le=MAX_BATCH_ENTRIES, description="Records per batch before a size-triggered flush")
    flush_interval_seconds: float = Field(default=5.0, gt=0.0, description="Maximum time between flushes")
    queue_capacity: Optional[int] = Field(default=None, ge=1, description="Buffered record limit (unbounded when unset)")
    overflow_policy: OverflowPolicy = Field(default="drop_oldest", description="What to discard when the queue is full")
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0.0, description="Bound for the final flush on shutdown")

    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("api_key")
    def validate_api_key(cls, v: SecretStr) -> SecretStr:
        """Reject blank API keys."""
        if not v.get_secret_value().strip():
            raise ValueError("api_key must not be empty")
        return v

    @field_validator("endpoint_url")
    def validate_endpoint_url(cls, v: str) -> str:
        """Only http(s) endpoints are supported."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("endpoint_url must be an http(s) URL")
        return v

    @field_validator("tags", mode="before")
    def parse_tags(cls, v: Any) -> Any:
        """Accept tags as a mapping or as 'key:value,key:value' text."""
        if isinstance(v, str):
            parsed: Dict[str, str] = {}
            for pair in filter(None, (p.strip() for p in v.split(","))):
                key, _, value = pair.partition(":")
                parsed[key.strip()] = value.strip()
            return parsed
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "ShipperSettings":
        """Cross-field checks."""
        if self.queue_capacity is not None and self.queue_capacity < self.batch_size:
            raise ValueError("queue_capacity must be at least batch_size")
        if self.max_entry_bytes > self.max_payload_bytes:
            raise ValueError("max_entry_bytes must not exceed max_payload_bytes")
        return self

    @property
    def ddtags(self) -> str:
        """Tags in DataDog's comma-separated key:value form."""
        return ",".join(f"{k}:{v}" for k, v in self.tags.items())


def build_settings(**values: Any) -> ShipperSettings:
    """
    Validate and build shipper settings.

    Raises:
        ConfigurationError: if a required field is missing or a value is invalid
    """
    try:
        return ShipperSettings(**values)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        fields = ", ".join(err["field"] or "settings" for err in errors)
        raise ConfigurationError(
            f"Invalid shipper configuration: {fields}",
            details={"errors": errors},
        ) from e


def load_settings(config_path: Optional[str] = None, **overrides: Any) -> ShipperSettings:
    """
    Build settings from an optional YAML file, the environment and overrides.

    The file location defaults to LOGSHIP_CONFIG, then logship.yaml in the
    working directory. Precedence: explicit overrides, then environment
    variables, then the config file, then defaults.
    """
    if config_path is None:
        config_path = os.environ.get(f"{ENV_PREFIX}CONFIG") or None
    file_values = load_config_file(config_path)
    env_keys = {k.upper() for k in os.environ}

    # Env vars win over the file, so drop file values they would shadow
    values = {
        key: value
        for key, value in file_values.items()
        if f"{ENV_PREFIX}{key}".upper() not in env_keys
    }

    retry_values = values.get("retry")
    if isinstance(retry_values, dict):
        retry_prefix = f"{ENV_PREFIX}RETRY_"
        kept = {
            key: value
            for key, value in retry_values.items()
            if f"{retry_prefix}{key}".upper() not in env_keys
        }
        # Nested dicts skip env lookup, so merge file values over env-built defaults
        values["retry"] = {**_retry_from_env().model_dump(), **kept}

    values.update(overrides)
    return build_settings(**values)


def _retry_from_env() -> RetrySettings:
    try:
        return RetrySettings()
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid retry configuration",
            details={"errors": [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]},
        ) from e
