"""Configuration loading and Pydantic models for b2client."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from b2client.models import Credentials

DEFAULT_AUTH_URL = "https://api.backblazeb2.com"

# Hard ceiling for per-bucket upload concurrency.
MAX_UPLOAD_CONCURRENCY = 128


class CredentialsConfig(BaseModel):
    """Application key used to authorize the account."""

    application_key_id: str = ""
    application_key: str = ""
    api_path: str = DEFAULT_AUTH_URL

    def to_credentials(self) -> Credentials:
        return Credentials(
            key_id=self.application_key_id,
            key_secret=self.application_key,
            api_url=self.api_path,
        )


class HttpConfig(BaseModel):
    """Timeouts (seconds) applied to every HTTP request."""

    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)
    write_timeout: float = Field(default=60.0, gt=0)
    pool_timeout: float = Field(default=10.0, gt=0)


class RetryConfig(BaseModel):
    """Retry budget for transient failures."""

    attempts: int = Field(default=5, ge=1, le=20)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


class UploadConfig(BaseModel):
    """Upload behaviour defaults."""

    concurrency: int = Field(default=4, ge=1, le=MAX_UPLOAD_CONCURRENCY)
    max_threads: int = Field(default=4, ge=1, le=MAX_UPLOAD_CONCURRENCY)
    part_size: int | None = Field(default=None, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ListingConfig(BaseModel):
    """Listing defaults."""

    batch_size: int = Field(default=1000, ge=1, le=10000)


class LoggingConfig(BaseModel):
    """Log level and output format ('text' or 'json').

    Applied to the ``b2client`` logger only when ``configure`` is true;
    otherwise the application's own logging setup is left alone.
    """

    configure: bool = False
    level: str = "INFO"
    format: str = "text"


class MetricsConfig(BaseModel):
    """Prometheus metrics toggle."""

    enabled: bool = False


class B2ClientConfig(BaseModel):
    """Top-level b2client configuration."""

    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    listing: ListingConfig = Field(default_factory=ListingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def _parse_credentials(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the credentials section from YAML data."""
    if data is None:
        return {}
    return {
        "application_key_id": data.get("application_key_id", ""),
        "application_key": data.get("application_key", ""),
        "api_path": data.get("api_path") or DEFAULT_AUTH_URL,
    }


def _parse_http(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the http section from YAML data.

    A single ``timeout`` value seeds every timeout not given explicitly.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {}
    base = data.get("timeout")
    for name in ("connect_timeout", "read_timeout", "write_timeout", "pool_timeout"):
        value = data.get(name, base)
        if value is not None:
            result[name] = value
    return result


def _parse_upload(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the upload section from YAML data.

    Handles nested structure: upload.retry.attempts -> retry.attempts
    """
    if data is None:
        return {}
    result: dict[str, Any] = {
        key: data[key] for key in ("concurrency", "max_threads", "part_size") if key in data
    }
    retry_section = data.get("retry")
    if isinstance(retry_section, dict):
        result["retry"] = RetryConfig(**retry_section)
    return result


def _parse_section(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse a flat section (listing, logging, metrics)."""
    if not isinstance(data, dict):
        return {}
    return dict(data)


def load_config(path: Path) -> B2ClientConfig:
    """Load a B2ClientConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated B2ClientConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return B2ClientConfig(
        credentials=CredentialsConfig(**_parse_credentials(raw.get("credentials"))),
        http=HttpConfig(**_parse_http(raw.get("http"))),
        upload=UploadConfig(**_parse_upload(raw.get("upload"))),
        listing=ListingConfig(**_parse_section(raw.get("listing"))),
        logging=LoggingConfig(**_parse_section(raw.get("logging"))),
        metrics=MetricsConfig(**_parse_section(raw.get("metrics"))),
    )


def load_credentials(data: dict[str, Any]) -> Credentials:
    """Build Credentials from a plain key-value map.

    The map may either be the credentials section itself or a whole config
    document containing a ``credentials`` key.
    """
    if isinstance(data.get("credentials"), dict):
        data = data["credentials"]
    return Credentials.from_mapping(data)
