"""Typed settings management for the mailsync worker.

Settings are wrapped in Pydantic models so the CLI and the sync engine can
rely on validated values. A YAML file may supply a base configuration and
``MAILSYNC_*`` environment variables override individual fields. Anything
missing or malformed aborts startup with :class:`ConfigurationError`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from mailsync.errors import ConfigurationError


ENV_PREFIX = "MAILSYNC_"
CONFIG_PATH_ENV = "MAILSYNC_CONFIG"
DEFAULT_LEASE_DIR = Path.home() / ".mailsync" / "leases"
DEFAULT_SECRETS_SERVICE = "mailsync"

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseModel):
    """Root configuration for a sync worker."""

    # Stores
    database_url: str = Field(..., description="sqlite:///path or plain file path")
    content_store_url: str = Field(..., description="file:///dir, plain dir, or s3://bucket[/prefix]")
    content_store_endpoint: Optional[str] = Field(
        default=None, description="Custom S3 endpoint (R2, MinIO)"
    )
    content_store_access_key_id: Optional[str] = None
    content_store_secret_access_key: Optional[SecretStr] = None
    content_store_region: Optional[str] = None
    verify_content_writes: bool = Field(True, description="Check object existence after put")

    # Concurrency
    worker_concurrency: int = Field(4, ge=1, le=64)
    pipeline_concurrency: int = Field(4, ge=1, le=64)
    batch_size: int = Field(100, ge=1, le=10000)
    fetch_chunk_size: int = Field(25, ge=1, le=1000)

    # Resilience
    network_timeout_seconds: float = Field(30.0, gt=0, le=600)
    max_attempts: int = Field(3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(1.0, ge=0, le=600)
    retry_max_delay_seconds: float = Field(30.0, ge=0, le=3600)

    # Leases
    lease_dir: Path = Field(default=DEFAULT_LEASE_DIR)
    lease_wait_seconds: float = Field(0.0, ge=0, le=3600)

    # Misc
    mailbox: str = Field("INBOX", min_length=1)
    log_level: str = Field("INFO")
    schedule_interval_seconds: int = Field(60, ge=1, le=86400)
    keyring_service: str = Field(DEFAULT_SECRETS_SERVICE, min_length=1)

    @field_validator("database_url")
    def _validate_database_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("database_url must not be empty")
        if "://" in value and not value.startswith("sqlite:///"):
            raise ValueError("database_url must be a sqlite:/// URL or a file path")
        return value

    @field_validator("content_store_url")
    def _validate_content_store_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("content_store_url must not be empty")
        if "://" in value and not value.startswith(("file://", "s3://")):
            raise ValueError("content_store_url must use file:// or s3://")
        return value

    @field_validator("log_level")
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def _check_delays(self) -> "Settings":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @property
    def database_path(self) -> str:
        """Filesystem path (or ``:memory:``) behind ``database_url``."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[len("sqlite:///"):]
        return self.database_url

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)


def load_settings(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file plus environment overrides.

    Args:
        path: YAML file to read first. Defaults to ``$MAILSYNC_CONFIG`` when set.
        environ: Environment mapping, ``os.environ`` when omitted

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is unreadable or validation fails
    """
    environ = os.environ if environ is None else environ
    if path is None and environ.get(CONFIG_PATH_ENV):
        path = Path(environ[CONFIG_PATH_ENV]).expanduser()

    data: Dict[str, Any] = {}
    if path is not None:
        data.update(_read_config_file(path))
    data = _apply_env_overrides(data, environ)

    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration: {exc}",
            details={"fields": _error_fields(exc)},
        ) from exc


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Settings file not found at {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML configuration: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")
    return payload


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    merged = data.copy()
    for name in Settings.model_fields:
        _set_env_override(merged, name, f"{ENV_PREFIX}{name.upper()}", environ)
    return merged


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    environ: Mapping[str, str],
) -> None:
    raw = environ.get(env_name)
    if raw is None or raw == "":
        return
    mapping[key] = raw


def _error_fields(exc: ValidationError) -> List[str]:
    return [".".join(str(part) for part in error["loc"]) or "settings" for error in exc.errors()]


__all__ = [
    "CONFIG_PATH_ENV",
    "DEFAULT_SECRETS_SERVICE",
    "ENV_PREFIX",
    "Settings",
    "load_settings",
]
