"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class GoogleSettings(BaseModel):
    """Settings controlling Google OAuth and Gmail API access."""

    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(
        default=None, description="OAuth client secret"
    )
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Endpoint used to refresh access tokens",
    )
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Base URL of the Gmail REST API for the current user",
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="HTTP timeout for Gmail API calls"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./gmail_mirror.db"), description="SQLite database path"
    )


class BlobSettings(BaseModel):
    """Settings for the S3 bucket holding bodies and attachments."""

    bucket: str | None = Field(default=None, description="S3 bucket name")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None, description="Custom S3 endpoint, e.g. for MinIO"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class SyncSettings(BaseModel):
    """Settings controlling Gmail pagination, concurrency and retry policy."""

    page_size: int = Field(
        default=500, ge=1, le=500, description="Message ids requested per page"
    )
    fetch_concurrency: int = Field(
        default=10, ge=1, description="Concurrent raw message fetches"
    )
    max_retries: int = Field(
        default=3, ge=0, description="Retries for rate limited or 5xx responses"
    )
    on_cursor_expired: Literal["full_sync", "fail"] = Field(
        default="full_sync",
        description="Policy when Gmail rejects the stored history id",
    )


class WebSettings(BaseModel):
    """Settings for the HTTP surface."""

    cron_secret: str | None = Field(
        default=None, description="Bearer secret required by the cron endpoint"
    )
    host: str = Field(default="127.0.0.1", description="Bind address for serve")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port for serve")


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    google: GoogleSettings = Field(default_factory=GoogleSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    blob: BlobSettings = Field(default_factory=BlobSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    web: WebSettings = Field(default_factory=WebSettings)


ENV_PREFIX = "GMAIL_MIRROR_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(
        env_file, include_environment=include_environment
    )
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "BlobSettings",
    "GoogleSettings",
    "LoggingSettings",
    "StorageSettings",
    "SyncSettings",
    "WebSettings",
    "load_app_settings",
]
