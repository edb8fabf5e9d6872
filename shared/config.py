"""Shared configuration utilities."""

import os
from pathlib import Path
from typing import Optional

from shared.models import SyncConfig


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_bool_env(key: str, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean flag."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_database_url() -> str:
    """Get the state database URL from environment."""
    return get_env("DATABASE_URL", "sqlite:///./notepush_sync.db")


def get_backend_config() -> dict:
    """Get Note Push backend connection settings from environment."""
    return {
        "base_url": get_env("NOTE_PUSH_SERVER_URL", "https://note-push.example.com"),
        "timeout": float(get_env("NOTE_PUSH_TIMEOUT", "5")),
    }


def get_siyuan_config() -> dict:
    """Get document store (SiYuan kernel API) settings from environment."""
    return {
        "base_url": get_env("SIYUAN_API_URL", "http://127.0.0.1:6806"),
        "token": get_env("SIYUAN_API_TOKEN", ""),
    }


def get_asset_store_backend() -> str:
    """Get which asset store receives uploaded images: 'siyuan' or 's3'."""
    backend = get_env("ASSET_STORE", "siyuan").strip().lower()
    if backend not in ("siyuan", "s3"):
        raise ValueError(f"Unsupported ASSET_STORE value: {backend}")
    return backend


def get_aws_config() -> dict:
    """Get AWS configuration from environment."""
    return {
        "region": get_env("AWS_REGION", "us-east-1"),
        "s3_bucket": get_env("AWS_S3_BUCKET", "note-push-assets"),
        "access_key_id": get_env("AWS_ACCESS_KEY_ID"),
        "secret_access_key": get_env("AWS_SECRET_ACCESS_KEY"),
    }


def get_key_file_path() -> Path:
    """Location of the at-rest encryption key used when SYNC_ENCRYPTION_KEY is unset."""
    return Path(get_env("SYNC_KEY_FILE", "~/.notepush_sync/secret.key")).expanduser()


def get_sync_config_from_env() -> SyncConfig:
    """Build the initial sync configuration used when none has been persisted."""
    interval = get_env("SYNC_INTERVAL", "3600")
    try:
        sync_interval = int(interval)
    except ValueError:
        raise ValueError(f"SYNC_INTERVAL must be an integer, got {interval!r}")

    return SyncConfig(
        token=get_env("NOTE_PUSH_TOKEN", ""),
        sync_interval=sync_interval,
        notebook_id=get_env("SYNC_NOTEBOOK_ID", ""),
        document_id=get_env("SYNC_DOCUMENT_ID", ""),
        sync_on_load=get_bool_env("SYNC_ON_LOAD", True),
        salt_value=get_env("SYNC_SALT", ""),
        timezone=get_env("SYNC_TIMEZONE") or None,
    )
