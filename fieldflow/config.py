from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel

DEFAULT_MAX_CHUNK_SIZE = 15 * 1024 * 1024


class RedisConfig(BaseModel):
    """Configuration for the Redis upload session store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class UploadConfig(BaseModel):
    """Chunked upload settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    # None keeps abandoned sessions until they are reassembled or discarded.
    session_ttl_seconds: Optional[float] = None
    redis: RedisConfig = RedisConfig()


class CallbackConfig(BaseModel):
    """Completion callback settings."""

    webhook_timeout: float = 30.0
    webhook_base_url: str = "http://localhost:5000"


class PhotoAnalysisSettings(BaseModel):
    """OCR trigger settings."""

    timeout: float = 60.0
    background: bool = False


class FieldflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    uploads: UploadConfig = UploadConfig()
    callbacks: CallbackConfig = CallbackConfig()
    photo_analysis: PhotoAnalysisSettings = PhotoAnalysisSettings()


def load_config(path: Optional[str] = None) -> FieldflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FIELDFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FIELDFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FieldflowConfig(**data)
    else:
        config = FieldflowConfig()

    env_db_url = os.getenv("FIELDFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_upload_backend = os.getenv("FIELDFLOW_UPLOAD_BACKEND")
    if env_upload_backend:
        config.uploads.backend = env_upload_backend.lower()
    return config
