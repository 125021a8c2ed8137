"""Upload session store factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FieldflowConfig, load_config
from .base import ChunkReceipt, UploadSession, UploadSessionStore
from .inmemory import InMemoryUploadStore

_store_instance: UploadSessionStore | None = None


def get_upload_store(
    backend: Optional[str] = None, config: Optional[FieldflowConfig] = None
) -> UploadSessionStore:
    """Factory function to get the configured upload session store.

    Without explicit arguments the previously created store is reused so
    that every caller in the process sees the same sessions.
    """

    global _store_instance
    if _store_instance is not None and backend is None and config is None:
        return _store_instance

    config = config or load_config()
    backend = (
        backend
        or os.getenv("FIELDFLOW_UPLOAD_BACKEND")
        or config.uploads.backend
    ).lower()
    ttl = config.uploads.session_ttl_seconds

    if backend == "inmemory":
        _store_instance = InMemoryUploadStore(session_ttl=ttl)
    elif backend == "redis":
        from .redis import RedisUploadStore

        redis_conf = config.uploads.redis
        _store_instance = RedisUploadStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            session_ttl=ttl,
        )
    else:
        raise ValueError(f"Unsupported upload backend: {backend}")
    return _store_instance


__all__ = [
    "ChunkReceipt",
    "InMemoryUploadStore",
    "UploadSession",
    "UploadSessionStore",
    "get_upload_store",
]
