"""Redis upload session store for multi-process deployments."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..errors import InvalidArgumentError
from ..persistence.models import utcnow
from .base import ChunkReceipt, UploadSession, UploadSessionStore


class RedisUploadStore(UploadSessionStore):
    """Redis-backed session store.

    Each session uses two hashes: ``<prefix>:meta`` holds the session header
    and the received counter, ``<prefix>:chunks`` maps slot index to data.
    ``HSETNX`` makes slot fills idempotent and ``HINCRBY`` hands the
    completing fill to exactly one caller.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        session_ttl: Optional[float] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisUploadStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.session_ttl = session_ttl
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _keys(self, organization_id: str, upload_id: str) -> tuple[str, str]:
        prefix = f"fieldflow:upload:{organization_id}:{upload_id}"
        return f"{prefix}:meta", f"{prefix}:chunks"

    async def fill_chunk(
        self, session: UploadSession, chunk_index: int, chunk_data: str
    ) -> ChunkReceipt:
        if not self._redis:
            await self.connect()

        meta_key, chunks_key = self._keys(session.organization_id, session.upload_id)
        header = session.model_dump_json(exclude={"chunks", "received_chunks"})
        if not await self._redis.hsetnx(meta_key, "session", header):
            stored = UploadSession.model_validate_json(
                await self._redis.hget(meta_key, "session")
            )
            if stored.total_chunks != session.total_chunks:
                raise InvalidArgumentError(
                    f"Total chunks mismatch. Expected {stored.total_chunks}, "
                    f"got {session.total_chunks}"
                )

        is_new = bool(await self._redis.hsetnx(chunks_key, str(chunk_index), chunk_data))
        if is_new:
            received = await self._redis.hincrby(meta_key, "received", 1)
            await self._redis.hset(meta_key, "updated_at", utcnow().isoformat())
        else:
            received = int(await self._redis.hget(meta_key, "received") or 0)

        if self.session_ttl:
            ttl = math.ceil(self.session_ttl)
            await self._redis.expire(meta_key, ttl)
            await self._redis.expire(chunks_key, ttl)

        return ChunkReceipt(
            upload_id=session.upload_id,
            received_chunks=received,
            total_chunks=session.total_chunks,
            is_new=is_new,
            completed=is_new and received == session.total_chunks,
        )

    async def release_chunk(
        self, organization_id: str, upload_id: str, chunk_index: int
    ) -> None:
        if not self._redis:
            await self.connect()

        meta_key, chunks_key = self._keys(organization_id, upload_id)
        if await self._redis.hdel(chunks_key, str(chunk_index)):
            await self._redis.hincrby(meta_key, "received", -1)
            await self._redis.hset(meta_key, "updated_at", utcnow().isoformat())

    async def get(self, organization_id: str, upload_id: str) -> UploadSession | None:
        if not self._redis:
            await self.connect()

        meta_key, chunks_key = self._keys(organization_id, upload_id)
        meta = await self._redis.hgetall(meta_key)
        if not meta or "session" not in meta:
            return None
        session = UploadSession.model_validate_json(meta["session"])
        for index, data in (await self._redis.hgetall(chunks_key)).items():
            session.chunks[int(index)] = data
        session.received_chunks = int(meta.get("received", 0))
        if meta.get("updated_at"):
            session.updated_at = datetime.fromisoformat(meta["updated_at"])
        return session

    async def delete(self, organization_id: str, upload_id: str) -> bool:
        if not self._redis:
            await self.connect()

        meta_key, chunks_key = self._keys(organization_id, upload_id)
        return bool(await self._redis.delete(meta_key, chunks_key))
