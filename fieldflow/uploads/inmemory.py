"""In-process upload session store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from ..errors import InvalidArgumentError
from ..persistence.models import utcnow
from .base import ChunkReceipt, UploadSession, UploadSessionStore

logger = logging.getLogger(__name__)


class InMemoryUploadStore(UploadSessionStore):
    """Keeps sessions in a dict guarded by an asyncio lock.

    Sessions idle for longer than ``session_ttl`` seconds are evicted lazily
    on the next store access. Without a TTL they are kept until reassembled
    or discarded.
    """

    def __init__(
        self,
        session_ttl: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions: Dict[Tuple[str, str], UploadSession] = {}
        self._lock = asyncio.Lock()
        self._ttl = timedelta(seconds=session_ttl) if session_ttl else None
        self._clock = clock

    def _evict_expired(self) -> None:
        if self._ttl is None:
            return
        cutoff = self._clock() - self._ttl
        expired = [k for k, s in self._sessions.items() if s.updated_at < cutoff]
        for key in expired:
            logger.info(f"Evicting abandoned upload session {key[1]} for org {key[0]}")
            del self._sessions[key]

    async def fill_chunk(
        self, session: UploadSession, chunk_index: int, chunk_data: str
    ) -> ChunkReceipt:
        key = (session.organization_id, session.upload_id)
        async with self._lock:
            self._evict_expired()
            current = self._sessions.get(key)
            if current is None:
                current = session.model_copy(deep=True)
                current.created_at = current.updated_at = self._clock()
                self._sessions[key] = current
            elif current.total_chunks != session.total_chunks:
                raise InvalidArgumentError(
                    f"Total chunks mismatch. Expected {current.total_chunks}, "
                    f"got {session.total_chunks}"
                )

            is_new = current.chunks[chunk_index] is None
            if is_new:
                current.chunks[chunk_index] = chunk_data
                current.received_chunks += 1
                current.updated_at = self._clock()
            return ChunkReceipt(
                upload_id=current.upload_id,
                received_chunks=current.received_chunks,
                total_chunks=current.total_chunks,
                is_new=is_new,
                completed=is_new and current.received_chunks == current.total_chunks,
            )

    async def release_chunk(
        self, organization_id: str, upload_id: str, chunk_index: int
    ) -> None:
        async with self._lock:
            current = self._sessions.get((organization_id, upload_id))
            if current is None or current.chunks[chunk_index] is None:
                return
            current.chunks[chunk_index] = None
            current.received_chunks -= 1
            current.updated_at = self._clock()

    async def get(self, organization_id: str, upload_id: str) -> UploadSession | None:
        async with self._lock:
            self._evict_expired()
            session = self._sessions.get((organization_id, upload_id))
            return session.model_copy(deep=True) if session else None

    async def delete(self, organization_id: str, upload_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop((organization_id, upload_id), None) is not None
