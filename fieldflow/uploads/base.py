"""Base interface for chunked upload session stores."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ..persistence.models import utcnow


class UploadSession(BaseModel):
    """Chunks of one evidence file collected under an upload id."""

    upload_id: str
    organization_id: str
    step_id: str
    work_item_id: str
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    total_chunks: int
    chunks: List[Optional[str]] = Field(default_factory=list)
    received_chunks: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _size_slots(self) -> "UploadSession":
        if len(self.chunks) < self.total_chunks:
            self.chunks = self.chunks + [None] * (self.total_chunks - len(self.chunks))
        return self

    @property
    def is_complete(self) -> bool:
        return all(chunk is not None for chunk in self.chunks)

    def assemble(self) -> str:
        """Concatenate the slots in index order."""
        if not self.is_complete:
            missing = [i for i, chunk in enumerate(self.chunks) if chunk is None]
            raise ValueError(f"Upload {self.upload_id} is missing chunks {missing}")
        return "".join(self.chunks)  # type: ignore[arg-type]


class ChunkReceipt(BaseModel):
    """Outcome of storing one chunk."""

    upload_id: str
    received_chunks: int
    total_chunks: int
    is_new: bool
    # True for exactly one caller: the one whose fill completed the session.
    completed: bool


class UploadSessionStore(metaclass=abc.ABCMeta):
    """Abstract store for upload sessions keyed by (organization, upload id)."""

    async def connect(self) -> None:
        """Open connection to the backing service (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing service (no-op by default)."""
        pass

    @abc.abstractmethod
    async def fill_chunk(
        self, session: UploadSession, chunk_index: int, chunk_data: str
    ) -> ChunkReceipt:
        """Store ``chunk_data`` in its slot unless the slot is already filled.

        ``session`` describes the upload and is stored as-is when no session
        exists yet. Raises ``InvalidArgumentError`` when an existing session
        declares a different ``total_chunks``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def release_chunk(
        self, organization_id: str, upload_id: str, chunk_index: int
    ) -> None:
        """Empty a filled slot again.

        Used when reassembly fails after a completing fill, so that resending
        that chunk completes the session once more.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, organization_id: str, upload_id: str) -> UploadSession | None:
        """Return the session including its chunks."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, organization_id: str, upload_id: str) -> bool:
        """Remove a session. Returns ``True`` when one existed."""
        raise NotImplementedError
