"""Reassembly of evidence files uploaded in chunks."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from .config import DEFAULT_MAX_CHUNK_SIZE
from .contracts import FileEvidence
from .errors import InvalidArgumentError, PayloadTooLargeError
from .persistence import ExecutionStep
from .steps import StepStateMachine
from .uploads import UploadSession, UploadSessionStore

logger = logging.getLogger(__name__)


class ChunkResult(BaseModel):
    completed: bool
    upload_id: str
    received_chunks: int
    total_chunks: int
    step: Optional[ExecutionStep] = None


class ChunkedUploadReassembler:
    """Collects chunks per (organization, upload id) and attaches the file."""

    def __init__(
        self,
        store: UploadSessionStore,
        steps: StepStateMachine,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
    ) -> None:
        self._store = store
        self._steps = steps
        self._max_chunk_size = max_chunk_size

    async def ingest_chunk(
        self,
        organization_id: str,
        step_id: str,
        work_item_id: str,
        upload_id: Optional[str],
        chunk_index: Optional[int],
        total_chunks: Optional[int],
        chunk_data: Optional[str],
        file_meta: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> ChunkResult:
        if not upload_id or chunk_index is None or not total_chunks or not chunk_data:
            raise InvalidArgumentError(
                "Missing required fields: uploadId, chunkIndex, totalChunks, chunkData"
            )
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise InvalidArgumentError(
                f"Invalid chunk index {chunk_index}. Must be between 0 and {total_chunks - 1}"
            )
        if len(chunk_data) > self._max_chunk_size:
            raise PayloadTooLargeError(
                f"Chunk too large. Maximum chunk size is {self._max_chunk_size} bytes"
            )

        file_meta = file_meta or {}
        session = UploadSession(
            upload_id=upload_id,
            organization_id=organization_id,
            step_id=step_id,
            work_item_id=work_item_id,
            file_name=file_meta.get("fileName"),
            file_type=file_meta.get("fileType"),
            file_size=file_meta.get("fileSize"),
            total_chunks=total_chunks,
        )
        receipt = await self._store.fill_chunk(session, chunk_index, chunk_data)
        if not receipt.is_new:
            logger.debug(f"Chunk {chunk_index} of upload {upload_id} already received")
        if not receipt.completed:
            return ChunkResult(
                completed=False,
                upload_id=upload_id,
                received_chunks=receipt.received_chunks,
                total_chunks=receipt.total_chunks,
            )

        stored = await self._store.get(organization_id, upload_id)
        if stored is None:
            raise InvalidArgumentError(f"Upload session {upload_id} expired before reassembly")
        try:
            file_evidence = FileEvidence(
                file_name=stored.file_name,
                file_type=stored.file_type,
                file_size=stored.file_size,
                file_data=stored.assemble(),
            )
            step = await self._steps.attach_file(
                stored.step_id, organization_id, file_evidence, actor_id=actor_id
            )
        except Exception as e:
            logger.error(
                f"Reassembly of upload {upload_id} failed; releasing chunk {chunk_index}: {e}"
            )
            await self._store.release_chunk(organization_id, upload_id, chunk_index)
            raise
        await self._store.delete(organization_id, upload_id)
        logger.info(
            f"Reassembled upload {upload_id} ({stored.total_chunks} chunks) into step {stored.step_id}"
        )
        return ChunkResult(
            completed=True,
            upload_id=upload_id,
            received_chunks=stored.received_chunks,
            total_chunks=stored.total_chunks,
            step=step,
        )
