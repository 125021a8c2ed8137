"""Completion callback handlers.

A callback may declare several behaviours (database update, ticket system,
webhook); every matching handler runs, and the callback fails when any of
them failed.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from .collaborators import DatabaseFieldUpdater, TicketSystemClient, WorkItemSourceLookup
from .contracts import CompletionCallback
from .errors import CallbackError, ExternalServiceError
from .resolution import RESERVED_KEYS

logger = logging.getLogger(__name__)


@dataclass
class CallbackContext:
    """Everything a handler needs about the completed execution."""

    execution_id: str
    organization_id: str
    work_item_id: str
    completed_at: datetime
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)


class CallbackHandler(metaclass=abc.ABCMeta):
    name: str = "handler"

    @abc.abstractmethod
    def matches(self, callback: CompletionCallback) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def run(self, callback: CompletionCallback, context: CallbackContext) -> Any:
        raise NotImplementedError


class DatabaseUpdateHandler(CallbackHandler):
    """Writes resolved fields onto the record the work item came from."""

    name = "database_update"

    def __init__(
        self,
        updater: Optional[DatabaseFieldUpdater],
        source_lookup: Optional[WorkItemSourceLookup] = None,
    ) -> None:
        self._updater = updater
        self._source_lookup = source_lookup

    def matches(self, callback: CompletionCallback) -> bool:
        return callback.database_update is not None

    async def _target(
        self, callback: CompletionCallback, context: CallbackContext
    ) -> tuple[Optional[str], Optional[Union[int, str]]]:
        spec = callback.database_update
        table = spec.target_table
        if self._source_lookup is not None:
            source = await self._source_lookup.get(
                context.work_item_id, context.organization_id
            )
            if source is not None and (table is None or source.source_table == table):
                return source.source_table, source.source_id
        if spec.record_id_source and context.metadata.get(spec.record_id_source) is not None:
            return table, context.metadata[spec.record_id_source]
        return table, None

    async def run(self, callback: CompletionCallback, context: CallbackContext) -> Any:
        if self._updater is None:
            raise ExternalServiceError("No database field updater configured")

        table, record_id = await self._target(callback, context)
        if not table or record_id is None:
            raise ExternalServiceError(
                f"No target record for work_item_id={context.work_item_id} "
                f"(table={table}, recordIdSource={callback.database_update.record_id_source})"
            )

        allowed = await self._updater.allowed_fields(table, context.organization_id)
        updated: List[str] = []
        skipped: List[str] = []
        for key, value in context.payload.items():
            if key in RESERVED_KEYS:
                continue
            if allowed and key not in allowed:
                logger.warning(f"Field {key} is not writable on {table}; skipping")
                skipped.append(key)
                continue
            await self._updater.update_field(table, record_id, key, value)
            updated.append(key)

        logger.info(f"Updated {table}#{record_id} fields {updated}")
        return {"table": table, "recordId": record_id, "updated": updated, "skipped": skipped}


class TicketSystemHandler(CallbackHandler):
    """Moves the linked ticket or task and optionally posts a message."""

    name = "ticket_system"

    def __init__(self, client: Optional[TicketSystemClient]) -> None:
        self._client = client

    def matches(self, callback: CompletionCallback) -> bool:
        return callback.ticket_system is not None

    async def run(self, callback: CompletionCallback, context: CallbackContext) -> Any:
        if self._client is None:
            raise ExternalServiceError("No ticket system client configured")

        spec = callback.ticket_system
        ticket_id = context.metadata.get(spec.ticket_id_key)
        task_id = context.metadata.get(spec.task_id_key)
        entity_type = spec.entity_type or ("ticket" if ticket_id else "task" if task_id else None)
        entity_id = ticket_id or task_id
        if not entity_id or not entity_type:
            logger.warning(
                f"No ticket or task linked to work_item_id={context.work_item_id}; "
                "skipping ticket system update"
            )
            return {"skipped": True}

        actions: List[str] = []
        if spec.action == "update_status" and spec.status_id is not None:
            await self._client.update_status(entity_type, entity_id, spec.status_id)
            logger.info(f"Updated {entity_type} {entity_id} status to {spec.status_id}")
            actions.append("update_status")

        if spec.message and entity_type == "ticket":
            text = spec.message.replace("{workItemId}", str(context.work_item_id)).replace(
                "{completedAt}", context.completed_at.isoformat()
            )
            await self._client.add_message(entity_id, text)
            logger.info(f"Added message to ticket {entity_id}")
            actions.append("add_message")

        return {"entityType": entity_type, "entityId": entity_id, "actions": actions}


class WebhookHandler(CallbackHandler):
    """Posts the resolved payload to the configured URL."""

    name = "webhook"

    def __init__(
        self,
        timeout: float = 30.0,
        base_url: str = "http://localhost:5000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    def matches(self, callback: CompletionCallback) -> bool:
        return callback.webhook is not None

    def _url(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self._base_url}/{url.lstrip('/')}"

    async def run(self, callback: CompletionCallback, context: CallbackContext) -> Any:
        spec = callback.webhook
        method = (spec.method or "POST").upper()
        url = self._url(spec.url)
        headers = {"Content-Type": "application/json", **spec.headers}

        logger.info(f"Calling webhook: {method} {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, json=context.payload, headers=headers
                )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Webhook {method} {url} failed: {e}") from e

        if not response.is_success:
            raise ExternalServiceError(
                f"Webhook failed: {response.status_code} {response.reason_phrase} {response.text}"
            )
        try:
            result = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"Webhook {method} {url} returned a non-JSON response: {response.text[:200]!r}"
            ) from e
        logger.info(f"Webhook success: {method} {url}")
        return result


class CallbackDispatcher:
    """Runs every handler matching a callback."""

    def __init__(self, handlers: Sequence[CallbackHandler]) -> None:
        self._handlers = list(handlers)

    async def run(
        self, callback: CompletionCallback, context: CallbackContext
    ) -> Dict[str, Any]:
        logger.info(
            f"Executing {callback.action or 'callback'} for {callback.integration_name} "
            f"(execution_id={context.execution_id})"
        )
        results: Dict[str, Any] = {}
        failures: List[str] = []
        for handler in self._handlers:
            if not handler.matches(callback):
                continue
            try:
                results[handler.name] = await handler.run(callback, context)
            except Exception as e:
                logger.error(
                    f"{handler.name} for {callback.integration_name} failed: {e}"
                )
                failures.append(f"{handler.name}: {e}")

        if failures:
            raise CallbackError(callback.integration_name, failures)
        if not results:
            logger.info(
                f"Callback {callback.integration_name} declares no outbound action; "
                "payload resolved only"
            )
        return results
