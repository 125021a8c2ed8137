"""Completion callback handler tests."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from fieldflow.callbacks import (
    CallbackContext,
    CallbackDispatcher,
    DatabaseUpdateHandler,
    TicketSystemHandler,
    WebhookHandler,
)
from fieldflow.collaborators import SourceRecord
from fieldflow.contracts import CompletionCallback
from fieldflow.errors import CallbackError, ExternalServiceError
from tests.conftest import ORG, WORK_ITEM, FakeFieldUpdater, FakeSourceLookup, FakeTicketClient


def _context(payload=None, metadata=None):
    return CallbackContext(
        execution_id="exec-1",
        organization_id=ORG,
        work_item_id=WORK_ITEM,
        completed_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        payload=payload or {"meterReading": "12345", "organizationId": ORG, "workItemId": WORK_ITEM},
        metadata=metadata or {},
    )


def _callback(**data):
    return CompletionCallback.model_validate({"integrationName": "crm", **data})


@pytest.mark.asyncio
async def test_webhook_posts_payload_as_json():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    webhook = WebhookHandler(transport=httpx.MockTransport(handler))
    callback = _callback(
        webhook={"url": "https://hooks.example.com/done", "headers": {"X-Token": "abc"}}
    )

    result = await webhook.run(callback, _context())

    assert result == {"ok": True}
    [request] = requests
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/done"
    assert request.headers["X-Token"] == "abc"
    assert json.loads(request.content)["meterReading"] == "12345"


@pytest.mark.asyncio
async def test_relative_webhook_url_uses_base_url():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"ok": True})

    webhook = WebhookHandler(
        base_url="https://api.example.com/", transport=httpx.MockTransport(handler)
    )
    await webhook.run(_callback(webhookUrl="/hooks/done", webhookMethod="put"), _context())
    assert seen == ["https://api.example.com/hooks/done"]


@pytest.mark.asyncio
async def test_webhook_failures_raise_external_service_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def broken(request):
        return httpx.Response(500, text="boom")

    callback = _callback(webhook={"url": "https://hooks.example.com/done"})
    with pytest.raises(ExternalServiceError, match="connection refused"):
        await WebhookHandler(transport=httpx.MockTransport(refuse)).run(callback, _context())
    with pytest.raises(ExternalServiceError, match="500"):
        await WebhookHandler(transport=httpx.MockTransport(broken)).run(callback, _context())


@pytest.mark.asyncio
async def test_webhook_success_requires_json_body():
    def plain(request):
        return httpx.Response(200, text="OK")

    def empty(request):
        return httpx.Response(204)

    callback = _callback(webhook={"url": "https://hooks.example.com/done"})
    with pytest.raises(ExternalServiceError, match="non-JSON"):
        await WebhookHandler(transport=httpx.MockTransport(plain)).run(callback, _context())
    with pytest.raises(ExternalServiceError, match="non-JSON"):
        await WebhookHandler(transport=httpx.MockTransport(empty)).run(callback, _context())


@pytest.mark.asyncio
async def test_database_update_writes_allowed_fields_to_source_record():
    updater = FakeFieldUpdater(allowed={"meterReading"})
    lookup = FakeSourceLookup({WORK_ITEM: SourceRecord(source_table="addresses", source_id=42)})
    handler = DatabaseUpdateHandler(updater, lookup)
    callback = _callback(databaseUpdate={"targetTable": "addresses"})

    result = await handler.run(
        callback, _context(payload={"meterReading": "1", "colour": "red", "workItemId": WORK_ITEM})
    )

    assert updater.updates == [("addresses", 42, "meterReading", "1")]
    assert result["skipped"] == ["colour"]


@pytest.mark.asyncio
async def test_database_update_falls_back_to_metadata_record_id():
    updater = FakeFieldUpdater()
    handler = DatabaseUpdateHandler(updater, FakeSourceLookup())
    callback = _callback(databaseUpdate={"targetTable": "meters", "recordIdSource": "meter_id"})

    await handler.run(callback, _context(metadata={"meter_id": 7}))
    assert updater.updates == [("meters", 7, "meterReading", "12345")]

    with pytest.raises(ExternalServiceError, match="No target record"):
        await handler.run(callback, _context())


@pytest.mark.asyncio
async def test_ticket_system_updates_status_and_posts_message():
    client = FakeTicketClient()
    callback = _callback(
        ticketSystem={
            "statusId": 3,
            "message": "Work item {workItemId} completed at {completedAt}",
        }
    )

    result = await TicketSystemHandler(client).run(callback, _context(metadata={"ticket_id": 99}))

    assert client.status_updates == [("ticket", 99, 3)]
    assert client.messages == [(99, "Work item wi-1 completed at 2024-05-01T12:00:00+00:00")]
    assert result["actions"] == ["update_status", "add_message"]


@pytest.mark.asyncio
async def test_ticket_system_skips_without_linked_entity():
    client = FakeTicketClient()
    result = await TicketSystemHandler(client).run(_callback(ticketSystem={"statusId": 3}), _context())
    assert result == {"skipped": True}
    assert client.status_updates == []


@pytest.mark.asyncio
async def test_dispatcher_runs_every_matching_handler_before_failing():
    updater = FakeFieldUpdater()

    def refuse(request):
        raise httpx.ConnectError("unreachable", request=request)

    dispatcher = CallbackDispatcher(
        [
            WebhookHandler(transport=httpx.MockTransport(refuse)),
            DatabaseUpdateHandler(updater),
            TicketSystemHandler(None),
        ]
    )
    callback = _callback(
        webhook={"url": "https://hooks.example.com/done"},
        databaseUpdate={"targetTable": "meters", "recordIdSource": "meter_id"},
    )

    with pytest.raises(CallbackError) as excinfo:
        await dispatcher.run(callback, _context(metadata={"meter_id": 1}))

    assert excinfo.value.integration_name == "crm"
    assert len(excinfo.value.failures) == 1
    assert excinfo.value.failures[0].startswith("webhook")
    assert updater.updates == [("meters", 1, "meterReading", "12345")]


@pytest.mark.asyncio
async def test_dispatcher_with_no_actions_returns_empty_result():
    assert await CallbackDispatcher([TicketSystemHandler(None)]).run(_callback(), _context()) == {}
