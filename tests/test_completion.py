"""Automatic completion and completion callbacks."""

import asyncio
import json

import httpx
import pytest

from fieldflow.collaborators import SourceRecord
from fieldflow.completion import all_required_completed
from fieldflow.materializer import StepMaterializer
from fieldflow.persistence import ExecutionStatus, SQLiteExecutionRepository, StepStatus
from tests.conftest import (
    ORG,
    WORK_ITEM,
    FakeFieldUpdater,
    FakeSourceLookup,
    inspection_template,
)

WEBHOOK = {
    "integrationName": "crm-webhook",
    "action": "notify",
    "webhook": {"url": "https://hooks.example.com/completed"},
    "fieldMappings": [
        {"sourceStepId": "meter", "sourceField": "reading", "targetField": "meterReading"},
        {"sourceStepId": "checklist", "sourceField": "checked", "targetField": "safetyChecked"},
    ],
}
DATABASE = {
    "integrationName": "address-sync",
    "action": "update_fields",
    "databaseUpdate": {"targetTable": "addresses"},
    "fieldMappings": [
        {"sourceStepId": "meter", "sourceField": "reading", "targetField": "meter_reading"},
    ],
}


class WebhookRecorder:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(200, json={"received": True})


def _use_callbacks(templates, *callbacks):
    templates.add(inspection_template(callbacks=list(callbacks)))


async def _complete_first_two(engine):
    await engine.start_execution(WORK_ITEM, ORG)
    steps = await engine.list_steps(WORK_ITEM, ORG)
    await engine.update_step_status(
        steps[0].id, ORG, "completed", evidence={"photos": [{"url": "https://cdn.example.com/1.jpg"}]}
    )
    await engine.update_step_status(steps[1].id, ORG, "completed", evidence={"checked": True})
    return steps


def test_all_required_completed_rules():
    steps = StepMaterializer().materialize(inspection_template(), "e", ORG, WORK_ITEM)
    assert not all_required_completed([])
    assert not all_required_completed(steps)

    steps[0].status = steps[1].status = steps[2].status = StepStatus.COMPLETED
    assert all_required_completed(steps)

    optional = StepMaterializer().materialize(
        inspection_template(
            steps=[{"id": "a", "required": True}, {"id": "b"}]
        ),
        "e",
        ORG,
        WORK_ITEM,
    )
    optional[0].status = StepStatus.COMPLETED
    assert all_required_completed(optional)

    none_required = StepMaterializer().materialize(
        inspection_template(steps=[{"id": "a"}, {"id": "b"}]), "e", ORG, WORK_ITEM
    )
    none_required[0].status = StepStatus.COMPLETED
    assert not all_required_completed(none_required)


@pytest.mark.asyncio
async def test_completing_last_required_step_completes_execution(make_engine, templates, work_items, activity):
    recorder = WebhookRecorder()
    _use_callbacks(templates, WEBHOOK)
    engine = make_engine(http_transport=httpx.MockTransport(recorder))

    steps = await _complete_first_two(engine)
    [execution] = await engine.get_executions(WORK_ITEM, ORG)
    assert execution.status == ExecutionStatus.IN_PROGRESS
    assert work_items.items[WORK_ITEM].status != "Completed"
    assert recorder.requests == []

    await engine.update_step_status(
        steps[2].id, ORG, "completed", evidence={"reading": "12345"}
    )

    [execution] = await engine.get_executions(WORK_ITEM, ORG)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.completed_at is not None
    assert work_items.items[WORK_ITEM].status == "Completed"
    assert "workflow_completed" in activity.actions()

    [request] = recorder.requests
    payload = json.loads(request.content)
    assert payload["meterReading"] == "12345"
    assert payload["safetyChecked"] is True
    assert payload["photos"][0]["url"] == "https://cdn.example.com/1.jpg"
    assert payload["organizationId"] == ORG
    assert payload["workItemId"] == WORK_ITEM


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
@pytest.mark.asyncio
async def test_callbacks_run_once_for_concurrent_final_updates(
    make_engine, templates, work_items, tmp_path, backend
):
    recorder = WebhookRecorder()
    _use_callbacks(templates, WEBHOOK)
    kwargs = {"http_transport": httpx.MockTransport(recorder)}
    if backend == "sqlite":
        kwargs["repository"] = SQLiteExecutionRepository(tmp_path / "wf.db")
    engine = make_engine(**kwargs)

    steps = await _complete_first_two(engine)
    await asyncio.gather(
        engine.update_step_status(steps[2].id, ORG, "completed"),
        engine.update_step_status(steps[2].id, ORG, "completed"),
    )

    assert len(recorder.requests) == 1
    assert work_items.status_updates == [(WORK_ITEM, "Completed")]


@pytest.mark.asyncio
async def test_repeated_manual_completion_does_not_rerun_callbacks(make_engine, templates):
    recorder = WebhookRecorder()
    _use_callbacks(templates, WEBHOOK)
    engine = make_engine(http_transport=httpx.MockTransport(recorder))

    execution = await engine.start_execution(WORK_ITEM, ORG)
    first = await engine.complete_execution(execution.id, ORG)
    second = await engine.complete_execution(execution.id, ORG)

    assert first.status == second.status == ExecutionStatus.COMPLETED
    assert second.completed_at == first.completed_at
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_the_next(make_engine, templates, activity):
    recorder = WebhookRecorder(fail=True)
    updater = FakeFieldUpdater()
    lookup = FakeSourceLookup({WORK_ITEM: SourceRecord(source_table="addresses", source_id=42)})
    _use_callbacks(templates, WEBHOOK, DATABASE)
    engine = make_engine(
        http_transport=httpx.MockTransport(recorder),
        field_updater=updater,
        source_lookup=lookup,
    )

    steps = await _complete_first_two(engine)
    step = await engine.update_step_status(
        steps[2].id, ORG, "completed", evidence={"reading": "12345"}
    )

    assert step.status == StepStatus.COMPLETED
    assert len(recorder.requests) == 1
    assert updater.updates == [("addresses", 42, "meter_reading", "12345")]
    [failure] = [e for e in activity.entries if e.action_type == "completion_callback_failed"]
    assert failure.details["integrationName"] == "crm-webhook"
    [execution] = await engine.get_executions(WORK_ITEM, ORG)
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_work_item_status_failure_still_runs_callbacks(make_engine, templates, work_items):
    recorder = WebhookRecorder()
    _use_callbacks(templates, WEBHOOK)
    work_items.fail_status = True
    engine = make_engine(http_transport=httpx.MockTransport(recorder))

    steps = await _complete_first_two(engine)
    await engine.update_step_status(steps[2].id, ORG, "completed")

    assert len(recorder.requests) == 1
    [execution] = await engine.get_executions(WORK_ITEM, ORG)
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_legacy_execution_data_feeds_callbacks(make_engine, templates):
    recorder = WebhookRecorder()
    _use_callbacks(templates, WEBHOOK)
    engine = make_engine(http_transport=httpx.MockTransport(recorder))

    execution = await engine.start_execution(WORK_ITEM, ORG)
    await engine.update_execution(
        execution.id, ORG, execution_data={"meter": {"data": {"reading": "777"}}}
    )
    steps = await _complete_first_two(engine)
    await engine.update_step_status(steps[2].id, ORG, "completed", evidence={"reading": "999"})

    payload = json.loads(recorder.requests[0].content)
    assert payload["meterReading"] == "777"
