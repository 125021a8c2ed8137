import asyncio

import pytest

from fieldflow.errors import InvalidStateError
from fieldflow.materializer import StepMaterializer
from fieldflow.persistence import (
    ExecutionStatus,
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
    StepStatus,
    WorkflowExecution,
)
from fieldflow.persistence.models import utcnow
from tests.conftest import ORG, inspection_template


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteExecutionRepository(tmp_path / "wf.db")
    return InMemoryExecutionRepository()


def _new_execution(work_item_id="wi-1"):
    execution = WorkflowExecution(
        organization_id=ORG, work_item_id=work_item_id, template_id="inspection"
    )
    steps = StepMaterializer().materialize(
        inspection_template(), execution.id, ORG, work_item_id
    )
    return execution, steps


@pytest.mark.asyncio
async def test_repository_crud(repo):
    execution, steps = _new_execution()
    stored, created = await repo.create_execution(execution, steps)
    assert created
    assert stored.id == execution.id

    loaded = await repo.get_execution(execution.id, ORG)
    assert loaded is not None
    assert loaded.status == ExecutionStatus.IN_PROGRESS
    assert loaded.template_id == "inspection"

    loaded_steps = await repo.list_steps(execution.id, ORG)
    assert [s.step_index for s in loaded_steps] == [0, 1, 2]
    assert [s.title for s in loaded_steps] == ["Site photos", "Safety checklist", "Meter reading"]
    assert loaded_steps[1].evidence.checklist_items[0].name == "Power isolated"
    assert all(s.status == StepStatus.NOT_STARTED for s in loaded_steps)

    updated = await repo.update_execution_data(
        execution.id, ORG, "photos", {"photos": {"data": {"amount": 5}}}
    )
    assert updated.current_step_id == "photos"
    assert updated.execution_data == {"photos": {"data": {"amount": 5}}}
    assert (await repo.find_in_progress("wi-1", ORG)).id == execution.id


@pytest.mark.asyncio
async def test_second_in_progress_execution_is_rejected(repo):
    first, first_steps = _new_execution()
    second, second_steps = _new_execution()

    await repo.create_execution(first, first_steps)
    stored, created = await repo.create_execution(second, second_steps)

    assert not created
    assert stored.id == first.id
    assert await repo.get_execution(second.id, ORG) is None
    assert len(await repo.list_work_item_steps("wi-1", ORG)) == 3


@pytest.mark.asyncio
async def test_mark_completed_only_once(repo):
    execution, steps = _new_execution()
    await repo.create_execution(execution, steps)

    first = await repo.mark_execution_completed(execution.id, ORG, utcnow())
    second = await repo.mark_execution_completed(execution.id, ORG, utcnow())

    assert first is not None
    assert first.status == ExecutionStatus.COMPLETED
    assert first.completed_at is not None
    assert second is None
    assert await repo.find_in_progress("wi-1", ORG) is None

    # A completed execution no longer blocks a new one.
    again, again_steps = _new_execution()
    _, created = await repo.create_execution(again, again_steps)
    assert created


@pytest.mark.asyncio
async def test_update_step_applies_mutation_atomically(repo):
    execution, steps = _new_execution()
    await repo.create_execution(execution, steps)
    step_id = steps[0].id

    def complete(step):
        step.status = StepStatus.COMPLETED
        step.notes = "done"

    updated = await repo.update_step(step_id, ORG, complete)
    assert updated.status == StepStatus.COMPLETED
    assert (await repo.get_step(step_id, ORG)).notes == "done"

    def reject(step):
        step.status = StepStatus.CANCELLED
        raise InvalidStateError("nope")

    with pytest.raises(InvalidStateError):
        await repo.update_step(step_id, ORG, reject)
    assert (await repo.get_step(step_id, ORG)).status == StepStatus.COMPLETED

    assert await repo.update_step("missing", ORG, complete) is None


@pytest.mark.asyncio
async def test_concurrent_step_updates_do_not_lose_writes(repo):
    execution, steps = _new_execution()
    await repo.create_execution(execution, steps)
    step_id = steps[2].id

    def add_value(key):
        def mutate(step):
            step.evidence = step.evidence.merge({key: True})

        return mutate

    await asyncio.gather(*(repo.update_step(step_id, ORG, add_value(f"k{i}")) for i in range(10)))

    step = await repo.get_step(step_id, ORG)
    assert set(step.evidence.values) == {f"k{i}" for i in range(10)}


@pytest.mark.asyncio
async def test_organization_scoping(repo):
    execution, steps = _new_execution()
    await repo.create_execution(execution, steps)

    assert await repo.get_execution(execution.id, "org-2") is None
    assert await repo.get_step(steps[0].id, "org-2") is None
    assert await repo.list_executions("org-2") == []
    assert await repo.mark_execution_completed(execution.id, "org-2", utcnow()) is None


@pytest.mark.asyncio
async def test_delete_executions_removes_steps(repo):
    execution, steps = _new_execution()
    await repo.create_execution(execution, steps)
    other, other_steps = _new_execution("wi-2")
    await repo.create_execution(other, other_steps)

    assert await repo.delete_executions("wi-1", ORG) == 1
    assert await repo.get_execution(execution.id, ORG) is None
    assert await repo.list_work_item_steps("wi-1", ORG) == []
    assert len(await repo.list_work_item_steps("wi-2", ORG)) == 3
    assert [e.id for e in await repo.list_executions(ORG)] == [other.id]
