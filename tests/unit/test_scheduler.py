"""Tests for dependency scheduling and status derivation."""

import pytest

from fixtures.builders import make_step, make_workflow
from opscrew.definitions import WorkflowStore
from opscrew.models import (
    AgentStatus,
    ConditionOperator,
    StepExecution,
    WorkflowCondition,
    WorkflowExecution,
    WorkflowStatus,
)
from opscrew.persistence import InMemoryRepository
from opscrew.scheduler import DependencyScheduler


def _workflow():
    return make_workflow(
        [
            make_step("c", 3, dependencies=["a", "b"]),
            make_step("a", 1),
            make_step("b", 2),
        ]
    )


def _execution(workflow, done=(), status=AgentStatus.COMPLETED, variables=None):
    execution = WorkflowExecution(
        workflow_id=workflow.id, workflow=workflow, variables=variables or {}
    )
    for step_id in done:
        execution.step_executions.append(
            StepExecution(step_id=step_id, agent_id=f"agent-{step_id}", status=status)
        )
    return execution


@pytest.mark.asyncio
async def test_next_steps_follow_dependencies_in_order():
    wf = _workflow()
    scheduler = DependencyScheduler()

    steps = await scheduler.get_next_steps(_execution(wf))
    assert [s.id for s in steps] == ["a", "b"]

    steps = await scheduler.get_next_steps(_execution(wf, done=["a"]))
    assert [s.id for s in steps] == ["b"]

    steps = await scheduler.get_next_steps(_execution(wf, done=["a", "b"]))
    assert [s.id for s in steps] == ["c"]


@pytest.mark.asyncio
async def test_ready_steps_skip_attempted_steps():
    wf = _workflow()
    scheduler = DependencyScheduler()
    execution = _execution(wf, done=["a"], status=AgentStatus.FAILED)

    assert [s.id for s in await scheduler.get_next_steps(execution)] == ["a", "b"]
    assert [s.id for s in await scheduler.get_ready_steps(execution)] == ["b"]


@pytest.mark.asyncio
async def test_conditions_gate_steps():
    wf = make_workflow(
        [
            make_step(
                "premium",
                1,
                conditions=[
                    WorkflowCondition(
                        field="client.tier", operator=ConditionOperator.EQUALS, value="gold"
                    )
                ],
            )
        ]
    )
    scheduler = DependencyScheduler()
    gold = _execution(wf, variables={"client": {"tier": "gold"}})
    silver = _execution(wf, variables={"client": {"tier": "silver"}})
    assert [s.id for s in await scheduler.get_next_steps(gold)] == ["premium"]
    assert await scheduler.get_next_steps(silver) == []


@pytest.mark.asyncio
async def test_execution_status_and_progress():
    wf = _workflow()
    scheduler = DependencyScheduler()

    running = _execution(wf, done=["a"])
    assert await scheduler.is_execution_complete(running) is False
    assert await scheduler.get_execution_status(running) == WorkflowStatus.RUNNING
    assert await scheduler.get_execution_progress(running) == 33

    two_done = _execution(wf, done=["a", "b"])
    assert await scheduler.get_execution_progress(two_done) == 67

    finished = _execution(wf, done=["a", "b", "c"])
    assert await scheduler.is_execution_complete(finished) is True
    assert await scheduler.get_execution_status(finished) == WorkflowStatus.COMPLETED
    assert await scheduler.get_execution_progress(finished) == 100

    failed = _execution(wf, done=["a"], status=AgentStatus.FAILED)
    assert await scheduler.is_execution_complete(failed) is True
    assert await scheduler.get_execution_status(failed) == WorkflowStatus.FAILED

    waiting = _execution(wf, done=["a"], status=AgentStatus.WAITING_APPROVAL)
    assert await scheduler.get_execution_status(waiting) == WorkflowStatus.PAUSED

    cancelled = _execution(wf, done=["a", "b", "c"])
    cancelled.status = WorkflowStatus.CANCELLED
    assert await scheduler.get_execution_status(cancelled) == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_progress_half_rounds_up():
    wf = make_workflow([make_step(s, i) for i, s in enumerate("abcdefgh", 1)])
    scheduler = DependencyScheduler()
    # 1/8 = 12.5% -> 13
    assert await scheduler.get_execution_progress(_execution(wf, done=["a"])) == 13


@pytest.mark.asyncio
async def test_unknown_workflow_yields_nothing():
    scheduler = DependencyScheduler(WorkflowStore(InMemoryRepository()))
    execution = WorkflowExecution(workflow_id="missing")
    assert await scheduler.get_next_steps(execution) == []
    assert await scheduler.get_execution_progress(execution) == 0
    assert await scheduler.get_execution_status(execution) == WorkflowStatus.RUNNING


@pytest.mark.asyncio
async def test_falls_back_to_store_without_snapshot():
    repo = InMemoryRepository()
    store = WorkflowStore(repo)
    wf = await store.create_workflow(_workflow())
    scheduler = DependencyScheduler(store)
    execution = WorkflowExecution(workflow_id=wf.id)
    assert [s.id for s in await scheduler.get_next_steps(execution)] == ["a", "b"]
