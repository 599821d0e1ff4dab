import json
from pathlib import Path

import pytest

from opscrew.cli_utils.definitions import load_agents, load_workflows
from opscrew.cli_utils.fs import _iter_definition_files
from opscrew.contracts import ExecuteWorkflowRequest
from opscrew.models import WorkflowStatus

DEFINITIONS = Path(__file__).parent.parent / "fixtures" / "definitions"


async def _install(engine):
    files = list(_iter_definition_files(DEFINITIONS))
    agents, agent_errors = load_agents(files)
    workflows, workflow_errors = load_workflows(files)
    assert agent_errors == []
    assert workflow_errors == []
    for _, agent in agents:
        await engine.agents.create_agent(agent, validate=True)
    for _, workflow in workflows:
        await engine.workflows.create_workflow(workflow)
    await engine.load_agent_limits()


@pytest.mark.asyncio
async def test_onboarding_runs_end_to_end(engine, completion):
    completion.replies.update(
        {
            "agent-intake": {"summary": "Acme needs a CRM rollout"},
            "agent-research": [RuntimeError("upstream timeout"), {"findings": "Acme uses Sheets"}],
            "agent-pm": {"plan": "Kickoff on Monday"},
        }
    )
    await _install(engine)

    response = await engine.execute_workflow(
        ExecuteWorkflowRequest(
            workflow_id="client-onboarding", variables={"client_name": "Acme"}
        )
    )

    assert response.status == WorkflowStatus.COMPLETED
    assert response.variables["intake_summary"] == "Acme needs a CRM rollout"
    assert response.variables["research_findings"] == "Acme uses Sheets"
    assert response.variables["kickoff_plan"] == "Kickoff on Monday"

    intake_input = json.loads(completion.calls_for("agent-intake")[0].messages[-1].content)
    assert intake_input == {"client": "Acme"}
    research = next(se for se in response.step_executions if se.step_id == "research")
    assert research.retry_count == 1
    assert len(completion.calls_for("agent-research")) == 2
    assert completion.calls_for("agent-intake")[0].temperature == 0.3


@pytest.mark.asyncio
async def test_onboarding_skips_kickoff_outside_region(engine, completion):
    await _install(engine)

    response = await engine.execute_workflow(
        ExecuteWorkflowRequest(
            workflow_id="client-onboarding",
            variables={"client_name": "Acme", "region": "apac"},
        )
    )

    assert response.status == WorkflowStatus.COMPLETED
    assert [se.step_id for se in response.step_executions] == ["intake", "research"]
    assert completion.calls_for("agent-pm") == []
