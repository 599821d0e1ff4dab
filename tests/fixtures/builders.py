"""Builders and fakes shared by the test suite."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Union

from opscrew.config import OpsCrewConfig
from opscrew.contracts import (
    ChatMessage,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
)
from opscrew.engine import OrchestrationEngine, create_engine
from opscrew.models import (
    Agent,
    AgentPersona,
    AgentType,
    TokenUsage,
    Workflow,
    WorkflowStep,
)
from opscrew.persistence import InMemoryRepository, StateRepository

Reply = Union[Dict[str, Any], str, Exception, Callable[[CompletionRequest], Any]]


def make_response(
    content: str, finish_reason: Optional[str] = "stop", total_tokens: int = 100
) -> CompletionResponse:
    return CompletionResponse(
        id="cmpl-test",
        model="test-model",
        choices=[
            CompletionChoice(
                message=ChatMessage(role="assistant", content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=TokenUsage(
            prompt_tokens=total_tokens // 2,
            completion_tokens=total_tokens - total_tokens // 2,
            total_tokens=total_tokens,
        ),
    )


class FakeCompletionService:
    """Completion service answering from a per-agent script.

    Each agent's persona prompt is ``agent:<id>``; ``replies`` maps that id to
    a dict (returned as JSON), a string, an exception to raise, or a callable
    receiving the request. A list of replies is consumed one per call.
    """

    def __init__(self, replies: Optional[Dict[str, Any]] = None) -> None:
        self.replies: Dict[str, Any] = dict(replies or {})
        self.calls: List[CompletionRequest] = []

    def calls_for(self, agent_id: str) -> List[CompletionRequest]:
        return [c for c in self.calls if _agent_of(c) == agent_id]

    async def create_chat_completion(self, request: CompletionRequest) -> CompletionResponse:
        self.calls.append(request)
        agent_id = _agent_of(request)
        reply = self.replies.get(agent_id, {"result": f"{agent_id} done"})
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(request)
            if hasattr(reply, "__await__"):
                reply = await reply
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, CompletionResponse):
            return reply
        if isinstance(reply, dict):
            return make_response(json.dumps(reply))
        return make_response(str(reply))


def _agent_of(request: CompletionRequest) -> Optional[str]:
    for message in request.messages:
        if message.role == "system" and message.content.startswith("agent:"):
            return message.content[len("agent:") :]
    return None


async def no_sleep(seconds: float) -> None:
    return None


def make_agent(agent_id: str, agent_type: AgentType = AgentType.PM, **kwargs) -> Agent:
    persona = kwargs.pop(
        "persona",
        AgentPersona(name=f"{agent_id} persona", system_prompt=f"agent:{agent_id}"),
    )
    return Agent(
        id=agent_id,
        type=agent_type,
        name=kwargs.pop("name", agent_id.title()),
        persona=persona,
        **kwargs,
    )


def make_step(step_id: str, order: int, agent_id: Optional[str] = None, **kwargs) -> WorkflowStep:
    return WorkflowStep(
        id=step_id,
        name=kwargs.pop("name", step_id),
        agent_id=agent_id or f"agent-{step_id}",
        order=order,
        **kwargs,
    )


def make_workflow(steps: List[WorkflowStep], workflow_id: str = "wf-test", **kwargs) -> Workflow:
    return Workflow(id=workflow_id, name=kwargs.pop("name", "Test workflow"), steps=steps, **kwargs)


def build_engine(
    completion: Optional[FakeCompletionService] = None,
    repository: Optional[StateRepository] = None,
    config: Optional[OpsCrewConfig] = None,
    **kwargs,
) -> OrchestrationEngine:
    return create_engine(
        config or OpsCrewConfig(),
        repository=repository or InMemoryRepository(),
        completion_service=completion or FakeCompletionService(),
        sleep=kwargs.pop("sleep", no_sleep),
        **kwargs,
    )


async def register(engine: OrchestrationEngine, workflow: Workflow, *agents: Agent) -> None:
    """Store ``workflow`` plus an agent for each of its steps."""
    known = {a.id for a in agents}
    for agent in agents:
        await engine.agents.create_agent(agent)
    for step in workflow.steps:
        if step.agent_id not in known:
            await engine.agents.create_agent(make_agent(step.agent_id))
            known.add(step.agent_id)
    await engine.workflows.create_workflow(workflow)
