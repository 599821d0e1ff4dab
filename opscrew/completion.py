"""Language-model completion service boundary and its pydantic-ai adapter."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from pydantic_ai import Agent
from pydantic_ai.settings import ModelSettings

from .constants import DEFAULT_MODEL
from .contracts import (
    ChatMessage,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
)
from .models import TokenUsage

logger = logging.getLogger(__name__)

_FINISH_REASONS = {"stop", "length", "content_filter"}


class CompletionService(Protocol):
    """Chat-completion backend used by the step dispatcher."""

    async def create_chat_completion(
        self, request: CompletionRequest
    ) -> CompletionResponse:
        ...


def _usage_value(usage: Any, *names: str) -> int:
    for name in names:
        value = getattr(usage, name, None)
        if value is not None:
            return int(value)
    return 0


class PydanticAICompletionService:
    """Run chat completions through a ``pydantic_ai.Agent``.

    System messages become the agent's system prompts and the remaining
    messages are joined into the user prompt. Model names without a provider
    prefix get ``provider:`` prepended, so ``gpt-4`` runs as ``openai:gpt-4``.
    """

    def __init__(self, model: Optional[str] = None, provider: str = "openai") -> None:
        self.default_model = model or DEFAULT_MODEL
        self.provider = provider

    def resolve_model(self, model: Optional[str]) -> str:
        name = model or self.default_model
        if ":" in name:
            return name
        return f"{self.provider}:{name}"

    def _build_agent(self, request: CompletionRequest) -> Agent:
        system_prompts = [m.content for m in request.messages if m.role == "system"]
        return Agent(self.resolve_model(request.model), system_prompt=system_prompts)

    async def create_chat_completion(
        self, request: CompletionRequest
    ) -> CompletionResponse:
        agent = self._build_agent(request)
        prompt = "\n\n".join(m.content for m in request.messages if m.role != "system")
        timeout_s = request.timeout_ms / 1000
        settings = ModelSettings(
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            timeout=timeout_s,
        )

        logger.debug(f"Requesting completion from {self.resolve_model(request.model)}")
        result = await asyncio.wait_for(
            agent.run(prompt, model_settings=settings), timeout=timeout_s
        )

        usage = result.usage()
        prompt_tokens = _usage_value(usage, "input_tokens", "request_tokens")
        completion_tokens = _usage_value(usage, "output_tokens", "response_tokens")
        total_tokens = _usage_value(usage, "total_tokens") or prompt_tokens + completion_tokens

        finish_reason = None
        messages = result.all_messages()
        if messages:
            reason = getattr(messages[-1], "finish_reason", None)
            finish_reason = reason if reason in _FINISH_REASONS else None

        return CompletionResponse(
            model=request.model,
            choices=[
                CompletionChoice(
                    message=ChatMessage(role="assistant", content=str(result.output)),
                    finish_reason=finish_reason,
                )
            ],
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
        )
