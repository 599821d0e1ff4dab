"""Confidence scoring for completion responses."""

from __future__ import annotations

from typing import Optional, Protocol

from .constants import CONFIDENCE_HIGH, CONFIDENCE_MEDIUM, CONFIDENCE_VERY_HIGH
from .contracts import CompletionResponse
from .models import AgentPersona, ConfidenceLevel


class ConfidenceScorer(Protocol):
    """Maps a completion response to a confidence value in [0, 1]."""

    def score(
        self, response: CompletionResponse, persona: Optional[AgentPersona]
    ) -> float:
        ...


class HeuristicConfidenceScorer:
    """Scores on response length, token budget use and finish reason."""

    base: float = 0.5

    def score(
        self, response: CompletionResponse, persona: Optional[AgentPersona]
    ) -> float:
        confidence = self.base
        content = response.content or ""

        if len(content) > 100:
            confidence += 0.2
        if len(content) > 500:
            confidence += 0.1

        max_tokens = persona.max_tokens if persona else 0
        if max_tokens > 0:
            usage_ratio = response.usage.total_tokens / max_tokens
            if usage_ratio > 0.8:
                confidence += 0.1
            elif usage_ratio < 0.3:
                confidence -= 0.1

        finish_reason = response.finish_reason
        if finish_reason == "stop":
            confidence += 0.1
        elif finish_reason == "length":
            confidence -= 0.2

        return max(0.0, min(1.0, confidence))


def confidence_level(score: float) -> ConfidenceLevel:
    if score >= CONFIDENCE_VERY_HIGH:
        return ConfidenceLevel.VERY_HIGH
    if score >= CONFIDENCE_HIGH:
        return ConfidenceLevel.HIGH
    if score >= CONFIDENCE_MEDIUM:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW
