"""Pydantic models describing registry reports."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from ..models import Agent, AgentStatus


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        if min(major, minor, patch) < 0:
            raise ValueError("Semantic version components must be non-negative")
        return cls(major=major, minor=minor, patch=patch)

    def bump(self, part: str = "patch") -> "SemanticVersion":
        if part == "major":
            return SemanticVersion(major=self.major + 1, minor=0, patch=0)
        if part == "minor":
            return SemanticVersion(major=self.major, minor=self.minor + 1, patch=0)
        return SemanticVersion(major=self.major, minor=self.minor, patch=self.patch + 1)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


class AgentStatusReport(BaseModel):
    """Composite health view of one agent."""

    agent: Optional[Agent] = None
    status: AgentStatus = AgentStatus.IDLE
    is_healthy: bool = False
    last_activity: Optional[datetime] = None
    current_executions: int = 0
    queue_length: int = 0
    error_rate: float = 0.0


class AgentStats(BaseModel):
    total_agents: int = 0
    active_agents: int = 0
    agents_by_type: Dict[str, int] = Field(default_factory=dict)
    total_personas: int = 0
    total_capabilities: int = 0
