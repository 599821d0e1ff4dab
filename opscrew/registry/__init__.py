"""Agent registry and its report models."""

from __future__ import annotations

from .manager import (
    AgentActivityProvider,
    AgentRegistry,
    validate_constraint,
    validate_persona,
)
from .models import AgentStats, AgentStatusReport, SemanticVersion

__all__ = [
    "AgentActivityProvider",
    "AgentRegistry",
    "AgentStats",
    "AgentStatusReport",
    "SemanticVersion",
    "validate_constraint",
    "validate_persona",
]
