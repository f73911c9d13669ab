"""Base infrastructure for all agents."""

from .llm import get_llm, get_llm_for_agent
from .state import (
    AgentName,
    AgentRole,
    AgentSpec,
    EvidenceClassification,
    RoutingChoice,
    TeachingResponse,
    ValidationVerdict,
)

__all__ = [
    "get_llm",
    "get_llm_for_agent",
    "AgentName",
    "AgentRole",
    "AgentSpec",
    "EvidenceClassification",
    "RoutingChoice",
    "TeachingResponse",
    "ValidationVerdict",
]
