"""Adaptive Tutor - agents package.

- Router: picks the agent for a turn (fast path or coordinator call)
- Generation: model calls with a streamed first sentence
- Validator: reviews specialist drafts before delivery
- Evidence: classifies learner messages into mastery evidence
"""

from .base import get_llm, get_llm_for_agent

__all__ = [
    "get_llm",
    "get_llm_for_agent",
]
