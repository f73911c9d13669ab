"""Scripted chat models standing in for the OpenAI-compatible backend."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from pydantic import Field

from adaptive_tutor.agents.base.state import AgentName, AgentSpec
from adaptive_tutor.agents.base.utils import content_to_text

LESSON_ID = "lesson-fractions"
LEARNER_ID = "learner-1"
SESSION_ID = "session-1"

# Markers that identify which prompt a model is answering
ROUTING = "Decide which teacher"
REVIEW = "Review this draft"
CLASSIFY = "Classify the learner's latest message"
FEEDBACK = "REVIEWER FEEDBACK"


def teaching_reply(audio_text: str, display_text: Optional[str] = None, **extra: Any) -> str:
    """JSON reply in the teaching response format."""
    return json.dumps({"audioText": audio_text, "displayText": display_text or audio_text, **extra})


def verdict_reply(approved: bool, confidence: float, fixes: Optional[List[str]] = None) -> str:
    return json.dumps({
        "approved": approved,
        "confidenceScore": confidence,
        "issues": ["draft has problems"] if fixes else [],
        "requiredFixes": fixes or [],
    })


def routing_reply(route_to: str, reason: str = "best fit", response: Optional[str] = None) -> str:
    return json.dumps({"route_to": route_to, "reason": reason, "handoff_message": None, "response": response})


def evidence_reply(kind: str, quality: float = 80, confidence: float = 0.9) -> str:
    return json.dumps({"evidenceType": kind, "qualityScore": quality, "confidence": confidence, "reasoning": "test"})


DEFAULT_REPLY = teaching_reply("Let us keep going.")


class ScriptedChatModel(BaseChatModel):
    """
    Chat model that answers from a script.

    ``when`` rules (marker, reply) are checked first against the last
    message; otherwise ``responses`` are returned in order and the last one
    repeats. ``error`` is raised instead of answering when set.
    """

    responses: List[str] = Field(default_factory=list)
    when: List[Tuple[str, str]] = Field(default_factory=list)
    delay: float = 0.0
    error: Any = None
    received: List[List[BaseMessage]] = Field(default_factory=list)
    index: int = 0

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def _next_reply(self, messages: List[BaseMessage]) -> str:
        self.received.append(list(messages))
        if self.error is not None:
            raise self.error

        text = content_to_text(messages[-1].content) if messages else ""
        for marker, reply in self.when:
            if marker in text:
                return reply
        if not self.responses:
            return DEFAULT_REPLY
        reply = self.responses[min(self.index, len(self.responses) - 1)]
        self.index += 1
        return reply

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        reply = self._next_reply(messages)
        return ChatResult(generations=[ChatGeneration(message=AIMessage(content=reply))])

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._generate(messages, stop=stop, **kwargs)

    async def _astream(self, messages, stop=None, run_manager=None, **kwargs):
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self._next_reply(messages)
        for start in range(0, len(reply), 4):
            yield ChatGenerationChunk(message=AIMessageChunk(content=reply[start:start + 4]))

    @property
    def prompts(self) -> List[str]:
        """Last message text of every call."""
        return [content_to_text(messages[-1].content) for messages in self.received]


class ScriptedLLMFactory:
    """``LLMFactory`` handing out one scripted model per agent."""

    def __init__(self):
        self.models: Dict[AgentName, ScriptedChatModel] = {}
        self.calls: List[Dict[str, Any]] = []

    def script(self, agent: AgentName, **fields: Any) -> ScriptedChatModel:
        model = ScriptedChatModel(**fields)
        self.models[agent] = model
        return model

    def model(self, agent: AgentName) -> ScriptedChatModel:
        if agent not in self.models:
            self.models[agent] = ScriptedChatModel()
        return self.models[agent]

    def __call__(self, spec: AgentSpec, streaming: bool = False, prompt_cache_key: Optional[str] = None):
        self.calls.append({"agent": spec.name, "streaming": streaming, "prompt_cache_key": prompt_cache_key})
        return self.model(spec.name)

    def call_count(self, agent: AgentName) -> int:
        return sum(1 for call in self.calls if call["agent"] == agent)
