"""Turn routing with a fast path.

Once a specialist is teaching, later turns go straight back to it without
a model call unless the learner asks to switch subject or shows distress.
Everything else goes through the coordinator agent, whose free-text
choice is normalised to an ``AgentName``; anything unresolvable lands on
the fallback agent instead of failing the turn.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..core.config import Settings, get_settings
from ..core.errors import SchemaViolation
from ..core.retry import call_with_retry
from ..db.store import TutorStore
from .base.llm import LLMFactory, get_llm_for_agent
from .base.state import ROLE_BY_AGENT, AgentName, AgentRole, RoutingChoice
from .base.utils import build_messages, content_to_text, parse_model_reply
from .prompts import ROUTER_PROMPT_TEMPLATE, format_catalogue
from .registry import AgentRegistry, agent_for_subject, normalize_agent_name

logger = logging.getLogger(__name__)

AUTO_START_MARKER = "[AUTO_START]"

_SUBJECT_SWITCH = re.compile(
    r"\b(switch|change)\s+(to|the\s+subject|subjects?|topics?)\b"
    r"|\bdifferent\s+(subject|topic)\b"
    r"|\b(can|could)\s+we\s+(do|talk\s+about|learn|study)\b"
    r"|\blet'?s\s+(do|talk\s+about|learn|study)\b"
    r"|\bi\s+want\s+to\s+(learn|study|do)\b"
    r"|\binstead\b",
    re.IGNORECASE,
)

_DISTRESS = re.compile(
    r"\bi\s+give\s+up\b"
    r"|\bi\s+can'?t\s+do\s+(this|it)\b"
    r"|\bi'?m\s+(so\s+)?(stupid|dumb|useless)\b"
    r"|\bi\s+hate\s+(this|math|maths|school)\b"
    r"|\b(frustrated|frustrating|hopeless)\b"
    r"|\btoo\s+hard\b"
    r"|\bi\s+want\s+to\s+cry\b"
    r"|\b(stressed|anxious|upset)\b",
    re.IGNORECASE,
)

_ROUTE_TO = re.compile(r'"?route_to"?\s*[:=]\s*"?([A-Za-z_\- ]+)"?', re.IGNORECASE)
_REASON = re.compile(r'"?reason"?\s*[:=]\s*"([^"]*)"', re.IGNORECASE)
_HANDOFF = re.compile(r'"?handoff_message"?\s*[:=]\s*"([^"]*)"', re.IGNORECASE)
_RESPONSE = re.compile(r'"?response"?\s*[:=]\s*"((?:[^"\\]|\\.)*)"', re.IGNORECASE)


class TurnInput(BaseModel):
    """What the router needs to know about the current turn."""

    session_id: str
    learner_id: str
    lesson_id: str
    message: str = ""
    modality: str = "text"
    has_media: bool = False


class RouteDecision(BaseModel):
    agent: AgentName
    reason: str
    fast_path: bool = False
    previous_agent: Optional[AgentName] = None
    handoff_message: Optional[str] = None
    direct_response: Optional[str] = None

    @property
    def is_handoff(self) -> bool:
        return self.previous_agent is not None and self.previous_agent != self.agent


def is_subject_switch(text: str) -> bool:
    return bool(text and _SUBJECT_SWITCH.search(text))


def is_distress(text: str) -> bool:
    return bool(text and _DISTRESS.search(text))


def parse_routing_reply(content: str) -> RoutingChoice:
    """Parse the coordinator's JSON, falling back to regex field extraction."""
    try:
        return parse_model_reply(content, RoutingChoice)
    except SchemaViolation:
        match = _ROUTE_TO.search(content or "")
        if not match:
            raise
        reason = _REASON.search(content)
        handoff = _HANDOFF.search(content)
        response = _RESPONSE.search(content)
        return RoutingChoice(
            route_to=match.group(1).strip(),
            reason=reason.group(1) if reason else "",
            handoff_message=handoff.group(1) if handoff else None,
            response=response.group(1).replace('\\"', '"') if response else None,
        )


class Router:
    """Chooses the agent for each turn and persists the session's routing state."""

    def __init__(
        self,
        store: TutorStore,
        registry: AgentRegistry,
        llm_factory: LLMFactory = get_llm_for_agent,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry
        self.llm_factory = llm_factory
        self.settings = settings or get_settings()

    @property
    def fallback_agent(self) -> AgentName:
        return normalize_agent_name(self.settings.ROUTER_FALLBACK_AGENT) or AgentName.COORDINATOR

    # =========================================================================
    # Decision
    # =========================================================================

    async def route(
        self,
        turn: TurnInput,
        history: List[Dict[str, Any]],
        lesson: Optional[Dict[str, Any]] = None,
        routing_state: Optional[Dict[str, Any]] = None,
        lesson_complete: bool = False,
    ) -> RouteDecision:
        """
        Pick the agent for this turn.

        Args:
            turn: Current turn input
            history: Recent interactions of the session (oldest first)
            lesson: Lesson row (subject used for audio-only turns)
            routing_state: Session routing state if already loaded
            lesson_complete: Mastery engine's current decision

        Returns:
            RouteDecision (persisted before returning)
        """
        if routing_state is None:
            routing_state = await self.store.get_routing_state(turn.session_id)

        previous = normalize_agent_name(routing_state["active_agent"]) if routing_state else None
        handoff_count = routing_state.get("handoff_count", 0) if routing_state else 0
        text = (turn.message or "").strip()

        decision = self._decide_without_model(turn, text, previous, lesson, lesson_complete)
        if decision is None:
            decision = await self._ask_coordinator(turn, text, history, lesson, previous)
            decision = self._apply_handoff_limit(decision, previous, handoff_count)

        await self._persist(turn.session_id, decision, previous, handoff_count)
        logger.info(
            f"[router] session={turn.session_id} -> {decision.agent.value} "
            f"(fast_path={decision.fast_path}, reason={decision.reason})"
        )
        return decision

    def _decide_without_model(
        self,
        turn: TurnInput,
        text: str,
        previous: Optional[AgentName],
        lesson: Optional[Dict[str, Any]],
        lesson_complete: bool,
    ) -> Optional[RouteDecision]:
        if text.startswith(AUTO_START_MARKER):
            return RouteDecision(agent=AgentName.COORDINATOR, reason="session start", previous_agent=previous)

        if lesson_complete:
            return RouteDecision(agent=AgentName.ASSESSOR, reason="mastery criteria met", previous_agent=previous)

        previous_is_specialist = previous is not None and ROLE_BY_AGENT[previous] == AgentRole.SPECIALIST
        if previous_is_specialist and not is_subject_switch(text) and not is_distress(text):
            return RouteDecision(
                agent=previous,
                reason="continuing with active specialist",
                fast_path=True,
                previous_agent=previous,
            )

        if not text and turn.has_media:
            subject_agent = agent_for_subject((lesson or {}).get("subject"))
            if subject_agent is not None:
                return RouteDecision(agent=subject_agent, reason="audio turn routed by lesson subject", previous_agent=previous)

        return None

    async def _ask_coordinator(
        self,
        turn: TurnInput,
        text: str,
        history: List[Dict[str, Any]],
        lesson: Optional[Dict[str, Any]],
        previous: Optional[AgentName],
    ) -> RouteDecision:
        lesson = lesson or {}
        try:
            spec = await self.registry.get(AgentName.COORDINATOR)
            prompt = ROUTER_PROMPT_TEMPLATE.format(
                lesson_title=lesson.get("title", "Unknown"),
                subject=lesson.get("subject", "general"),
                grade_level=lesson.get("grade_level", "?"),
                active_agent=previous.value if previous else "none",
                catalogue=format_catalogue(await self.registry.routable()),
                message=text or "(the learner sent audio or an image)",
            )
            llm = self.llm_factory(spec, streaming=False)
            message = await call_with_retry(
                lambda: llm.ainvoke(build_messages(spec.system_prompt, prompt)),
                label="router",
            )
            choice = parse_routing_reply(content_to_text(message.content))
        except Exception as e:
            logger.error(f"[router] coordinator routing failed, using fallback: {e}")
            return RouteDecision(agent=self.fallback_agent, reason=f"routing error: {e}", previous_agent=previous)

        agent = normalize_agent_name(choice.route_to)
        if agent is None or agent == AgentName.VALIDATOR:
            logger.warning(f"[router] unresolvable route_to '{choice.route_to}', using fallback")
            return RouteDecision(
                agent=self.fallback_agent,
                reason=f"unresolved choice '{choice.route_to}'",
                previous_agent=previous,
            )

        return RouteDecision(
            agent=agent,
            reason=choice.reason or "coordinator decision",
            previous_agent=previous,
            handoff_message=choice.handoff_message if agent != previous else None,
            direct_response=choice.response if agent == AgentName.COORDINATOR else None,
        )

    def _apply_handoff_limit(
        self,
        decision: RouteDecision,
        previous: Optional[AgentName],
        handoff_count: int,
    ) -> RouteDecision:
        """Keep the current specialist once the handoff chain is exhausted."""
        if (
            previous is not None
            and ROLE_BY_AGENT[previous] == AgentRole.SPECIALIST
            and decision.agent != previous
            and ROLE_BY_AGENT[decision.agent] == AgentRole.SPECIALIST
            and handoff_count >= self.settings.MAX_HANDOFF_CHAIN
        ):
            logger.info(f"[router] handoff limit reached, staying with {previous.value}")
            return RouteDecision(agent=previous, reason="handoff limit reached", previous_agent=previous)
        return decision

    async def _persist(
        self,
        session_id: str,
        decision: RouteDecision,
        previous: Optional[AgentName],
        handoff_count: int,
    ) -> None:
        if decision.fast_path:
            # A fast-path turn breaks any handoff chain
            new_count = 0
        elif previous is not None and decision.agent != previous and ROLE_BY_AGENT[decision.agent] == AgentRole.SPECIALIST:
            new_count = handoff_count + 1
        else:
            new_count = handoff_count

        try:
            await self.store.save_routing_state(session_id, decision.agent.value, decision.reason, new_count)
        except Exception as e:
            logger.error(f"[router] failed to save routing state for {session_id}: {e}")
