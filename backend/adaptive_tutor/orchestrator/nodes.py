"""Nodes of the turn graph.

Each node takes the current ``TurnState`` and returns the keys it changes.
The nodes hold no per-turn state themselves; everything a turn needs is
in the state dict, so one ``TurnNodes`` instance serves every session.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, TypeVar

from langchain_core.runnables import RunnableConfig

from ..adaptation.directives import build_adaptive_directives, format_directives_for_prompt
from ..agents.base.state import AgentName, TeachingResponse
from ..agents.generation import GenerationClient, GenerationResult
from ..agents.prompts import (
    MEDIA_ONLY_PROMPT,
    SESSION_START_PROMPT,
    append_required_fixes,
    build_turn_context,
)
from ..agents.router import AUTO_START_MARKER, Router, TurnInput
from ..agents.validator import (
    ResponseValidator,
    ValidationOutcome,
    ValidationState,
    ValidationStep,
)
from ..db.store import TutorStore
from ..mastery.engine import MasteryDecision, MasteryEngine, not_mastered
from ..mastery.rules import default_rules
from ..mastery.tracker import MasteryTracker
from ..memory.profile import LearnerProfileView, ProfileManager
from ..memory.session import SessionMemory
from .state import TurnResponse, TurnState

logger = logging.getLogger(__name__)

T = TypeVar("T")


def unknown_lesson(lesson_id: str) -> Dict[str, Any]:
    return {"id": lesson_id, "title": lesson_id, "subject": "general", "grade_level": 0}


def mastery_summary(decision: MasteryDecision) -> Dict[str, Any]:
    return {
        "has_mastered": decision.has_mastered,
        "criteria_met": decision.criteria_met.model_dump(),
        "failed_criteria": decision.criteria_met.failed(),
        "evidence_summary": decision.evidence_summary,
        "rules_source": decision.rules_source,
    }


async def _read_or_default(read: Awaitable[T], default: T, label: str) -> T:
    try:
        return await read
    except Exception as e:
        logger.error(f"Error loading {label}: {e}")
        return default


class TurnNodes:
    """Bound node functions for the turn graph."""

    def __init__(
        self,
        store: TutorStore,
        router: Router,
        generator: GenerationClient,
        validator: ResponseValidator,
        mastery_engine: MasteryEngine,
        tracker: MasteryTracker,
        profiles: ProfileManager,
        session_memory: SessionMemory,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.router = router
        self.generator = generator
        self.validator = validator
        self.mastery_engine = mastery_engine
        self.tracker = tracker
        self.profiles = profiles
        self.session_memory = session_memory
        self._clock = clock

    # =========================================================================
    # CONTEXT
    # =========================================================================

    async def load_context(self, state: TurnState) -> Dict[str, Any]:
        """Fan out the independent reads, then decide mastery."""
        request = state["request"]
        logger.info(f"Turn for session {request.session_id} (learner {request.learner_id})")

        profile, history, lesson, routing_state, snapshot, session, correction = await asyncio.gather(
            _read_or_default(
                self.profiles.get_profile(request.learner_id),
                LearnerProfileView(learner_id=request.learner_id),
                "profile",
            ),
            _read_or_default(self.session_memory.recent(request.session_id), [], "session history"),
            _read_or_default(self.store.get_lesson(request.lesson_id), None, "lesson"),
            _read_or_default(self.store.get_routing_state(request.session_id), None, "routing state"),
            self.tracker.snapshot(request.learner_id, request.lesson_id),
            _read_or_default(self.store.get_session(request.session_id), None, "session"),
            _read_or_default(self.store.get_pending_correction(request.session_id), None, "pending correction"),
        )

        lesson = lesson or unknown_lesson(request.lesson_id)
        if session is None:
            session = await _read_or_default(
                self.store.start_session(request.session_id, request.learner_id, request.lesson_id),
                {"id": request.session_id, "started_at": self._clock().isoformat()},
                "new session",
            )

        mastery = await self.mastery_engine.determine_mastery(
            request.learner_id,
            request.lesson_id,
            lesson.get("subject", "general"),
            int(lesson.get("grade_level") or 0),
            session_start=session.get("started_at") or self._clock(),
            now=self._clock(),
        )

        directives = build_adaptive_directives(
            profile.learning_style,
            snapshot.score,
            struggles=profile.struggles,
            strengths=profile.strengths,
            struggle_ratio=snapshot.struggle_ratio,
        )

        return {
            "lesson": lesson,
            "session": session,
            "profile": profile,
            "history": history,
            "routing_state": routing_state,
            "snapshot": snapshot,
            "mastery": mastery,
            "directives": directives,
            "pending_correction": correction,
            "regenerations": 0,
            "validation_history": [],
        }

    # =========================================================================
    # ROUTING
    # =========================================================================

    async def route(self, state: TurnState) -> Dict[str, Any]:
        request = state["request"]
        lesson = state["lesson"]
        turn = TurnInput(
            session_id=request.session_id,
            learner_id=request.learner_id,
            lesson_id=request.lesson_id,
            message=request.message,
            modality=request.modality,
            has_media=request.media is not None,
        )
        decision = await self.router.route(
            turn,
            state["history"],
            lesson=lesson,
            routing_state=state["routing_state"],
            lesson_complete=state["mastery"].has_mastered,
        )

        message = (request.message or "").strip()
        if message.startswith(AUTO_START_MARKER):
            prompt = SESSION_START_PROMPT
        elif not message and request.media is not None:
            prompt = MEDIA_ONLY_PROMPT.format(modality=request.modality)
        else:
            prompt = message

        dynamic_context = build_turn_context(
            state["profile"].model_dump(),
            format_directives_for_prompt(state["directives"]),
            state["history"],
            lesson,
            handoff_note=(decision.handoff_message or decision.reason) if decision.is_handoff else None,
            correction=state.get("pending_correction"),
        )
        return {"route": decision, "prompt": prompt, "dynamic_context": dynamic_context}

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def direct(self, state: TurnState) -> Dict[str, Any]:
        """The coordinator already answered while routing."""
        text = state["route"].direct_response or ""
        draft = GenerationResult(
            agent=AgentName.COORDINATOR,
            response=TeachingResponse(audio_text=text, display_text=text),
            raw_text=text,
        )
        return {
            "draft": draft,
            "step": ValidationStep(state=ValidationState.APPROVED),
            "validation_history": [ValidationState.DRAFTED, ValidationState.APPROVED],
        }

    async def generate(self, state: TurnState, config: RunnableConfig) -> Dict[str, Any]:
        """First draft; streams when the caller asked for the first sentence."""
        request = state["request"]
        on_first_sentence = (config or {}).get("configurable", {}).get("on_first_sentence")
        media = request.media.model_dump() if request.media else None
        kwargs = dict(
            agent=state["route"].agent,
            prompt=state["prompt"],
            lesson_id=request.lesson_id,
            dynamic_context=state["dynamic_context"],
            media=media,
            lesson=state["lesson"],
        )
        if on_first_sentence is not None:
            draft = await self.generator.stream(on_first_sentence=on_first_sentence, **kwargs)
        else:
            draft = await self.generator.generate(**kwargs)
        return {
            "draft": draft,
            "validation_history": state["validation_history"] + [ValidationState.DRAFTED],
        }

    async def regenerate(self, state: TurnState) -> Dict[str, Any]:
        """Redraft with the validator's required fixes appended to the original prompt."""
        request = state["request"]
        verdict = state["step"].verdict
        fixes = verdict.required_fixes if verdict else []
        regenerations = state["regenerations"] + 1
        logger.info(
            f"Regenerating {state['draft'].agent.value} draft for session {request.session_id} "
            f"(attempt {regenerations}, {len(fixes)} fixes)"
        )

        draft = await self.generator.generate(
            agent=state["draft"].agent,
            prompt=append_required_fixes(state["prompt"], fixes),
            lesson_id=request.lesson_id,
            dynamic_context=state["dynamic_context"],
            media=request.media.model_dump() if request.media else None,
            lesson=state["lesson"],
        )
        draft = draft.model_copy(update={"first_sentence": state["draft"].first_sentence})
        return {
            "draft": draft,
            "regenerations": regenerations,
            "validation_history": state["validation_history"] + [ValidationState.DRAFTED],
        }

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def validate(self, state: TurnState) -> Dict[str, Any]:
        request = state["request"]
        step = await self.validator.check(
            state["draft"],
            state["lesson"],
            request.message,
            regenerations_used=state["regenerations"],
        )
        history = state["validation_history"] + [ValidationState.VALIDATING, step.state]
        return {"step": step, "validation_history": history}

    # =========================================================================
    # FINALIZE
    # =========================================================================

    async def finalize(self, state: TurnState) -> Dict[str, Any]:
        """Build the delivered response; the completion flag comes from mastery only."""
        draft = state["draft"]
        step = state["step"]
        mastery = state.get("mastery") or not_mastered(default_rules(), "mastery unavailable")
        disclaimer = self.validator.disclaimer_for(step.state)

        outcome = ValidationOutcome(
            state=step.state,
            draft=draft,
            regenerations_used=state["regenerations"],
            verdict=step.verdict,
            disclaimer=disclaimer,
            history=state["validation_history"],
        )

        response = draft.response
        display_text = response.display_text
        if disclaimer:
            display_text = f"{display_text}\n\n{disclaimer}"

        route = state["route"]
        turn_response = TurnResponse(
            audio_text=response.audio_text,
            display_text=display_text,
            svg=response.svg,
            lesson_complete=mastery.has_mastered,
            agent=draft.agent,
            handoff_message=route.handoff_message if route.is_handoff else None,
            validation_state=step.state,
            disclaimer=disclaimer,
            teaching_phase=response.teaching_phase,
            first_sentence=draft.first_sentence,
            mastery=mastery_summary(mastery),
        )
        if draft.model_claimed_complete != mastery.has_mastered:
            logger.info(
                f"Model completion claim ({draft.model_claimed_complete}) overridden by "
                f"mastery engine ({mastery.has_mastered})"
            )
        return {"outcome": outcome, "response": turn_response}


# =============================================================================
# CONDITIONAL EDGES
# =============================================================================

def route_after_routing(state: TurnState) -> str:
    return "direct" if state["route"].direct_response else "generate"


def route_after_validation(state: TurnState) -> str:
    if state["step"].state == ValidationState.REJECTED_PENDING_RETRY:
        return "regenerate"
    return "finalize"
