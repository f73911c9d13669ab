"""Independent validation of specialist drafts.

States::

    DRAFTED -> VALIDATING -> APPROVED
                          -> REJECTED_PENDING_RETRY -> (regenerate) -> DRAFTED
                          -> REJECTED_FINAL
                          -> TIMED_OUT

Only specialists are validated. A verdict below the approval threshold
sends the draft back with the validator's required fixes until the
regeneration budget is spent; after that the last draft goes out with a
disclaimer. Timeouts and validator errors fail open: the learner always
gets a response.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..core.errors import SchemaViolation, ValidationRejected
from ..db.store import TutorStore
from .base.llm import LLMFactory, get_llm_for_agent
from .base.state import AgentName, AgentSpec, ValidationVerdict
from .base.utils import build_messages, content_to_text, parse_model_reply, truncate_text
from .generation import GenerationResult
from .prompts import DISCLAIMER_TEXT, VALIDATOR_PROMPT_TEMPLATE
from .registry import AgentRegistry

logger = logging.getLogger(__name__)


class ValidationState(str, Enum):
    DRAFTED = "drafted"
    VALIDATING = "validating"
    APPROVED = "approved"
    REJECTED_PENDING_RETRY = "rejected_pending_retry"
    REJECTED_FINAL = "rejected_final"
    TIMED_OUT = "timed_out"


class ValidationStep(BaseModel):
    """Result of validating one draft."""

    state: ValidationState
    verdict: Optional[ValidationVerdict] = None
    error: Optional[str] = None


class ValidationOutcome(BaseModel):
    """Where a turn's validation loop ended up."""

    state: ValidationState
    draft: GenerationResult
    regenerations_used: int = 0
    verdict: Optional[ValidationVerdict] = None
    disclaimer: Optional[str] = None
    history: List[ValidationState] = Field(default_factory=list)

    @property
    def needs_audit(self) -> bool:
        return final_action_for(self.state, self.regenerations_used) is not None


def transition(
    verdict: ValidationVerdict,
    regenerations_used: int,
    threshold: float,
    max_regenerations: int,
) -> ValidationState:
    """Next state after a verdict has arrived."""
    if verdict.approved and verdict.confidence_score >= threshold:
        return ValidationState.APPROVED
    if regenerations_used < max_regenerations:
        return ValidationState.REJECTED_PENDING_RETRY
    return ValidationState.REJECTED_FINAL


def final_action_for(state: ValidationState, regenerations_used: int) -> Optional[str]:
    """Audit label for an outcome, or None when nothing needs recording."""
    if state == ValidationState.REJECTED_FINAL:
        return "delivered_with_disclaimer"
    if state == ValidationState.TIMED_OUT:
        return "timed_out"
    if state == ValidationState.APPROVED and regenerations_used > 0:
        return "approved_after_retry"
    return None


class ResponseValidator:
    """Runs the validator agent against drafts under a hard timeout."""

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
    def threshold(self) -> float:
        return self.settings.VALIDATOR_APPROVAL_THRESHOLD

    @property
    def max_regenerations(self) -> int:
        return self.settings.VALIDATOR_MAX_REGENERATIONS

    @staticmethod
    def requires_validation(spec: AgentSpec) -> bool:
        return spec.is_specialist

    async def _review(
        self, draft: GenerationResult, lesson: Dict[str, Any], learner_text: str
    ) -> Optional[ValidationVerdict]:
        """The validator agent's verdict, or None when the drafting agent is not validated."""
        drafter = await self.registry.get(draft.agent)
        if not self.requires_validation(drafter):
            return None

        spec = await self.registry.get(AgentName.VALIDATOR)
        response = draft.response
        prompt = VALIDATOR_PROMPT_TEMPLATE.format(
            agent=draft.agent.value,
            grade_level=lesson.get("grade_level", "?"),
            subject=lesson.get("subject", "general"),
            lesson_title=lesson.get("title", "Unknown"),
            learning_objective=lesson.get("learning_objective") or "(not specified)",
            learner_text=learner_text or "(no message)",
            audio_text=response.audio_text,
            display_text=response.display_text,
            svg=truncate_text(response.svg, 4000) if response.svg else "(none)",
        )
        llm = self.llm_factory(spec, streaming=False)
        message = await llm.ainvoke(build_messages(spec.system_prompt, prompt))
        return parse_model_reply(content_to_text(message.content), ValidationVerdict)

    async def check(
        self,
        draft: GenerationResult,
        lesson: Dict[str, Any],
        learner_text: str,
        regenerations_used: int = 0,
    ) -> ValidationStep:
        """
        Validate one draft (DRAFTED -> VALIDATING -> next state).

        Never raises and never waits longer than the configured timeout.

        Args:
            draft: Generated response to check
            lesson: Lesson row (grade, subject, objective)
            learner_text: What the learner said this turn
            regenerations_used: Regenerations already spent this turn

        Returns:
            ValidationStep with the next state and the verdict (if any)
        """
        timeout = self.settings.VALIDATOR_TIMEOUT_SECONDS
        try:
            verdict = await asyncio.wait_for(self._review(draft, lesson, learner_text), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[validator] timed out after {timeout}s on {draft.agent.value} draft; delivering unverified")
            return ValidationStep(state=ValidationState.TIMED_OUT, error="timeout")
        except SchemaViolation as e:
            logger.error(f"[validator] unparseable verdict, approving: {e}")
            return ValidationStep(state=ValidationState.APPROVED, error=str(e))
        except Exception as e:
            logger.error(f"[validator] validation failed, approving: {e}")
            return ValidationStep(state=ValidationState.APPROVED, error=str(e))

        if verdict is None:
            return ValidationStep(state=ValidationState.APPROVED)
        state = transition(verdict, regenerations_used, self.threshold, self.max_regenerations)
        if state != ValidationState.APPROVED:
            rejection = ValidationRejected(verdict.confidence_score, verdict.required_fixes, verdict.issues)
            logger.info(f"[validator] {draft.agent.value}: {rejection} -> {state.value}")
        return ValidationStep(state=state, verdict=verdict)

    @staticmethod
    def disclaimer_for(state: ValidationState) -> Optional[str]:
        return DISCLAIMER_TEXT if state == ValidationState.REJECTED_FINAL else None

    async def record_outcome(
        self,
        state: ValidationState,
        draft: GenerationResult,
        regenerations_used: int,
        verdict: Optional[ValidationVerdict],
        session_id: str,
        learner_id: Optional[str] = None,
        lesson_id: Optional[str] = None,
    ) -> bool:
        """Write an audit row for rejected, retried or timed-out validations."""
        final_action = final_action_for(state, regenerations_used)
        if final_action is None:
            return False

        await self.store.add_validation_failure({
            "session_id": session_id,
            "learner_id": learner_id,
            "lesson_id": lesson_id,
            "agent": draft.agent.value,
            "confidence_score": verdict.confidence_score if verdict else None,
            "issues": verdict.issues if verdict else [],
            "required_fixes": verdict.required_fixes if verdict else [],
            "original_response": draft.response.display_text,
            "retry_count": regenerations_used,
            "final_action": final_action,
        })
        logger.info(f"[validator] recorded {final_action} for session {session_id}")
        return True

    async def record_correction(
        self,
        state: ValidationState,
        draft: GenerationResult,
        verdict: Optional[ValidationVerdict],
        session_id: str,
    ) -> bool:
        """Queue a self-correction for the session's next turn when a rejected draft went out."""
        if state != ValidationState.REJECTED_FINAL:
            return False

        response = draft.response
        correction = await self.store.add_pending_correction({
            "session_id": session_id,
            "agent": draft.agent.value,
            "original_response": {
                "audio_text": response.audio_text,
                "display_text": response.display_text,
                "svg": response.svg,
            },
            "issues": verdict.issues if verdict else [],
            "required_fixes": verdict.required_fixes if verdict else [],
        })
        logger.info(f"[validator] queued correction {correction['id']} for session {session_id}")
        return True

    async def get_validation_stats(self) -> Dict[str, Any]:
        """Counts of recorded validation outcomes by final action."""
        try:
            counts = await self.store.count_validation_failures()
            return {"success": True, "by_action": counts, "total": sum(counts.values())}
        except Exception as e:
            logger.error(f"Error reading validation stats: {e}")
            return {"success": False, "error": str(e), "by_action": {}, "total": 0}
