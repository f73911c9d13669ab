"""
Tests for the validator state machine and the regeneration loop.
"""

import asyncio

import pytest

from adaptive_tutor.agents.base.state import AgentName, TeachingResponse, ValidationVerdict
from adaptive_tutor.agents.generation import GenerationResult
from adaptive_tutor.agents.prompts import DISCLAIMER_TEXT
from adaptive_tutor.agents.registry import AgentRegistry
from adaptive_tutor.agents.validator import (
    ResponseValidator,
    ValidationState,
    final_action_for,
    transition,
)
from adaptive_tutor.orchestrator.service import build_orchestrator
from adaptive_tutor.orchestrator.state import TurnRequest

from scripted_llm import (
    FEEDBACK,
    LEARNER_ID,
    LESSON_ID,
    ROUTING,
    SESSION_ID,
    routing_reply,
    teaching_reply,
    verdict_reply,
)

DRAFT_1 = teaching_reply("One half plus one quarter is two sixths.")
DRAFT_2 = teaching_reply("One half plus one quarter is three quarters.")
DRAFT_3 = teaching_reply("Two quarters plus one quarter make three quarters.")


def draft(agent: AgentName = AgentName.MATH_SPECIALIST, text: str = "A draft.") -> GenerationResult:
    return GenerationResult(agent=agent, response=TeachingResponse(audio_text=text, display_text=text))


def turn(message: str = "What is 1/2 + 1/4?") -> TurnRequest:
    return TurnRequest(learner_id=LEARNER_ID, session_id=SESSION_ID, lesson_id=LESSON_ID, message=message)


def route_to_math(llm_factory) -> None:
    llm_factory.script(AgentName.COORDINATOR, when=[(ROUTING, routing_reply("math_specialist"))])


class SlowRegistry(AgentRegistry):
    async def get(self, name):
        await asyncio.sleep(1.0)
        return await super().get(name)


class TestTransitions:
    def test_approved_needs_threshold(self):
        verdict = ValidationVerdict(approved=True, confidence_score=0.79)
        assert transition(verdict, 0, 0.8, 2) == ValidationState.REJECTED_PENDING_RETRY
        verdict = ValidationVerdict(approved=True, confidence_score=0.8)
        assert transition(verdict, 0, 0.8, 2) == ValidationState.APPROVED

    def test_high_confidence_rejection_is_not_approval(self):
        verdict = ValidationVerdict(approved=False, confidence_score=0.95)
        assert transition(verdict, 0, 0.8, 2) == ValidationState.REJECTED_PENDING_RETRY

    def test_budget_exhausted(self):
        verdict = ValidationVerdict(approved=False, confidence_score=0.4)
        assert transition(verdict, 1, 0.8, 2) == ValidationState.REJECTED_PENDING_RETRY
        assert transition(verdict, 2, 0.8, 2) == ValidationState.REJECTED_FINAL

    def test_percent_scale_confidence_is_normalised(self):
        assert ValidationVerdict.model_validate({"confidenceScore": 85}).confidence_score == pytest.approx(0.85)

    def test_audit_labels(self):
        assert final_action_for(ValidationState.APPROVED, 0) is None
        assert final_action_for(ValidationState.APPROVED, 1) == "approved_after_retry"
        assert final_action_for(ValidationState.REJECTED_FINAL, 2) == "delivered_with_disclaimer"
        assert final_action_for(ValidationState.TIMED_OUT, 0) == "timed_out"


@pytest.mark.asyncio
class TestResponseValidator:
    @pytest.fixture
    def validator(self, store, llm_factory, test_settings) -> ResponseValidator:
        return ResponseValidator(store, AgentRegistry(store, test_settings), llm_factory, test_settings)

    async def test_non_specialists_skip_validation(self, validator, llm_factory, lesson):
        step = await validator.check(draft(AgentName.MOTIVATOR), lesson, "I give up")

        assert step.state == ValidationState.APPROVED
        assert llm_factory.call_count(AgentName.VALIDATOR) == 0

    async def test_rejection_carries_fixes(self, validator, llm_factory, lesson):
        llm_factory.script(AgentName.VALIDATOR, responses=[verdict_reply(False, 0.6, ["Fix the sum"])])

        step = await validator.check(draft(), lesson, "What is 1/2 + 1/4?")

        assert step.state == ValidationState.REJECTED_PENDING_RETRY
        assert step.verdict.required_fixes == ["Fix the sum"]
        prompt = llm_factory.model(AgentName.VALIDATOR).prompts[0]
        assert "grade 5 math lesson" in prompt
        assert "A draft." in prompt

    async def test_errors_fail_open(self, validator, llm_factory, lesson):
        llm_factory.script(AgentName.VALIDATOR, error=RuntimeError("validator crashed"))

        step = await validator.check(draft(), lesson, "hi")

        assert step.state == ValidationState.APPROVED
        assert "validator crashed" in step.error

    async def test_unparseable_verdict_fails_open(self, validator, llm_factory, lesson):
        llm_factory.script(AgentName.VALIDATOR, responses=["looks fine to me"])

        step = await validator.check(draft(), lesson, "hi")

        assert step.state == ValidationState.APPROVED

    async def test_timeout(self, store, llm_factory, test_settings, lesson):
        settings = test_settings.model_copy(update={"VALIDATOR_TIMEOUT_SECONDS": 0.05})
        validator = ResponseValidator(store, AgentRegistry(store, settings), llm_factory, settings)
        llm_factory.script(AgentName.VALIDATOR, responses=[verdict_reply(True, 0.99)], delay=1.0)

        step = await validator.check(draft(), lesson, "hi")

        assert step.state == ValidationState.TIMED_OUT
        assert step.verdict is None

    async def test_slow_registry_counts_against_the_timeout(self, store, llm_factory, test_settings, lesson):
        settings = test_settings.model_copy(update={"VALIDATOR_TIMEOUT_SECONDS": 0.05})
        validator = ResponseValidator(store, SlowRegistry(store, settings), llm_factory, settings)
        loop = asyncio.get_running_loop()

        started = loop.time()
        step = await validator.check(draft(), lesson, "hi")

        assert step.state == ValidationState.TIMED_OUT
        assert loop.time() - started < 0.5
        assert llm_factory.call_count(AgentName.VALIDATOR) == 0

    async def test_record_outcome_skips_clean_approvals(self, validator, store):
        recorded = await validator.record_outcome(ValidationState.APPROVED, draft(), 0, None, SESSION_ID)
        assert recorded is False
        assert await store.count_validation_failures() == {}


@pytest.mark.asyncio
class TestRegenerationLoop:
    """The validation loop as the learner experiences it."""

    async def test_rejected_then_approved(self, orchestrator, llm_factory, store, lesson):
        route_to_math(llm_factory)
        math = llm_factory.script(AgentName.MATH_SPECIALIST, responses=[DRAFT_1], when=[(FEEDBACK, DRAFT_2)])
        llm_factory.script(AgentName.VALIDATOR, responses=[
            verdict_reply(False, 0.65, ["Use a common denominator", "Correct the final sum"]),
            verdict_reply(True, 0.85),
        ])

        response = await orchestrator.handle_turn(turn())
        await orchestrator.background.drain()

        assert response.validation_state == ValidationState.APPROVED
        assert response.disclaimer is None
        assert response.audio_text == "One half plus one quarter is three quarters."
        assert response.agent == AgentName.MATH_SPECIALIST

        assert len(math.received) == 2
        assert "Use a common denominator" in math.prompts[1]
        assert "Correct the final sum" in math.prompts[1]
        assert await store.count_validation_failures() == {"approved_after_retry": 1}
        assert await store.get_pending_correction(SESSION_ID) is None

    async def test_timeout_delivers_without_disclaimer(self, store, llm_factory, test_settings, lesson):
        settings = test_settings.model_copy(update={"VALIDATOR_TIMEOUT_SECONDS": 0.05})
        orchestrator = build_orchestrator(store=store, llm_factory=llm_factory, settings=settings)
        route_to_math(llm_factory)
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[DRAFT_2])
        llm_factory.script(AgentName.VALIDATOR, responses=[verdict_reply(True, 0.99)], delay=1.0)

        response = await orchestrator.handle_turn(turn())
        await orchestrator.background.drain()

        assert response.validation_state == ValidationState.TIMED_OUT
        assert response.disclaimer is None
        assert response.audio_text == "One half plus one quarter is three quarters."
        assert await store.count_validation_failures() == {"timed_out": 1}

    async def test_budget_exhausted_adds_disclaimer(self, orchestrator, llm_factory, store, lesson):
        route_to_math(llm_factory)
        math = llm_factory.script(AgentName.MATH_SPECIALIST, responses=[DRAFT_1, DRAFT_2, DRAFT_3])
        validator = llm_factory.script(AgentName.VALIDATOR, responses=[verdict_reply(False, 0.5, ["Be accurate"])])

        response = await orchestrator.handle_turn(turn())
        await orchestrator.background.drain()

        assert response.validation_state == ValidationState.REJECTED_FINAL
        assert response.disclaimer == DISCLAIMER_TEXT
        assert response.display_text.endswith(DISCLAIMER_TEXT)
        assert response.audio_text == "Two quarters plus one quarter make three quarters."
        assert len(math.received) == 3
        assert len(validator.received) == 3
        assert await store.count_validation_failures() == {"delivered_with_disclaimer": 1}

        correction = await store.get_pending_correction(SESSION_ID)
        assert correction["agent"] == "math_specialist"
        assert correction["required_fixes"] == ["Be accurate"]
        assert correction["original_response"]["audio_text"] == "Two quarters plus one quarter make three quarters."

    async def test_coordinator_replies_are_not_validated(self, orchestrator, llm_factory, lesson):
        llm_factory.script(AgentName.COORDINATOR, when=[(ROUTING, routing_reply("self", "greeting", "Hi! Ready to learn?"))])

        response = await orchestrator.handle_turn(turn("hello!"))
        await orchestrator.background.drain()

        assert response.agent == AgentName.COORDINATOR
        assert response.audio_text == "Hi! Ready to learn?"
        assert response.validation_state == ValidationState.APPROVED
        assert llm_factory.call_count(AgentName.VALIDATOR) == 0
