"""
Tests for the evidence-based mastery engine, rule service and tracker.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from adaptive_tutor.core.errors import RuleConfigMissing
from adaptive_tutor.mastery.engine import MasteryEngine, compute_statistics, decide
from adaptive_tutor.mastery.rules import MasteryRules, MasteryRuleService, default_rules
from adaptive_tutor.mastery.tracker import MasteryTracker, score_from_evidence

from scripted_llm import LEARNER_ID, LESSON_ID, SESSION_ID

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
NOW = START + timedelta(minutes=8)

STRICT_RULES = MasteryRules(
    min_correct_answers=3,
    min_explanation_quality=70,
    min_application_attempts=2,
    min_overall_quality=75,
    max_struggle_ratio=0.3,
    min_time_spent_minutes=5,
)


def ev(kind: str, quality: float) -> dict:
    return {"kind": kind, "quality_score": quality}


def scenario_evidence() -> list:
    """4 correct, 0 explanations, 2 applications, average quality 82, struggle ratio 0.1."""
    return (
        [ev("correct_answer", 90)] * 4
        + [ev("application", 85)] * 2
        + [ev("incorrect_answer", 70)] * 3
        + [ev("struggle", 80)]
    )


class TestDecision:
    def test_missing_explanations_fail_only_that_criterion(self):
        stats = compute_statistics(scenario_evidence(), START, NOW)
        assert stats.correct_count == 4
        assert stats.application_count == 2
        assert stats.avg_quality == pytest.approx(82)
        assert stats.struggle_ratio == pytest.approx(0.1)
        assert stats.avg_explanation_quality == 0

        decision = decide(stats, STRICT_RULES)

        assert decision.has_mastered is False
        assert decision.criteria_met.failed() == ["explanation_quality"]
        assert decision.confidence == 1.0

    def test_all_criteria_met(self):
        evidence = scenario_evidence() + [ev("explanation", 82)]
        decision = decide(compute_statistics(evidence, START, NOW), STRICT_RULES)
        assert decision.has_mastered is True
        assert decision.reasoning == "All mastery criteria met"

    @pytest.mark.parametrize("field,value,criterion", [
        ("min_correct_answers", 5, "correct_answers"),
        ("min_explanation_quality", 90, "explanation_quality"),
        ("min_application_attempts", 3, "application"),
        ("min_overall_quality", 95, "overall_quality"),
        ("max_struggle_ratio", 0.05, "struggle_ratio"),
        ("min_time_spent_minutes", 10, "time_spent"),
    ])
    def test_any_single_failure_blocks_mastery(self, field, value, criterion):
        evidence = scenario_evidence() + [ev("explanation", 82)]
        stats = compute_statistics(evidence, START, NOW)
        rules = STRICT_RULES.model_copy(update={field: value})

        decision = decide(stats, rules)

        assert decision.has_mastered is False
        assert decision.criteria_met.failed() == [criterion]

    def test_no_evidence(self):
        stats = compute_statistics([], START, NOW)
        assert stats.struggle_ratio == 0.0
        assert stats.avg_quality == 0.0
        assert decide(stats, STRICT_RULES).has_mastered is False

    def test_zero_quality_scores_are_ignored_in_averages(self):
        stats = compute_statistics([ev("explanation", 0), ev("explanation", 80)], START, NOW)
        assert stats.avg_explanation_quality == 80

    def test_iso_string_timestamps(self):
        stats = compute_statistics([], START.isoformat(), (START + timedelta(minutes=3)).isoformat())
        assert stats.time_spent_minutes == pytest.approx(3.0)


class TestRules:
    def test_bounds_are_enforced(self):
        values = STRICT_RULES.model_dump()
        for field, bad in [
            ("max_struggle_ratio", 1.5),
            ("min_overall_quality", 101),
            ("min_correct_answers", -1),
            ("min_time_spent_minutes", -5),
        ]:
            with pytest.raises(ValidationError):
                MasteryRules(**{**values, field: bad})

    def test_rules_are_immutable(self):
        with pytest.raises(ValidationError):
            STRICT_RULES.min_correct_answers = 1


@pytest.mark.asyncio
class TestRuleService:
    async def test_defaults_when_unconfigured(self, store, test_settings):
        service = MasteryRuleService(store, test_settings)

        record = await service.get_rules("Math", 5)

        assert record.source == "default"
        assert record.rules == default_rules(test_settings)
        with pytest.raises(RuleConfigMissing):
            await service.require_rules("math", 5)

    async def test_set_get_reset(self, store, test_settings):
        service = MasteryRuleService(store, test_settings)

        saved = await service.set_rules("Math", 5, STRICT_RULES)
        assert saved.subject == "math"
        assert saved.source == "configured"
        assert (await service.get_rules("math", 5)).rules == STRICT_RULES
        assert len(await service.list_rules()) == 1

        assert await service.reset_rules("math", 5) is True
        assert (await service.get_rules("math", 5)).source == "default"
        assert await service.reset_rules("math", 5) is False


@pytest.mark.asyncio
class TestMasteryEngine:
    async def _seed(self, store, evidence):
        for record in evidence:
            await store.append_evidence({
                "learner_id": LEARNER_ID,
                "lesson_id": LESSON_ID,
                "session_id": SESSION_ID,
                "kind": record["kind"],
                "content": "answer",
                "quality_score": record["quality_score"],
                "confidence": 0.9,
            })

    async def test_scenario_from_store(self, store, test_settings):
        rules = MasteryRuleService(store, test_settings)
        await rules.set_rules("math", 5, STRICT_RULES)
        await self._seed(store, scenario_evidence())
        engine = MasteryEngine(store, rules)

        decision = await engine.determine_mastery(LEARNER_ID, LESSON_ID, "math", 5, START, now=NOW)

        assert decision.has_mastered is False
        assert decision.rules_source == "configured"
        assert decision.criteria_met.failed() == ["explanation_quality"]
        assert decision.evidence_summary["total_evidence"] == 10

    async def test_idempotent_and_read_only(self, store, test_settings):
        rules = MasteryRuleService(store, test_settings)
        await self._seed(store, scenario_evidence() + [ev("explanation", 82)])
        engine = MasteryEngine(store, rules, clock=lambda: NOW)

        first = await engine.determine_mastery(LEARNER_ID, LESSON_ID, "math", 5, START)
        second = await engine.determine_mastery(LEARNER_ID, LESSON_ID, "math", 5, START)

        assert first == second
        assert len(await store.list_evidence(LEARNER_ID, LESSON_ID)) == 11
        assert await store.get_lesson_progress(LEARNER_ID, LESSON_ID) is None

    async def test_unreadable_evidence_is_not_mastered(self, store, test_settings):
        class BrokenStore:
            async def get_rule_set(self, subject, grade):
                return None

            async def list_evidence(self, learner_id, lesson_id):
                raise RuntimeError("database down")

        engine = MasteryEngine(BrokenStore(), MasteryRuleService(BrokenStore(), test_settings))

        decision = await engine.determine_mastery(LEARNER_ID, LESSON_ID, "math", 5, START, now=NOW)

        assert decision.has_mastered is False
        assert "Evidence unavailable" in decision.reasoning


@pytest.mark.asyncio
class TestTracker:
    async def test_default_snapshot(self, store):
        snapshot = await MasteryTracker(store).snapshot(LEARNER_ID, LESSON_ID)
        assert snapshot.score == 50
        assert snapshot.source == "default"

    async def test_stored_progress_is_used_without_answers(self, store):
        await store.save_lesson_progress(LEARNER_ID, LESSON_ID, mastery_level=72.0)
        snapshot = await MasteryTracker(store).snapshot(LEARNER_ID, LESSON_ID)
        assert snapshot.score == 72.0
        assert snapshot.source == "progress"

    def test_score_from_answers(self):
        snapshot = score_from_evidence(
            [ev("correct_answer", 90)] * 3 + [ev("incorrect_answer", 40), ev("struggle", 30)]
        )
        assert snapshot.score == 75.0
        assert snapshot.source == "answers"
        assert snapshot.struggle_ratio == pytest.approx(0.2)

    def test_score_from_quality(self):
        snapshot = score_from_evidence([ev("explanation", 60), ev("application", 80)])
        assert snapshot.score == 70.0
        assert snapshot.source == "quality"
