"""
Tests for evidence extraction and profile enrichment.
"""

import pytest
from pydantic import ValidationError

from adaptive_tutor.agents.base.state import AgentName
from adaptive_tutor.agents.evidence import EvidenceExtractor, EvidenceRecord, EvidenceRecorder
from adaptive_tutor.agents.registry import AgentRegistry
from adaptive_tutor.memory.enricher import ProfileEnricher, detect_topics
from adaptive_tutor.memory.profile import ProfileManager

from scripted_llm import CLASSIFY, LEARNER_ID, LESSON_ID, SESSION_ID, evidence_reply


def record(kind: str, quality: float = 50, context: str = "Adding fractions") -> EvidenceRecord:
    return EvidenceRecord(
        learner_id=LEARNER_ID,
        lesson_id=LESSON_ID,
        session_id=SESSION_ID,
        kind=kind,
        content="learner said something",
        quality_score=quality,
        confidence=0.9,
        context=context,
    )


async def seed(store, *records: EvidenceRecord) -> None:
    recorder = EvidenceRecorder(store)
    for item in records:
        await recorder.record(item)


class TestDetectTopics:
    def test_thresholds(self):
        evidence = (
            [{"kind": "struggle", "context": "fractions"}] * 2
            + [{"kind": "incorrect_answer", "context": "fractions"}]
            + [{"kind": "correct_answer", "quality_score": 90, "context": "counting"}] * 2
            + [{"kind": "correct_answer", "quality_score": 60, "context": "decimals"}] * 5
        )

        struggles, strengths = detect_topics(evidence, "lesson", 3, 2, 80)

        assert struggles == ["fractions"]
        assert strengths == ["counting"]

    def test_missing_context_uses_default_topic(self):
        evidence = [{"kind": "struggle", "context": None}] * 3
        assert detect_topics(evidence, "Adding fractions", 3, 2, 80) == (["Adding fractions"], [])

    def test_below_thresholds(self):
        evidence = [{"kind": "struggle", "context": "fractions"}] * 2
        assert detect_topics(evidence, "", 3, 2, 80) == ([], [])


class TestEvidenceRecord:
    def test_bounds(self):
        with pytest.raises(ValidationError):
            record("correct_answer", quality=120)
        with pytest.raises(ValidationError):
            record("guess")
        with pytest.raises(ValidationError):
            EvidenceRecord(learner_id="", lesson_id=LESSON_ID, session_id=SESSION_ID, kind="struggle", content="x")


@pytest.mark.asyncio
class TestProfileEnricher:
    @pytest.fixture
    def profiles(self, store, test_settings) -> ProfileManager:
        return ProfileManager(store, test_settings)

    @pytest.fixture
    def enricher(self, store, profiles, test_settings) -> ProfileEnricher:
        return ProfileEnricher(store, profiles, test_settings)

    async def test_repeated_struggles_are_added(self, store, lesson, profiles, enricher):
        await seed(store, *(record("struggle", 20) for _ in range(3)))
        before = await profiles.get_profile(LEARNER_ID)
        assert before.struggles == []

        await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID)

        # The cached profile was invalidated by the write
        assert (await profiles.get_profile(LEARNER_ID)).struggles == ["Adding fractions"]

    async def test_enrichment_is_idempotent(self, store, lesson, profiles, enricher):
        await seed(
            store,
            *(record("incorrect_answer", 30) for _ in range(3)),
            *(record("correct_answer", 95, context="Counting") for _ in range(2)),
        )

        await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID)
        first = await store.get_profile(LEARNER_ID)
        await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID)
        second = await store.get_profile(LEARNER_ID)

        assert first["struggles"] == second["struggles"] == ["Adding fractions"]
        assert first["strengths"] == second["strengths"] == ["Counting"]
        assert first["updated_at"] == second["updated_at"]

    async def test_only_recent_window_counts(self, store, lesson, profiles, enricher, test_settings):
        await seed(store, *(record("struggle", 20) for _ in range(3)))
        await seed(store, *(record("explanation", 70) for _ in range(test_settings.ENRICHMENT_WINDOW_SIZE)))

        await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID)

        assert (await profiles.get_profile(LEARNER_ID)).struggles == []

    async def test_errors_are_swallowed(self, profiles, test_settings):
        class BrokenStore:
            async def recent_session_evidence(self, session_id, limit):
                raise RuntimeError("database down")

        enricher = ProfileEnricher(BrokenStore(), profiles, test_settings)

        assert await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID) is None

    async def test_stats(self, store, lesson, profiles, enricher):
        await seed(store, *(record("struggle", 20) for _ in range(3)))
        await enricher.enrich_if_needed(LEARNER_ID, LESSON_ID, SESSION_ID)

        stats = await enricher.get_enrichment_stats(LEARNER_ID)

        assert stats["success"] is True
        assert stats["struggles_count"] == 1
        assert stats["strengths_count"] == 0


@pytest.mark.asyncio
class TestEvidenceExtractor:
    @pytest.fixture
    def extractor(self, store, llm_factory, test_settings) -> EvidenceExtractor:
        return EvidenceExtractor(store, AgentRegistry(store, test_settings), llm_factory, test_settings)

    async def test_confident_classification_is_recorded(self, extractor, llm_factory, store, lesson):
        llm_factory.script(AgentName.ASSESSOR, when=[(CLASSIFY, evidence_reply("correct_answer", 90, 0.95))])

        result = await extractor.extract_and_record(LEARNER_ID, LESSON_ID, SESSION_ID, "It's 3/4", lesson)

        assert result["recorded"] is True
        rows = await store.list_evidence(LEARNER_ID, LESSON_ID)
        assert len(rows) == 1
        assert rows[0]["kind"] == "correct_answer"
        assert rows[0]["context"] == "Adding fractions"
        assert rows[0]["metadata_json"] == {"reasoning": "test"}

    async def test_low_confidence_is_skipped(self, extractor, llm_factory, store, lesson):
        llm_factory.script(AgentName.ASSESSOR, when=[(CLASSIFY, evidence_reply("explanation", 60, 0.7))])

        result = await extractor.extract_and_record(LEARNER_ID, LESSON_ID, SESSION_ID, "because halves", lesson)

        assert result["recorded"] is False
        assert await store.list_evidence(LEARNER_ID, LESSON_ID) == []

    async def test_session_start_is_not_evidence(self, extractor, llm_factory, lesson):
        result = await extractor.extract_and_record(LEARNER_ID, LESSON_ID, SESSION_ID, "[AUTO_START]", lesson)

        assert result["recorded"] is False
        assert llm_factory.call_count(AgentName.ASSESSOR) == 0

    async def test_bad_classifier_reply_is_not_recorded(self, extractor, llm_factory, store, lesson):
        llm_factory.script(AgentName.ASSESSOR, responses=["I am not sure"])

        result = await extractor.extract_and_record(LEARNER_ID, LESSON_ID, SESSION_ID, "maybe 2?", lesson)

        assert result["recorded"] is False
        assert result["classification"]["confidence"] == 0.3
