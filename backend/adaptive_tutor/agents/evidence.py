"""Evidence recording and extraction.

These tools enable:
- Appending validated evidence records (never updated or deleted)
- Classifying a learner utterance into an evidence record with a model call
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..core.retry import call_with_retry
from ..db.store import TutorStore
from .base.llm import LLMFactory, get_llm_for_agent
from .base.state import AgentName, EvidenceClassification, EvidenceKind
from .base.utils import build_messages, content_to_text, parse_model_reply
from .prompts import EVIDENCE_PROMPT_TEMPLATE, format_recent_conversation
from .registry import AgentRegistry
from .router import AUTO_START_MARKER

logger = logging.getLogger(__name__)


class EvidenceRecord(BaseModel):
    """One observation of learner performance, checked before it is stored."""

    learner_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    kind: EvidenceKind
    content: str
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    context: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None


def fallback_classification() -> EvidenceClassification:
    """Classification used when the model reply is unusable (never recorded)."""
    return EvidenceClassification(
        evidence_type="explanation",
        quality_score=50,
        confidence=0.3,
        reasoning="Classification failed",
    )


# =============================================================================
# Recording
# =============================================================================

class EvidenceRecorder:
    """Append-only writer for evidence records."""

    def __init__(self, store: TutorStore):
        self.store = store

    async def record(self, record: EvidenceRecord) -> Dict[str, Any]:
        """Store one evidence record; returns the stored row."""
        row = await self.store.append_evidence({
            "learner_id": record.learner_id,
            "lesson_id": record.lesson_id,
            "session_id": record.session_id,
            "kind": record.kind,
            "content": record.content,
            "quality_score": record.quality_score,
            "confidence": record.confidence,
            "context": record.context,
            "metadata_json": record.metadata,
        })
        logger.info(
            f"Recorded {record.kind} evidence for {record.learner_id}/{record.lesson_id} "
            f"(quality={record.quality_score})"
        )
        return row


# =============================================================================
# Extraction
# =============================================================================

class EvidenceExtractor:
    """Classifies learner utterances and records the confident ones."""

    def __init__(
        self,
        store: TutorStore,
        registry: AgentRegistry,
        llm_factory: LLMFactory = get_llm_for_agent,
        settings: Optional[Settings] = None,
    ):
        self.recorder = EvidenceRecorder(store)
        self.registry = registry
        self.llm_factory = llm_factory
        self.settings = settings or get_settings()

    async def classify(
        self,
        learner_text: str,
        lesson: Dict[str, Any],
        history: List[Dict[str, Any]],
    ) -> EvidenceClassification:
        """Classify one utterance; falls back to a low-confidence explanation."""
        try:
            spec = await self.registry.get(AgentName.ASSESSOR)
            prompt = EVIDENCE_PROMPT_TEMPLATE.format(
                lesson_title=lesson.get("title", "Unknown"),
                learning_objective=lesson.get("learning_objective") or "(not specified)",
                conversation=format_recent_conversation(history),
                learner_text=learner_text,
            )
            llm = self.llm_factory(spec, streaming=False)
            message = await call_with_retry(
                lambda: llm.ainvoke(build_messages(spec.system_prompt, prompt)),
                label="evidence",
            )
            return parse_model_reply(content_to_text(message.content), EvidenceClassification)
        except Exception as e:
            logger.error(f"Error classifying evidence: {e}")
            return fallback_classification()

    async def extract_and_record(
        self,
        learner_id: str,
        lesson_id: str,
        session_id: str,
        learner_text: str,
        lesson: Dict[str, Any],
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Classify the learner's message and record it when confident enough.

        Args:
            learner_id: Learner identifier
            lesson_id: Lesson identifier
            session_id: Session identifier
            learner_text: What the learner said this turn
            lesson: Lesson row (title becomes the evidence topic)
            history: Recent interactions for classification context

        Returns:
            Dict with "success", "recorded" and the classification
        """
        text = (learner_text or "").strip()
        if not text or text.startswith(AUTO_START_MARKER):
            return {"success": True, "recorded": False, "reason": "nothing to classify"}

        classification = await self.classify(text, lesson, history or [])
        if classification.confidence <= self.settings.EVIDENCE_MIN_CONFIDENCE:
            logger.debug(
                f"Skipping low-confidence evidence ({classification.confidence:.2f}) "
                f"for {learner_id}/{lesson_id}"
            )
            return {
                "success": True,
                "recorded": False,
                "reason": "low confidence",
                "classification": classification.model_dump(),
            }

        try:
            record = EvidenceRecord(
                learner_id=learner_id,
                lesson_id=lesson_id,
                session_id=session_id,
                kind=classification.evidence_type,
                content=text,
                quality_score=classification.quality_score,
                confidence=classification.confidence,
                context=lesson.get("title"),
                metadata={"reasoning": classification.reasoning},
            )
            row = await self.recorder.record(record)
            return {
                "success": True,
                "recorded": True,
                "evidence_id": row["id"],
                "classification": classification.model_dump(),
            }
        except Exception as e:
            logger.error(f"Error recording evidence for {learner_id}/{lesson_id}: {e}")
            return {"success": False, "recorded": False, "error": str(e)}
