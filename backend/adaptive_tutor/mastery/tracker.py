"""Running mastery score used to pick teaching directives."""

import logging
from typing import Any, Dict, List

from pydantic import BaseModel

from ..db.store import TutorStore

logger = logging.getLogger(__name__)

DEFAULT_MASTERY = 50.0


class MasterySnapshot(BaseModel):
    score: float = DEFAULT_MASTERY  # 0 to 100
    struggle_ratio: float = 0.0
    evidence_count: int = 0
    source: str = "default"  # answers | quality | progress | default


def score_from_evidence(evidence: List[Dict[str, Any]]) -> MasterySnapshot:
    """
    Score from answer accuracy, falling back to average quality.

    Returns a default snapshot (score 50) when evidence says nothing.
    """
    total = len(evidence)
    struggles = sum(1 for record in evidence if record.get("kind") == "struggle")
    struggle_ratio = struggles / total if total else 0.0

    correct = sum(1 for record in evidence if record.get("kind") == "correct_answer")
    incorrect = sum(1 for record in evidence if record.get("kind") == "incorrect_answer")
    if correct + incorrect > 0:
        return MasterySnapshot(
            score=round(100.0 * correct / (correct + incorrect), 1),
            struggle_ratio=struggle_ratio,
            evidence_count=total,
            source="answers",
        )

    qualities = [record["quality_score"] for record in evidence if record.get("quality_score")]
    if qualities:
        return MasterySnapshot(
            score=round(sum(qualities) / len(qualities), 1),
            struggle_ratio=struggle_ratio,
            evidence_count=total,
            source="quality",
        )

    return MasterySnapshot(struggle_ratio=struggle_ratio, evidence_count=total)


class MasteryTracker:
    """Reads the learner's current mastery for a lesson."""

    def __init__(self, store: TutorStore):
        self.store = store

    async def snapshot(self, learner_id: str, lesson_id: str) -> MasterySnapshot:
        try:
            evidence = await self.store.list_evidence(learner_id, lesson_id)
            snapshot = score_from_evidence(evidence)
            if snapshot.source != "default":
                return snapshot

            progress = await self.store.get_lesson_progress(learner_id, lesson_id)
            if progress is not None:
                return snapshot.model_copy(
                    update={"score": float(progress["mastery_level"]), "source": "progress"}
                )
            return snapshot
        except Exception as e:
            logger.error(f"Error reading mastery for {learner_id}/{lesson_id}: {e}")
            return MasterySnapshot()
