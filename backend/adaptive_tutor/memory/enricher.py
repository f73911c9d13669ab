"""Profile enrichment from recent evidence.

Runs in the background after every turn. It looks at the latest window of
evidence in the session, groups it by topic and unions repeated struggles
and confident successes into the learner profile. Running it twice over
the same evidence changes nothing.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from ..core.config import Settings, get_settings
from ..db.store import TutorStore
from .profile import ProfileManager

logger = logging.getLogger(__name__)

LOW_QUALITY_KINDS = ("incorrect_answer", "struggle")


def detect_topics(
    evidence: List[Dict[str, Any]],
    default_topic: str,
    struggle_threshold: int,
    strength_threshold: int,
    strength_min_quality: float,
) -> Tuple[List[str], List[str]]:
    """
    Topics that qualify as struggles and as strengths.

    Args:
        evidence: Evidence rows (any order)
        default_topic: Topic for rows without a ``context``
        struggle_threshold: Low-quality records needed per topic
        strength_threshold: High-quality correct answers needed per topic
        strength_min_quality: Minimum quality for a correct answer to count

    Returns:
        (struggles, strengths) in first-seen order
    """
    low_counts: Dict[str, int] = defaultdict(int)
    high_counts: Dict[str, int] = defaultdict(int)
    order: List[str] = []

    for record in evidence:
        topic = (record.get("context") or default_topic or "").strip()
        if not topic:
            continue
        if topic not in order:
            order.append(topic)
        kind = record.get("kind")
        if kind in LOW_QUALITY_KINDS:
            low_counts[topic] += 1
        elif kind == "correct_answer" and (record.get("quality_score") or 0) >= strength_min_quality:
            high_counts[topic] += 1

    struggles = [topic for topic in order if low_counts[topic] >= struggle_threshold]
    strengths = [topic for topic in order if high_counts[topic] >= strength_threshold]
    return struggles, strengths


class ProfileEnricher:
    def __init__(
        self,
        store: TutorStore,
        profiles: ProfileManager,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.profiles = profiles
        self.settings = settings or get_settings()

    async def enrich_if_needed(self, learner_id: str, lesson_id: str, session_id: str) -> None:
        """Update the profile from the session's recent evidence. Never raises."""
        try:
            evidence = await self.store.recent_session_evidence(session_id, self.settings.ENRICHMENT_WINDOW_SIZE)
            if not evidence:
                return

            lesson = await self.store.get_lesson(lesson_id) or {}
            struggles, strengths = detect_topics(
                evidence,
                default_topic=lesson.get("title", ""),
                struggle_threshold=self.settings.ENRICHMENT_STRUGGLE_THRESHOLD,
                strength_threshold=self.settings.ENRICHMENT_STRENGTH_THRESHOLD,
                strength_min_quality=self.settings.ENRICHMENT_STRENGTH_MIN_QUALITY,
            )
            if not struggles and not strengths:
                return

            changed = await self.profiles.add_topics(learner_id, strengths=strengths, struggles=struggles)
            if changed:
                logger.info(
                    f"Enriched profile for {learner_id}: struggles={struggles}, strengths={strengths}"
                )
        except Exception as e:
            logger.error(f"Error enriching profile for {learner_id}: {e}")

    async def get_enrichment_stats(self, learner_id: str) -> Dict[str, Any]:
        try:
            profile = await self.profiles.get_profile(learner_id)
            return {
                "success": True,
                "learner_id": learner_id,
                "strengths_count": len(profile.strengths),
                "struggles_count": len(profile.struggles),
                "strengths": profile.strengths,
                "struggles": profile.struggles,
            }
        except Exception as e:
            logger.error(f"Error reading enrichment stats for {learner_id}: {e}")
            return {"success": False, "error": str(e), "learner_id": learner_id}
