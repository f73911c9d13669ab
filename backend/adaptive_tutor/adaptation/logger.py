"""Adaptation log: how each delivered response was tailored."""

import logging
from collections import Counter
from typing import Any, Dict

from ..db.store import TutorStore
from .directives import AdaptiveDirectives

logger = logging.getLogger(__name__)


class AdaptationLogger:
    def __init__(self, store: TutorStore):
        self.store = store

    async def log(
        self,
        learner_id: str,
        lesson_id: str,
        session_id: str,
        agent: str,
        mastery_level: float,
        directives: AdaptiveDirectives,
        response_text: str,
        has_svg: bool = False,
    ) -> Dict[str, Any]:
        return await self.store.add_adaptation_log({
            "learner_id": learner_id,
            "lesson_id": lesson_id,
            "session_id": session_id,
            "agent": agent,
            "mastery_level": mastery_level,
            "difficulty_level": directives.difficulty_level,
            "scaffolding_level": directives.scaffolding_level,
            "learning_style": directives.learning_style.value if directives.learning_style else None,
            "directive_count": len(directives.directives),
            "has_svg": has_svg,
            "response_preview": (response_text or "")[:200],
        })

    async def get_adaptation_stats(self, learner_id: str, limit: int = 100) -> Dict[str, Any]:
        """
        Summarise recent adaptations for a learner.

        Returns:
            Dict with difficulty distribution, SVG rate and average directive count
        """
        try:
            logs = await self.store.list_adaptation_logs(learner_id, limit=limit)
        except Exception as e:
            logger.error(f"Error reading adaptation logs for {learner_id}: {e}")
            return {"success": False, "error": str(e), "total": 0}

        total = len(logs)
        if total == 0:
            return {"success": True, "total": 0, "difficulty_distribution": {}, "svg_rate": 0.0, "avg_directives": 0.0}

        difficulty = Counter(log["difficulty_level"] for log in logs)
        return {
            "success": True,
            "total": total,
            "difficulty_distribution": dict(difficulty),
            "svg_rate": round(sum(1 for log in logs if log["has_svg"]) / total, 3),
            "avg_directives": round(sum(log["directive_count"] for log in logs) / total, 2),
        }
