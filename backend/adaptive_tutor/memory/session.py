"""Short-term session memory: the last few delivered turns."""

import logging
from typing import Any, Dict, List, Optional

from ..core.config import Settings, get_settings
from ..db.store import TutorStore

logger = logging.getLogger(__name__)


class SessionMemory:
    def __init__(self, store: TutorStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def recent(self, session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Recent interactions of a session, newest last."""
        return await self.store.recent_interactions(session_id, limit or self.settings.SESSION_HISTORY_LIMIT)

    async def save_interaction(
        self,
        session_id: str,
        learner_id: str,
        lesson_id: str,
        agent: str,
        learner_text: Optional[str],
        response_text: str,
        has_svg: bool = False,
    ) -> Dict[str, Any]:
        row = await self.store.add_interaction({
            "session_id": session_id,
            "learner_id": learner_id,
            "lesson_id": lesson_id,
            "agent": agent,
            "learner_text": learner_text,
            "response_text": response_text,
            "has_svg": has_svg,
        })
        logger.debug(f"Saved interaction {row['id']} for session {session_id}")
        return row
