"""Learner profiles behind a TTL cache."""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..core.cache import TTLCache
from ..core.config import Settings, get_settings
from ..core.errors import CacheMiss
from ..db.store import TutorStore

logger = logging.getLogger(__name__)


class LearnerProfileView(BaseModel):
    """Read model of a learner profile; ``strengths``/``struggles`` act as sets."""

    learner_id: str
    name: Optional[str] = None
    age: Optional[int] = None
    grade_level: Optional[int] = None
    learning_style: Optional[str] = None
    strengths: List[str] = Field(default_factory=list)
    struggles: List[str] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, learner_id: str, row: Optional[Dict[str, Any]]) -> "LearnerProfileView":
        if row is None:
            return cls(learner_id=learner_id)
        return cls(
            learner_id=learner_id,
            name=row.get("name"),
            age=row.get("age"),
            grade_level=row.get("grade_level"),
            learning_style=row.get("learning_style"),
            strengths=list(row.get("strengths") or []),
            struggles=list(row.get("struggles") or []),
            preferences=dict(row.get("preferences") or {}),
        )


def merge_topics(existing: Iterable[str], additions: Iterable[str]) -> List[str]:
    """Set union that keeps the existing order and appends new topics."""
    merged = list(dict.fromkeys(t for t in existing if t))
    for topic in additions:
        if topic and topic not in merged:
            merged.append(topic)
    return merged


PROFILE_FIELDS = ("name", "age", "grade_level", "learning_style", "strengths", "struggles", "preferences")


class ProfileManager:
    """
    Cached profile reads; every write invalidates the learner's entry
    before returning.
    """

    def __init__(
        self,
        store: TutorStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._cache: TTLCache[LearnerProfileView] = TTLCache(
            self.settings.PROFILE_CACHE_TTL_SECONDS, clock=clock
        )

    async def get_profile(self, learner_id: str) -> LearnerProfileView:
        try:
            return self._cache.get(learner_id)
        except CacheMiss:
            pass

        generation = self._cache.generation(learner_id)
        row = await self.store.get_profile(learner_id)
        profile = LearnerProfileView.from_row(learner_id, row)
        # Skipped when a write invalidated the learner during the read
        self._cache.put(learner_id, profile, generation=generation)
        return profile

    def invalidate(self, learner_id: str) -> None:
        self._cache.invalidate(learner_id)

    async def update_profile(self, learner_id: str, updates: Dict[str, Any]) -> LearnerProfileView:
        """Apply explicit edits (unknown fields are ignored)."""
        values = {key: value for key, value in updates.items() if key in PROFILE_FIELDS}
        if not values:
            return await self.get_profile(learner_id)
        try:
            row = await self.store.save_profile(learner_id, values)
        finally:
            self.invalidate(learner_id)
        logger.info(f"Updated profile for {learner_id}: {sorted(values)}")
        return LearnerProfileView.from_row(learner_id, row)

    async def add_topics(
        self,
        learner_id: str,
        strengths: Iterable[str] = (),
        struggles: Iterable[str] = (),
    ) -> bool:
        """
        Union new topics into the profile.

        Returns:
            True when the profile changed and was written
        """
        row = await self.store.get_profile(learner_id)
        current = LearnerProfileView.from_row(learner_id, row)

        new_strengths = merge_topics(current.strengths, strengths)
        new_struggles = merge_topics(current.struggles, struggles)
        if new_strengths == current.strengths and new_struggles == current.struggles:
            return False

        try:
            await self.store.save_profile(learner_id, {"strengths": new_strengths, "struggles": new_struggles})
        finally:
            self.invalidate(learner_id)
        return True
