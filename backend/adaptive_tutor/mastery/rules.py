"""Teacher-configurable mastery thresholds keyed by subject and grade."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import Settings, get_settings
from ..core.errors import RuleConfigMissing
from ..db.store import TutorStore

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "min_correct_answers",
    "min_explanation_quality",
    "min_application_attempts",
    "min_overall_quality",
    "max_struggle_ratio",
    "min_time_spent_minutes",
)


class MasteryRules(BaseModel):
    """The six thresholds. Bounds are enforced on every write."""

    model_config = ConfigDict(frozen=True)

    min_correct_answers: int = Field(ge=0, le=1000)
    min_explanation_quality: float = Field(ge=0, le=100)
    min_application_attempts: int = Field(ge=0, le=1000)
    min_overall_quality: float = Field(ge=0, le=100)
    max_struggle_ratio: float = Field(ge=0, le=1)
    min_time_spent_minutes: float = Field(ge=0, le=24 * 60)


class RuleSetRecord(BaseModel):
    """Effective rules for a subject and grade, with where they came from."""

    subject: str
    grade: int
    rules: MasteryRules
    source: str  # "configured" | "default"
    updated_at: Optional[str] = None


def default_rules(settings: Optional[Settings] = None) -> MasteryRules:
    """System default thresholds used when nothing is configured."""
    settings = settings or get_settings()
    return MasteryRules(
        min_correct_answers=settings.MASTERY_DEFAULT_MIN_CORRECT,
        min_explanation_quality=settings.MASTERY_DEFAULT_MIN_EXPLANATION_QUALITY,
        min_application_attempts=settings.MASTERY_DEFAULT_MIN_APPLICATIONS,
        min_overall_quality=settings.MASTERY_DEFAULT_MIN_OVERALL_QUALITY,
        max_struggle_ratio=settings.MASTERY_DEFAULT_MAX_STRUGGLE_RATIO,
        min_time_spent_minutes=settings.MASTERY_DEFAULT_MIN_TIME_MINUTES,
    )


def normalize_subject(subject: str) -> str:
    return (subject or "").strip().lower()


def _record_from_row(row: Dict[str, Any]) -> RuleSetRecord:
    return RuleSetRecord(
        subject=row["subject"],
        grade=row["grade"],
        rules=MasteryRules(**{name: row[name] for name in RULE_FIELDS}),
        source="configured",
        updated_at=row.get("updated_at"),
    )


class MasteryRuleService:
    """Read/write access to rule sets with fallback to defaults."""

    def __init__(self, store: TutorStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def require_rules(self, subject: str, grade: int) -> RuleSetRecord:
        """Configured rules or ``RuleConfigMissing``."""
        subject = normalize_subject(subject)
        row = await self.store.get_rule_set(subject, grade)
        if row is None:
            raise RuleConfigMissing(subject, grade)
        return _record_from_row(row)

    async def get_rules(self, subject: str, grade: int) -> RuleSetRecord:
        """Effective rules for (subject, grade), falling back to defaults."""
        try:
            return await self.require_rules(subject, grade)
        except RuleConfigMissing as e:
            logger.info(f"{e}; using default mastery rules")
            return RuleSetRecord(
                subject=normalize_subject(subject),
                grade=grade,
                rules=default_rules(self.settings),
                source="default",
            )

    async def set_rules(self, subject: str, grade: int, rules: MasteryRules) -> RuleSetRecord:
        subject = normalize_subject(subject)
        row = await self.store.save_rule_set(subject, grade, rules.model_dump())
        logger.info(f"Mastery rules updated for {subject} grade {grade}: {rules.model_dump()}")
        return _record_from_row(row)

    async def list_rules(self) -> List[RuleSetRecord]:
        return [_record_from_row(row) for row in await self.store.list_rule_sets()]

    async def reset_rules(self, subject: str, grade: int) -> bool:
        """Delete configured rules so the defaults apply again."""
        removed = await self.store.delete_rule_set(normalize_subject(subject), grade)
        if removed:
            logger.info(f"Mastery rules for {subject} grade {grade} reset to defaults")
        return removed
