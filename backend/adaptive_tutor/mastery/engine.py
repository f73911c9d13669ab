"""Evidence-based mastery engine.

Mastery is a deterministic function of stored evidence and the configured
rule thresholds. Six criteria are evaluated and ALL must hold; there is no
averaging or partial credit. Because the outcome is computed rather than
guessed, confidence is always reported as 1.0.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from ..db.store import TutorStore
from .rules import MasteryRuleService, MasteryRules, default_rules

logger = logging.getLogger(__name__)

Timestamp = Union[datetime, str]


class EvidenceStatistics(BaseModel):
    total_count: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    explanation_count: int = 0
    avg_explanation_quality: float = 0.0
    application_count: int = 0
    avg_quality: float = 0.0
    struggle_count: int = 0
    struggle_ratio: float = 0.0
    time_spent_minutes: float = 0.0


class MasteryCriteria(BaseModel):
    correct_answers: bool
    explanation_quality: bool
    application: bool
    overall_quality: bool
    struggle_ratio: bool
    time_spent: bool

    def all_met(self) -> bool:
        return all(self.model_dump().values())

    def failed(self) -> list:
        return [name for name, met in self.model_dump().items() if not met]


class MasteryDecision(BaseModel):
    has_mastered: bool
    criteria_met: MasteryCriteria
    evidence_summary: Dict[str, Any]
    rules_applied: MasteryRules
    rules_source: str = "default"
    confidence: float = 1.0
    reasoning: str = ""


# =============================================================================
# Pure computation
# =============================================================================

def to_datetime(value: Timestamp) -> datetime:
    """Parse an ISO timestamp (naive values are taken as UTC)."""
    parsed = datetime.fromisoformat(value) if isinstance(value, str) else value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _average_positive(scores: Sequence[Optional[float]]) -> float:
    positive = [float(score) for score in scores if score is not None and score > 0]
    return sum(positive) / len(positive) if positive else 0.0


def compute_statistics(
    evidence: Sequence[Mapping[str, Any]],
    session_start: Timestamp,
    now: Timestamp,
) -> EvidenceStatistics:
    """
    Aggregate evidence records into the statistics the criteria need.

    Averages only count records with a positive quality score. With no
    explanation evidence the explanation average is 0, and with no evidence
    at all the struggle ratio is 0.
    """
    by_kind: Dict[str, list] = {}
    for record in evidence:
        by_kind.setdefault(record.get("kind"), []).append(record)

    total = len(evidence)
    explanations = by_kind.get("explanation", [])
    struggles = len(by_kind.get("struggle", []))
    elapsed = (to_datetime(now) - to_datetime(session_start)).total_seconds() / 60.0

    return EvidenceStatistics(
        total_count=total,
        correct_count=len(by_kind.get("correct_answer", [])),
        incorrect_count=len(by_kind.get("incorrect_answer", [])),
        explanation_count=len(explanations),
        avg_explanation_quality=_average_positive([r.get("quality_score") for r in explanations]),
        application_count=len(by_kind.get("application", [])),
        avg_quality=_average_positive([r.get("quality_score") for r in evidence]),
        struggle_count=struggles,
        struggle_ratio=struggles / total if total else 0.0,
        time_spent_minutes=max(0.0, elapsed),
    )


def evaluate_criteria(stats: EvidenceStatistics, rules: MasteryRules) -> MasteryCriteria:
    return MasteryCriteria(
        correct_answers=stats.correct_count >= rules.min_correct_answers,
        explanation_quality=stats.avg_explanation_quality >= rules.min_explanation_quality,
        application=stats.application_count >= rules.min_application_attempts,
        overall_quality=stats.avg_quality >= rules.min_overall_quality,
        struggle_ratio=stats.struggle_ratio <= rules.max_struggle_ratio,
        time_spent=stats.time_spent_minutes >= rules.min_time_spent_minutes,
    )


def summarize(stats: EvidenceStatistics) -> Dict[str, Any]:
    return {
        "total_evidence": stats.total_count,
        "correct_answers": stats.correct_count,
        "incorrect_answers": stats.incorrect_count,
        "explanations": stats.explanation_count,
        "explanation_quality": round(stats.avg_explanation_quality),
        "applications": stats.application_count,
        "avg_quality": round(stats.avg_quality),
        "struggle_ratio": round(stats.struggle_ratio, 2),
        "time_spent_minutes": round(stats.time_spent_minutes, 1),
    }


def decide(stats: EvidenceStatistics, rules: MasteryRules, rules_source: str = "default") -> MasteryDecision:
    """Evaluate the six criteria and AND them together."""
    criteria = evaluate_criteria(stats, rules)
    has_mastered = criteria.all_met()
    if has_mastered:
        reasoning = "All mastery criteria met"
    else:
        reasoning = f"Criteria not met: {', '.join(criteria.failed())}"

    return MasteryDecision(
        has_mastered=has_mastered,
        criteria_met=criteria,
        evidence_summary=summarize(stats),
        rules_applied=rules,
        rules_source=rules_source,
        confidence=1.0,
        reasoning=reasoning,
    )


def not_mastered(rules: MasteryRules, reason: str) -> MasteryDecision:
    """Conservative decision used when evidence cannot be read."""
    return MasteryDecision(
        has_mastered=False,
        criteria_met=MasteryCriteria(
            correct_answers=False,
            explanation_quality=False,
            application=False,
            overall_quality=False,
            struggle_ratio=False,
            time_spent=False,
        ),
        evidence_summary=summarize(EvidenceStatistics()),
        rules_applied=rules,
        confidence=1.0,
        reasoning=reason,
    )


# =============================================================================
# Engine
# =============================================================================

class MasteryEngine:
    """Loads evidence and rules, then applies ``decide``. Never writes."""

    def __init__(
        self,
        store: TutorStore,
        rules: MasteryRuleService,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.rules = rules
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def determine_mastery(
        self,
        learner_id: str,
        lesson_id: str,
        subject: str,
        grade: int,
        session_start: Timestamp,
        now: Optional[Timestamp] = None,
    ) -> MasteryDecision:
        """
        Decide whether the learner has mastered the lesson.

        Args:
            learner_id: Learner identifier
            lesson_id: Lesson identifier
            subject: Lesson subject (rule lookup key)
            grade: Grade level (rule lookup key)
            session_start: When the learning session began
            now: Evaluation time; defaults to the engine clock

        Returns:
            MasteryDecision with per-criterion results and the rules used
        """
        try:
            rule_set = await self.rules.get_rules(subject, grade)
        except Exception as e:
            logger.error(f"Error loading mastery rules for {subject} grade {grade}: {e}")
            return not_mastered(default_rules(), f"Rules unavailable: {e}")

        try:
            evidence = await self.store.list_evidence(learner_id, lesson_id)
        except Exception as e:
            logger.error(f"Error loading evidence for {learner_id}/{lesson_id}: {e}")
            return not_mastered(rule_set.rules, f"Evidence unavailable: {e}")

        stats = compute_statistics(evidence, session_start, now if now is not None else self.now())
        decision = decide(stats, rule_set.rules, rule_set.source)
        logger.info(
            f"Mastery for {learner_id}/{lesson_id}: {decision.has_mastered} "
            f"({decision.reasoning})"
        )
        return decision
