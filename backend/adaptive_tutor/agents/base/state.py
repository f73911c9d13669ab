"""Agent identity and the structured reply schemas shared by every agent.

Agent identity is a closed enumeration; free-text names coming from the
router are resolved through ``normalize_agent_name`` in ``agents.registry``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentName(str, Enum):
    COORDINATOR = "coordinator"
    MATH_SPECIALIST = "math_specialist"
    SCIENCE_SPECIALIST = "science_specialist"
    ENGLISH_SPECIALIST = "english_specialist"
    HISTORY_SPECIALIST = "history_specialist"
    ART_SPECIALIST = "art_specialist"
    ASSESSOR = "assessor"
    MOTIVATOR = "motivator"
    VALIDATOR = "validator"


class AgentRole(str, Enum):
    ROUTER = "router"
    SPECIALIST = "specialist"
    ASSESSOR = "assessor"
    SUPPORT = "support"
    VALIDATOR = "validator"


ROLE_BY_AGENT: Dict[AgentName, AgentRole] = {
    AgentName.COORDINATOR: AgentRole.ROUTER,
    AgentName.MATH_SPECIALIST: AgentRole.SPECIALIST,
    AgentName.SCIENCE_SPECIALIST: AgentRole.SPECIALIST,
    AgentName.ENGLISH_SPECIALIST: AgentRole.SPECIALIST,
    AgentName.HISTORY_SPECIALIST: AgentRole.SPECIALIST,
    AgentName.ART_SPECIALIST: AgentRole.SPECIALIST,
    AgentName.ASSESSOR: AgentRole.ASSESSOR,
    AgentName.MOTIVATOR: AgentRole.SUPPORT,
    AgentName.VALIDATOR: AgentRole.VALIDATOR,
}

WEB_SEARCH = "web_search"


@dataclass(frozen=True)
class AgentSpec:
    """An immutable, loaded agent definition."""

    name: AgentName
    role: AgentRole
    display_name: str
    system_prompt: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    reasoning_effort: str = "medium"
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_specialist(self) -> bool:
        return self.role == AgentRole.SPECIALIST

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities


# =============================================================================
# Structured replies
# =============================================================================

class TeachingResponse(BaseModel):
    """The fixed response contract every teaching agent must honour."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    audio_text: str = Field(alias="audioText")
    display_text: str = Field(default="", alias="displayText")
    svg: Optional[str] = None
    lesson_complete: bool = Field(default=False, alias="lessonComplete")
    teaching_phase: Optional[int] = Field(default=None, alias="teachingPhase")

    @field_validator("teaching_phase", mode="before")
    @classmethod
    def _clamp_phase(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return max(1, min(5, int(value)))
        except (TypeError, ValueError):
            return None

    @field_validator("svg", mode="before")
    @classmethod
    def _empty_svg_is_none(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
            return value
        return None


class RoutingChoice(BaseModel):
    """The coordinator's routing reply."""

    model_config = ConfigDict(extra="ignore")

    route_to: str
    reason: str = ""
    handoff_message: Optional[str] = None
    response: Optional[str] = None


class ValidationVerdict(BaseModel):
    """The validator agent's judgement on one draft."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approved: bool = False
    confidence_score: float = Field(default=0.0, alias="confidenceScore")
    issues: List[str] = Field(default_factory=list)
    required_fixes: List[str] = Field(default_factory=list, alias="requiredFixes")
    checks: Dict[str, bool] = Field(default_factory=dict)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        value = float(value or 0.0)
        # Some models answer on a 0-100 scale
        if value > 1.0:
            value = value / 100.0
        return max(0.0, min(1.0, value))


EvidenceKind = Literal["correct_answer", "incorrect_answer", "explanation", "application", "struggle"]


class EvidenceClassification(BaseModel):
    """Classification of one learner utterance."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    evidence_type: EvidenceKind = Field(alias="evidenceType")
    quality_score: float = Field(default=50.0, alias="qualityScore", ge=0, le=100)
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
