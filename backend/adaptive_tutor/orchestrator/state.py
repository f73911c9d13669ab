"""State definitions for a single tutoring turn.

``TurnRequest`` and ``TurnResponse`` are the wire types; ``TurnState`` is
the TypedDict passed between the nodes of the turn graph.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from typing_extensions import TypedDict

from ..adaptation.directives import AdaptiveDirectives
from ..agents.base.state import AgentName
from ..agents.generation import GenerationResult
from ..agents.router import RouteDecision
from ..agents.validator import ValidationOutcome, ValidationState, ValidationStep
from ..mastery.engine import MasteryDecision
from ..mastery.tracker import MasterySnapshot
from ..memory.profile import LearnerProfileView


class MediaPayload(BaseModel):
    """Opaque audio or image attachment (base64 data plus mime type)."""

    data: str
    mime_type: str = "application/octet-stream"


class TurnRequest(BaseModel):
    learner_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)
    message: str = ""
    modality: Literal["text", "audio", "image"] = "text"
    media: Optional[MediaPayload] = None


class TurnResponse(BaseModel):
    audio_text: str
    display_text: str
    svg: Optional[str] = None
    lesson_complete: bool = False
    agent: AgentName
    handoff_message: Optional[str] = None
    validation_state: ValidationState = ValidationState.APPROVED
    disclaimer: Optional[str] = None
    teaching_phase: Optional[int] = None
    first_sentence: Optional[str] = None
    mastery: Dict[str, Any] = Field(default_factory=dict)


class TurnState(TypedDict, total=False):
    """
    Complete state for one turn.

    Filled progressively: ``load_context`` sets the learner and lesson
    context, ``route`` the decision, ``generate``/``regenerate`` the draft,
    ``validate`` the step, ``finalize`` the outcome and response.
    """

    request: TurnRequest

    # Context (parallel reads)
    lesson: Dict[str, Any]
    session: Dict[str, Any]
    profile: LearnerProfileView
    history: List[Dict[str, Any]]
    routing_state: Optional[Dict[str, Any]]
    snapshot: MasterySnapshot
    mastery: MasteryDecision
    directives: AdaptiveDirectives
    pending_correction: Optional[Dict[str, Any]]

    # Routing
    route: RouteDecision
    prompt: str
    dynamic_context: str

    # Generation and validation
    draft: GenerationResult
    step: ValidationStep
    regenerations: int
    validation_history: List[ValidationState]

    # Result
    outcome: ValidationOutcome
    response: TurnResponse
