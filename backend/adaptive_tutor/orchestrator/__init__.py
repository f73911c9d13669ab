"""Per-turn orchestration: context fan-out, routing, generation, validation."""

from .background import BackgroundTaskRunner
from .graph import TurnGraph
from .service import TutorOrchestrator, build_orchestrator
from .state import MediaPayload, TurnRequest, TurnResponse, TurnState

__all__ = [
    "BackgroundTaskRunner",
    "TurnGraph",
    "TutorOrchestrator",
    "build_orchestrator",
    "MediaPayload",
    "TurnRequest",
    "TurnResponse",
    "TurnState",
]
