"""FastAPI dependencies."""

from fastapi.requests import HTTPConnection

from ..mastery.rules import MasteryRuleService
from ..orchestrator.service import TutorOrchestrator


def get_orchestrator(connection: HTTPConnection) -> TutorOrchestrator:
    """The orchestrator created in the application lifespan (HTTP and WebSocket)."""
    return connection.app.state.orchestrator


def get_rule_service(connection: HTTPConnection) -> MasteryRuleService:
    return get_orchestrator(connection).rules
