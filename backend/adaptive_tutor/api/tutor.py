"""Tutor API endpoints: turns over HTTP and WebSocket, mastery status."""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field, ValidationError

from ..agents.prompts import RETRY_LATER_TEXT
from ..core.errors import UpstreamUnavailableError
from ..orchestrator.service import TutorOrchestrator
from ..orchestrator.state import TurnRequest, TurnResponse
from .deps import get_orchestrator
from .websocket import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tutor", tags=["Tutor"])


# ==============================================================================
# Pydantic Models
# ==============================================================================

class SessionStartRequest(BaseModel):
    session_id: str = Field(min_length=1)
    learner_id: str = Field(min_length=1)
    lesson_id: str = Field(min_length=1)


class MasteryStatusResponse(BaseModel):
    learner_id: str
    lesson_id: str
    has_mastered: bool
    criteria_met: Dict[str, bool]
    failed_criteria: List[str]
    evidence_summary: Dict[str, Any]
    rules_applied: Dict[str, Any]
    rules_source: str
    confidence: float
    reasoning: str


# ==============================================================================
# HTTP
# ==============================================================================

@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session(
    body: SessionStartRequest,
    orchestrator: TutorOrchestrator = Depends(get_orchestrator),
):
    """Create a session and warm the lesson's prompt caches."""
    session = await orchestrator.start_session(body.session_id, body.learner_id, body.lesson_id)
    return {"session_id": session["id"], "started_at": session["started_at"]}


@router.post("/turn", response_model=TurnResponse)
async def take_turn(
    body: TurnRequest,
    orchestrator: TutorOrchestrator = Depends(get_orchestrator),
):
    """Answer one learner turn."""
    try:
        return await orchestrator.handle_turn(body)
    except UpstreamUnavailableError as e:
        logger.error(f"Turn failed for session {body.session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_LATER_TEXT)


@router.get("/mastery/{learner_id}/{lesson_id}", response_model=MasteryStatusResponse)
async def get_mastery(
    learner_id: str,
    lesson_id: str,
    session_id: Optional[str] = Query(default=None),
    orchestrator: TutorOrchestrator = Depends(get_orchestrator),
):
    """Current mastery decision (time criterion measured from ``session_id``'s start)."""
    decision = await orchestrator.mastery_status(learner_id, lesson_id, session_id)
    return MasteryStatusResponse(
        learner_id=learner_id,
        lesson_id=lesson_id,
        has_mastered=decision.has_mastered,
        criteria_met=decision.criteria_met.model_dump(),
        failed_criteria=decision.criteria_met.failed(),
        evidence_summary=decision.evidence_summary,
        rules_applied=decision.rules_applied.model_dump(),
        rules_source=decision.rules_source,
        confidence=decision.confidence,
        reasoning=decision.reasoning,
    )


@router.get("/stats/{learner_id}")
async def get_learner_stats(
    learner_id: str,
    orchestrator: TutorOrchestrator = Depends(get_orchestrator),
):
    """Adaptation, enrichment and validation summaries."""
    return {
        "adaptation": await orchestrator.adaptation_logger.get_adaptation_stats(learner_id),
        "enrichment": await orchestrator.enricher.get_enrichment_stats(learner_id),
        "validation": await orchestrator.validator.get_validation_stats(),
    }


# ==============================================================================
# WebSocket Endpoint for Streaming
# ==============================================================================

DISCONNECTED = object()


async def _read_messages(websocket: WebSocket, inbox: asyncio.Queue, disconnected: asyncio.Event) -> None:
    """Move client messages into ``inbox`` until the socket goes away."""
    try:
        while True:
            await inbox.put(await websocket.receive_json())
    except WebSocketDisconnect:
        logger.info("Tutor WebSocket closed by client")
    except Exception as e:
        logger.error(f"Tutor WebSocket read failed: {e}")
    finally:
        disconnected.set()


async def _until_disconnected(awaitable: Awaitable[Any], disconnected: asyncio.Event) -> Any:
    """
    Await ``awaitable`` unless the client disconnects first.

    Returns:
        The awaitable's result, or ``DISCONNECTED`` after cancelling it
    """
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(disconnected.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not work.done():
            work.cancel()
    if work in done:
        return work.result()
    # Let the cancelled turn release its session lock before returning
    await asyncio.wait({work})
    return DISCONNECTED


async def serve_session(websocket: WebSocket, session_id: str, orchestrator: TutorOrchestrator) -> None:
    """
    Run streamed turns for one session socket.

    A turn still running when the client disconnects is cancelled;
    background work spawned by earlier turns is unaffected.
    """
    await manager.connect(session_id, websocket)
    inbox: asyncio.Queue = asyncio.Queue()
    disconnected = asyncio.Event()
    reader = asyncio.create_task(_read_messages(websocket, inbox, disconnected))

    try:
        while True:
            data = await _until_disconnected(inbox.get(), disconnected)
            if data is DISCONNECTED:
                break
            if not isinstance(data, dict) or data.get("type", "message") != "message":
                continue

            try:
                request = TurnRequest(
                    session_id=session_id,
                    learner_id=data.get("learner_id", ""),
                    lesson_id=data.get("lesson_id", ""),
                    message=data.get("message", ""),
                    modality=data.get("modality", "text"),
                    media=data.get("media"),
                )
            except ValidationError as e:
                await manager.send_error(session_id, f"Invalid turn: {e.errors()[0]['msg']}", "invalid_request")
                continue

            await manager.send_status(session_id, "Thinking...", phase="processing")

            async def on_first_sentence(sentence: str) -> None:
                await manager.send_first_sentence(session_id, sentence)

            try:
                response = await _until_disconnected(
                    orchestrator.handle_turn(request, on_first_sentence=on_first_sentence),
                    disconnected,
                )
            except UpstreamUnavailableError as e:
                logger.error(f"Turn failed for session {session_id}: {e}")
                await manager.send_error(session_id, RETRY_LATER_TEXT, "upstream_unavailable")
                continue
            except Exception as e:
                logger.error(f"Turn failed for session {session_id}: {e}", exc_info=True)
                await manager.send_error(session_id, RETRY_LATER_TEXT, "turn_failed")
                continue

            if response is DISCONNECTED:
                logger.info(f"Cancelled in-flight turn for disconnected session: {session_id}")
                break
            await manager.send_response(session_id, response.model_dump(mode="json"))
    finally:
        reader.cancel()
        manager.disconnect(session_id)
        logger.info(f"Tutor WebSocket disconnected for session: {session_id}")


@router.websocket("/ws/{session_id}")
async def tutor_websocket(
    websocket: WebSocket,
    session_id: str,
    orchestrator: TutorOrchestrator = Depends(get_orchestrator),
):
    """
    Streamed turns for one session.

    The client sends ``{"type": "message", "learner_id", "lesson_id",
    "message", "modality"?, "media"?}``; the server answers with ``status``,
    ``first_sentence`` and ``response`` events, or ``error`` when a turn fails.
    """
    await serve_session(websocket, session_id, orchestrator)
