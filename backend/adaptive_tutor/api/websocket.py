"""WebSocket connection management for streamed tutoring turns.

Each turn produces up to three kinds of event on the session socket:
``status`` while thinking, ``first_sentence`` as soon as speech can start,
and the final ``response`` (or an ``error`` with a safe message).
"""

import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """One WebSocket per tutoring session."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections[session_id] = websocket
        logger.info(f"WebSocket connected for session: {session_id}")

    def disconnect(self, session_id: str) -> None:
        if self.active_connections.pop(session_id, None) is not None:
            logger.info(f"WebSocket disconnected for session: {session_id}")

    async def send_event(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """
        Send one event to a session.

        Returns:
            True if the event was sent, False if the session is gone
        """
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning(f"No active connection for session: {session_id}")
            return False

        try:
            await websocket.send_json({"type": event_type, **payload})
            return True
        except Exception as e:
            logger.error(f"Error sending {event_type} to session {session_id}: {e}")
            self.disconnect(session_id)
            return False

    async def send_status(self, session_id: str, status: str, phase: Optional[str] = None) -> bool:
        return await self.send_event(session_id, "status", {"status": status, "phase": phase})

    async def send_first_sentence(self, session_id: str, sentence: str) -> bool:
        return await self.send_event(session_id, "first_sentence", {"text": sentence})

    async def send_response(self, session_id: str, response: Dict[str, Any]) -> bool:
        return await self.send_event(session_id, "response", {"response": response})

    async def send_error(self, session_id: str, error: str, error_code: Optional[str] = None) -> bool:
        return await self.send_event(session_id, "error", {"error": error, "error_code": error_code})

    def is_connected(self, session_id: str) -> bool:
        return session_id in self.active_connections

    def get_active_sessions(self) -> Set[str]:
        return set(self.active_connections)


# Global connection manager instance
manager = ConnectionManager()
