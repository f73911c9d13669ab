"""Fire-and-forget work that runs after a turn has been answered."""

import asyncio
import logging
from collections import deque
from typing import Any, Coroutine, Deque, Dict, Set

from ..db.models import utc_now_iso

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """
    Spawns background coroutines and routes their failures to an error sink.

    Failures are logged and kept in a bounded list for inspection; they are
    never re-raised to whoever scheduled the work.
    """

    def __init__(self, max_errors: int = 100):
        self._tasks: Set[asyncio.Task] = set()
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=max_errors)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")
            self.errors.append({"task": task.get_name(), "error": str(error), "at": utc_now_iso()})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for everything spawned so far (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
