"""Remote prompt-cache management per (agent, lesson).

The static part of an agent's instructions (agent prompt, lesson metadata,
curriculum, team roster, response format) is large and identical on every
turn, so it is registered once with the provider's prompt cache and the
returned handle is reused until the entry nears expiry.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from ..core.cache import CacheEntry
from ..core.config import Settings, get_settings
from ..db.store import TutorStore
from .base.state import AgentName, AgentSpec
from .prompts import (
    RESPONSE_FORMAT_INSTRUCTIONS,
    STATIC_INSTRUCTION_TEMPLATE,
    format_catalogue,
    format_curriculum,
)
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

CacheKey = Tuple[AgentName, str]


@dataclass(frozen=True)
class CachedContext:
    """A registered static instruction and its remote handle."""

    agent: AgentName
    lesson_id: str
    handle: str
    system_instruction: str


class PromptCacheBackend(Protocol):
    """Remote side of the prompt cache."""

    async def create(self, key: CacheKey, system_instruction: str, ttl: float) -> str:
        ...

    async def delete(self, handle: str) -> None:
        ...


class PromptCacheKeyBackend:
    """
    Backend for OpenAI-compatible providers with automatic prefix caching.

    Such providers cache identical prompt prefixes on their own; the handle
    is a stable ``prompt_cache_key`` derived from the instruction content,
    sent with each request so calls for the same (agent, lesson) share a
    cache slot. Nothing needs deleting remotely.
    """

    async def create(self, key: CacheKey, system_instruction: str, ttl: float) -> str:
        digest = hashlib.sha256(system_instruction.encode("utf-8")).hexdigest()[:16]
        agent, lesson_id = key
        return f"{agent.value}:{lesson_id}:{digest}"

    async def delete(self, handle: str) -> None:
        return None


def build_system_instruction(spec: AgentSpec, lesson: Dict[str, Any], team: Iterable[AgentSpec]) -> str:
    return STATIC_INSTRUCTION_TEMPLATE.format(
        agent_prompt=spec.system_prompt.strip(),
        title=lesson.get("title", "Unknown lesson"),
        subject=lesson.get("subject", "general"),
        grade_level=lesson.get("grade_level", "?"),
        learning_objective=lesson.get("learning_objective") or "(not specified)",
        curriculum=format_curriculum(lesson.get("curriculum")),
        team=format_catalogue(list(team)),
        response_format=RESPONSE_FORMAT_INSTRUCTIONS,
    )


class ContextCacheManager:
    """
    One cache entry per (agent, lesson).

    - Entries live ``CONTEXT_CACHE_TTL_SECONDS`` (2h) and are rebuilt once
      older than ``CONTEXT_CACHE_RENEW_AFTER_SECONDS`` (90min).
    - Concurrent misses for the same key share one build (single flight).
    - ``invalidate`` drops entries and deletes their remote handles.
    """

    def __init__(
        self,
        store: TutorStore,
        registry: AgentRegistry,
        backend: Optional[PromptCacheBackend] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.registry = registry
        self.backend = backend or PromptCacheKeyBackend()
        self.settings = settings or get_settings()
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry[CachedContext]] = {}
        self._inflight: Dict[CacheKey, asyncio.Task] = {}

    def _needs_rebuild(self, entry: Optional[CacheEntry[CachedContext]]) -> bool:
        if entry is None:
            return True
        now = self._clock()
        return not entry.is_fresh(now) or entry.age(now) >= self.settings.CONTEXT_CACHE_RENEW_AFTER_SECONDS

    async def _build(self, key: CacheKey, lesson: Optional[Dict[str, Any]]) -> CachedContext:
        agent, lesson_id = key
        if lesson is None:
            lesson = await self.store.get_lesson(lesson_id) or {"id": lesson_id}
        spec = await self.registry.get(agent)
        team = await self.registry.routable()

        instruction = build_system_instruction(spec, lesson, team)
        handle = await self.backend.create(key, instruction, self.settings.CONTEXT_CACHE_TTL_SECONDS)
        context = CachedContext(agent=agent, lesson_id=lesson_id, handle=handle, system_instruction=instruction)

        previous = self._entries.get(key)
        self._entries[key] = CacheEntry(
            value=context,
            ttl=self.settings.CONTEXT_CACHE_TTL_SECONDS,
            created_at=self._clock(),
        )
        if previous is not None and previous.value.handle != handle:
            await self._delete_handle(previous.value.handle)

        logger.info(f"Context cache built for {agent.value}/{lesson_id} ({len(instruction)} chars)")
        return context

    async def get_context(
        self,
        agent: AgentName,
        lesson_id: str,
        lesson: Optional[Dict[str, Any]] = None,
    ) -> CachedContext:
        """Fresh cached context for (agent, lesson), building it on miss."""
        key = (agent, lesson_id)
        entry = self._entries.get(key)
        if not self._needs_rebuild(entry):
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._build(key, lesson))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def warmup(self, lesson_id: str, agents: Optional[Iterable[AgentName]] = None) -> int:
        """Pre-build contexts for a lesson; returns how many were built."""
        lesson = await self.store.get_lesson(lesson_id)
        if agents is None:
            agents = [spec.name for spec in await self.registry.routable()] + [AgentName.COORDINATOR]

        results = await asyncio.gather(
            *(self.get_context(agent, lesson_id, lesson) for agent in agents),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Context cache warmup failed for lesson {lesson_id}: {result}")
        return sum(1 for result in results if not isinstance(result, Exception))

    async def invalidate(self, lesson_id: Optional[str] = None, agent: Optional[AgentName] = None) -> int:
        """Drop matching entries (all when no filter) and delete their handles."""
        keys = [
            key for key in list(self._entries)
            if (lesson_id is None or key[1] == lesson_id) and (agent is None or key[0] == agent)
        ]
        for key in keys:
            entry = self._entries.pop(key)
            await self._delete_handle(entry.value.handle)
        if keys:
            logger.info(f"Invalidated {len(keys)} context cache entries")
        return len(keys)

    async def _delete_handle(self, handle: str) -> None:
        try:
            await self.backend.delete(handle)
        except Exception as e:
            logger.warning(f"Failed to delete remote prompt cache {handle}: {e}")

    def __len__(self) -> int:
        return len(self._entries)
