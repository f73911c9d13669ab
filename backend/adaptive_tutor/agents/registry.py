"""Agent registry.

Loads agent definitions from the store and keeps the whole set in a single
TTL cache entry. Refresh builds a new read-only mapping and swaps it in
with one assignment, so readers never observe a half-loaded set.
"""

import logging
import re
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..core.cache import CacheEntry
from ..core.config import Settings, get_settings
from ..db.store import TutorStore
from .base.state import ROLE_BY_AGENT, AgentName, AgentRole, AgentSpec
from .prompts import DEFAULT_AGENT_DEFINITIONS

logger = logging.getLogger(__name__)

AgentMap = Mapping[AgentName, AgentSpec]


# =============================================================================
# Name normalisation
# =============================================================================

AGENT_ALIASES: Dict[str, AgentName] = {
    "self": AgentName.COORDINATOR,
    "router": AgentName.COORDINATOR,
    "coordinator": AgentName.COORDINATOR,
    "math": AgentName.MATH_SPECIALIST,
    "maths": AgentName.MATH_SPECIALIST,
    "mathematics": AgentName.MATH_SPECIALIST,
    "science": AgentName.SCIENCE_SPECIALIST,
    "physics": AgentName.SCIENCE_SPECIALIST,
    "chemistry": AgentName.SCIENCE_SPECIALIST,
    "biology": AgentName.SCIENCE_SPECIALIST,
    "english": AgentName.ENGLISH_SPECIALIST,
    "ela": AgentName.ENGLISH_SPECIALIST,
    "language_arts": AgentName.ENGLISH_SPECIALIST,
    "reading": AgentName.ENGLISH_SPECIALIST,
    "writing": AgentName.ENGLISH_SPECIALIST,
    "literature": AgentName.ENGLISH_SPECIALIST,
    "history": AgentName.HISTORY_SPECIALIST,
    "social_studies": AgentName.HISTORY_SPECIALIST,
    "art": AgentName.ART_SPECIALIST,
    "arts": AgentName.ART_SPECIALIST,
    "assessment": AgentName.ASSESSOR,
    "assess": AgentName.ASSESSOR,
    "motivation": AgentName.MOTIVATOR,
    "encouragement": AgentName.MOTIVATOR,
    "support": AgentName.MOTIVATOR,
    "validation": AgentName.VALIDATOR,
}

_SUFFIXES = ("_specialist", "_agent", "_teacher", "_tutor")


def normalize_agent_name(value: Optional[str]) -> Optional[AgentName]:
    """
    Resolve a free-text agent name to ``AgentName``.

    Absorbs case, spacing and suffix variants ("Math Teacher",
    "science-agent", "MATH_SPECIALIST"). Returns None when unresolvable.
    """
    if not value:
        return None
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    key = key.strip("_\"'.")

    try:
        return AgentName(key)
    except ValueError:
        pass

    if key in AGENT_ALIASES:
        return AGENT_ALIASES[key]
    for suffix in _SUFFIXES:
        if key.endswith(suffix):
            base = key[: -len(suffix)]
            if base in AGENT_ALIASES:
                return AGENT_ALIASES[base]
    return None


def agent_for_subject(subject: Optional[str]) -> Optional[AgentName]:
    """Specialist responsible for a lesson subject."""
    agent = normalize_agent_name(subject)
    if agent is not None and ROLE_BY_AGENT[agent] == AgentRole.SPECIALIST:
        return agent
    return None


# =============================================================================
# AgentSpec construction
# =============================================================================

def spec_from_definition(definition: Mapping[str, Any]) -> Optional[AgentSpec]:
    """Build an ``AgentSpec`` from a stored or default definition dict."""
    name = normalize_agent_name(definition.get("name"))
    if name is None:
        logger.warning(f"Ignoring agent definition with unknown name: {definition.get('name')}")
        return None
    return AgentSpec(
        name=name,
        role=ROLE_BY_AGENT[name],
        display_name=definition.get("display_name") or name.value,
        system_prompt=definition.get("system_prompt") or "",
        model=definition.get("model"),
        temperature=definition.get("temperature"),
        reasoning_effort=definition.get("reasoning_effort") or "medium",
        capabilities=frozenset(definition.get("capabilities") or ()),
    )


DEFAULT_SPECS: Dict[AgentName, AgentSpec] = {
    spec.name: spec
    for spec in (spec_from_definition(d) for d in DEFAULT_AGENT_DEFINITIONS)
    if spec is not None
}


class AgentRegistry:
    """Single-owner TTL cache of all agent definitions."""

    def __init__(
        self,
        store: TutorStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock
        self._entry: Optional[CacheEntry[AgentMap]] = None

    async def _load(self) -> AgentMap:
        agents: Dict[AgentName, AgentSpec] = dict(DEFAULT_SPECS)
        try:
            definitions = await self.store.list_agent_definitions()
        except Exception as e:
            logger.error(f"Error loading agent definitions, using defaults: {e}")
            definitions = []

        for definition in definitions:
            spec = spec_from_definition(definition)
            if spec is not None:
                agents[spec.name] = spec

        logger.info(f"Loaded {len(agents)} agent definitions ({len(definitions)} from store)")
        return MappingProxyType(agents)

    async def get_all(self) -> AgentMap:
        """All agents, rebuilding the cache entry when missing or stale."""
        entry = self._entry
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.value

        agents = await self._load()
        self._entry = CacheEntry(
            value=agents,
            ttl=self.settings.AGENT_REGISTRY_TTL_SECONDS,
            created_at=self._clock(),
        )
        return agents

    async def get(self, name: AgentName) -> AgentSpec:
        agents = await self.get_all()
        return agents.get(name) or DEFAULT_SPECS[name]

    async def specialists(self) -> List[AgentSpec]:
        agents = await self.get_all()
        return [spec for spec in agents.values() if spec.role == AgentRole.SPECIALIST]

    async def routable(self) -> List[AgentSpec]:
        """Agents the coordinator may hand a turn to."""
        agents = await self.get_all()
        return [
            spec for spec in agents.values()
            if spec.role in (AgentRole.SPECIALIST, AgentRole.SUPPORT)
        ]

    def invalidate(self) -> None:
        """Drop the cached generation; the next read reloads from the store."""
        self._entry = None

    async def seed_defaults(self) -> int:
        """Write the default catalogue into an empty store."""
        existing = await self.store.list_agent_definitions(active_only=False)
        if existing:
            return 0
        for definition in DEFAULT_AGENT_DEFINITIONS:
            values = {key: value for key, value in definition.items() if key != "name"}
            await self.store.save_agent_definition(definition["name"], values)
        self.invalidate()
        logger.info(f"Seeded {len(DEFAULT_AGENT_DEFINITIONS)} default agent definitions")
        return len(DEFAULT_AGENT_DEFINITIONS)
