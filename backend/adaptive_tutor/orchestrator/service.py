"""Tutor orchestrator.

Entry point for a learner turn. Runs the turn graph under a per-session
lock, returns the response, then schedules the post-turn bookkeeping:

- evidence extraction, then lesson progress, then profile enrichment
  (chained so enrichment sees the new evidence)
- interaction save
- adaptation log
- validation audit record (rejections, retries and timeouts only), plus a
  queued self-correction when a rejected draft was delivered
- marking an injected self-correction as delivered
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from ..adaptation.logger import AdaptationLogger
from ..agents.base.llm import LLMFactory, get_llm_for_agent
from ..agents.base.state import AgentName
from ..agents.context_cache import ContextCacheManager, PromptCacheBackend
from ..agents.evidence import EvidenceExtractor
from ..agents.generation import FirstSentenceCallback, GenerationClient
from ..agents.prompts import SAFE_FALLBACK_TEXT
from ..agents.registry import AgentRegistry
from ..agents.router import Router
from ..agents.validator import ResponseValidator, ValidationOutcome
from ..core.config import Settings, get_settings
from ..core.errors import UpstreamUnavailableError
from ..db.store import TutorStore
from ..mastery.engine import MasteryDecision, MasteryEngine
from ..mastery.rules import MasteryRuleService
from ..mastery.tracker import MasteryTracker
from ..memory.enricher import ProfileEnricher
from ..memory.profile import ProfileManager
from ..memory.session import SessionMemory
from .background import BackgroundTaskRunner
from .graph import TurnGraph
from .nodes import TurnNodes, mastery_summary, unknown_lesson
from .state import TurnRequest, TurnResponse, TurnState

logger = logging.getLogger(__name__)


class TutorOrchestrator:
    def __init__(
        self,
        store: TutorStore,
        registry: AgentRegistry,
        context_cache: ContextCacheManager,
        router: Router,
        generator: GenerationClient,
        validator: ResponseValidator,
        rules: MasteryRuleService,
        mastery_engine: MasteryEngine,
        tracker: MasteryTracker,
        profiles: ProfileManager,
        session_memory: SessionMemory,
        evidence: EvidenceExtractor,
        enricher: ProfileEnricher,
        adaptation_logger: AdaptationLogger,
        background: Optional[BackgroundTaskRunner] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry
        self.context_cache = context_cache
        self.router = router
        self.generator = generator
        self.validator = validator
        self.rules = rules
        self.mastery_engine = mastery_engine
        self.tracker = tracker
        self.profiles = profiles
        self.session_memory = session_memory
        self.evidence = evidence
        self.enricher = enricher
        self.adaptation_logger = adaptation_logger
        self.background = background or BackgroundTaskRunner()
        self.settings = settings or get_settings()

        self.graph = TurnGraph(
            TurnNodes(
                store=store,
                router=router,
                generator=generator,
                validator=validator,
                mastery_engine=mastery_engine,
                tracker=tracker,
                profiles=profiles,
                session_memory=session_memory,
            )
        )
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _session_turn(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's lock; the lock is dropped once no turn holds or awaits it."""
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                del self._session_locks[session_id]

    # =========================================================================
    # Turns
    # =========================================================================

    async def handle_turn(
        self,
        request: TurnRequest,
        on_first_sentence: Optional[FirstSentenceCallback] = None,
    ) -> TurnResponse:
        """
        Answer one learner turn.

        Turns of the same session run one at a time, in arrival order.

        Args:
            request: The learner's turn
            on_first_sentence: Called once with the first spoken sentence
                as soon as it has been generated

        Returns:
            TurnResponse with ``lesson_complete`` taken from the mastery engine.
            Any other failure inside the turn yields the safe fallback
            response and skips the post-turn bookkeeping.

        Raises:
            UpstreamUnavailableError: the model stayed unreachable after retries
        """
        async with self._session_turn(request.session_id):
            try:
                state = await self.graph.invoke(request, on_first_sentence=on_first_sentence)
            except UpstreamUnavailableError:
                logger.error(f"Model unavailable for session {request.session_id}")
                raise
            except Exception as e:
                logger.error(f"Turn failed for session {request.session_id}: {e}", exc_info=True)
                return await self._fallback_response(request)

        self._schedule_post_turn(state)
        return state["response"]

    async def _fallback_response(self, request: TurnRequest) -> TurnResponse:
        try:
            mastery = await self.mastery_status(request.learner_id, request.lesson_id, request.session_id)
        except Exception as e:
            logger.error(f"Mastery unavailable for fallback response: {e}")
            return TurnResponse(
                audio_text=SAFE_FALLBACK_TEXT,
                display_text=SAFE_FALLBACK_TEXT,
                agent=AgentName.COORDINATOR,
            )
        return TurnResponse(
            audio_text=SAFE_FALLBACK_TEXT,
            display_text=SAFE_FALLBACK_TEXT,
            agent=AgentName.COORDINATOR,
            lesson_complete=mastery.has_mastered,
            mastery=mastery_summary(mastery),
        )

    def _schedule_post_turn(self, state: TurnState) -> None:
        request = state["request"]
        response = state["response"]
        outcome = state["outcome"]
        label = request.session_id

        self.background.spawn(self._learn_from_turn(state), name=f"evidence:{label}")
        self.background.spawn(
            self.session_memory.save_interaction(
                session_id=request.session_id,
                learner_id=request.learner_id,
                lesson_id=request.lesson_id,
                agent=response.agent.value,
                learner_text=request.message or None,
                response_text=response.display_text,
                has_svg=response.svg is not None,
            ),
            name=f"interaction:{label}",
        )
        self.background.spawn(
            self.adaptation_logger.log(
                learner_id=request.learner_id,
                lesson_id=request.lesson_id,
                session_id=request.session_id,
                agent=response.agent.value,
                mastery_level=state["snapshot"].score,
                directives=state["directives"],
                response_text=response.display_text,
                has_svg=response.svg is not None,
            ),
            name=f"adaptation:{label}",
        )
        if outcome.needs_audit:
            self.background.spawn(self._record_validation(state, outcome), name=f"validation:{label}")
        correction = state.get("pending_correction")
        if correction and not state["route"].direct_response:
            self.background.spawn(
                self.store.mark_correction_delivered(correction["id"]),
                name=f"correction:{label}",
            )

    async def _learn_from_turn(self, state: TurnState) -> None:
        request = state["request"]
        await self.evidence.extract_and_record(
            learner_id=request.learner_id,
            lesson_id=request.lesson_id,
            session_id=request.session_id,
            learner_text=request.message,
            lesson=state["lesson"],
            history=state["history"],
        )
        snapshot = await self.tracker.snapshot(request.learner_id, request.lesson_id)
        if snapshot.source in ("answers", "quality"):
            await self.store.save_lesson_progress(
                request.learner_id,
                request.lesson_id,
                mastery_level=snapshot.score,
                completed=state["mastery"].has_mastered,
            )
        await self.enricher.enrich_if_needed(request.learner_id, request.lesson_id, request.session_id)

    async def _record_validation(self, state: TurnState, outcome: ValidationOutcome) -> None:
        request = state["request"]
        await self.validator.record_outcome(
            outcome.state,
            outcome.draft,
            outcome.regenerations_used,
            outcome.verdict,
            session_id=request.session_id,
            learner_id=request.learner_id,
            lesson_id=request.lesson_id,
        )
        await self.validator.record_correction(outcome.state, outcome.draft, outcome.verdict, request.session_id)

    # =========================================================================
    # Sessions and mastery
    # =========================================================================

    async def start_session(self, session_id: str, learner_id: str, lesson_id: str) -> Dict[str, Any]:
        """Create the session row and warm the lesson's context caches."""
        session = await self.store.start_session(session_id, learner_id, lesson_id)
        self.background.spawn(self.context_cache.warmup(lesson_id), name=f"warmup:{lesson_id}")
        return session

    async def mastery_status(self, learner_id: str, lesson_id: str, session_id: Optional[str] = None) -> MasteryDecision:
        lesson = await self.store.get_lesson(lesson_id) or unknown_lesson(lesson_id)
        session = await self.store.get_session(session_id) if session_id else None
        session_start = session["started_at"] if session else None
        return await self.mastery_engine.determine_mastery(
            learner_id,
            lesson_id,
            lesson.get("subject", "general"),
            int(lesson.get("grade_level") or 0),
            session_start=session_start or self.mastery_engine.now(),
        )

    async def shutdown(self) -> None:
        await self.background.drain()


def build_orchestrator(
    store: Optional[TutorStore] = None,
    llm_factory: LLMFactory = get_llm_for_agent,
    settings: Optional[Settings] = None,
    cache_backend: Optional[PromptCacheBackend] = None,
) -> TutorOrchestrator:
    """Wire every component around one store and one model factory."""
    settings = settings or get_settings()
    store = store or TutorStore()

    registry = AgentRegistry(store, settings)
    context_cache = ContextCacheManager(store, registry, backend=cache_backend, settings=settings)
    rules = MasteryRuleService(store, settings)
    profiles = ProfileManager(store, settings)

    return TutorOrchestrator(
        store=store,
        registry=registry,
        context_cache=context_cache,
        router=Router(store, registry, llm_factory, settings),
        generator=GenerationClient(registry, context_cache, llm_factory),
        validator=ResponseValidator(store, registry, llm_factory, settings),
        rules=rules,
        mastery_engine=MasteryEngine(store, rules),
        tracker=MasteryTracker(store),
        profiles=profiles,
        session_memory=SessionMemory(store, settings),
        evidence=EvidenceExtractor(store, registry, llm_factory, settings),
        enricher=ProfileEnricher(store, profiles, settings),
        adaptation_logger=AdaptationLogger(store),
        settings=settings,
    )
