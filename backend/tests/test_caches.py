"""
Tests for the TTL caches: core cache, agent registry, context cache and
profile cache.
"""

import asyncio

import pytest

from adaptive_tutor.agents.base.state import AgentName, AgentRole
from adaptive_tutor.agents.context_cache import ContextCacheManager, PromptCacheKeyBackend
from adaptive_tutor.agents.registry import AgentRegistry, agent_for_subject, normalize_agent_name
from adaptive_tutor.core.cache import TTLCache
from adaptive_tutor.core.errors import CacheMiss, CacheStale
from adaptive_tutor.memory.profile import ProfileManager

from scripted_llm import LEARNER_ID, LESSON_ID


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingBackend(PromptCacheKeyBackend):
    """Prompt-cache backend that counts remote calls and can be slowed down."""

    def __init__(self, delay: float = 0.0):
        self.created = 0
        self.deleted = []
        self.delay = delay

    async def create(self, key, system_instruction, ttl):
        self.created += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        handle = await super().create(key, system_instruction, ttl)
        return f"{handle}#{self.created}"

    async def delete(self, handle):
        self.deleted.append(handle)


class TestTTLCache:
    def test_miss_fresh_stale(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)

        with pytest.raises(CacheMiss):
            cache.get("a")

        cache.put("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache

        clock.advance(10)
        with pytest.raises(CacheStale):
            cache.get("a")
        assert "a" not in cache

    def test_put_replaces_entry(self):
        cache = TTLCache(ttl=10)
        first = cache.put("a", 1)
        second = cache.put("a", 2)
        assert first is not second
        assert first.value == 1
        assert cache.get("a") == 2

    def test_invalidate(self):
        cache = TTLCache(ttl=10)
        cache.put("a", 1)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False

    def test_put_after_invalidate_is_dropped(self):
        cache = TTLCache(ttl=10)
        generation = cache.generation("a")

        cache.invalidate("a")

        assert cache.put("a", "before the write", generation=generation) is None
        with pytest.raises(CacheMiss):
            cache.get("a")

        assert cache.put("a", "after the write", generation=cache.generation("a")) is not None
        assert cache.get("a") == "after the write"


class TestAgentNames:
    @pytest.mark.parametrize("raw,expected", [
        ("math_specialist", AgentName.MATH_SPECIALIST),
        ("Math Teacher", AgentName.MATH_SPECIALIST),
        ("science-agent", AgentName.SCIENCE_SPECIALIST),
        ("ENGLISH_SPECIALIST", AgentName.ENGLISH_SPECIALIST),
        ("self", AgentName.COORDINATOR),
        ("History", AgentName.HISTORY_SPECIALIST),
        ('"assessor"', AgentName.ASSESSOR),
    ])
    def test_variants_resolve(self, raw, expected):
        assert normalize_agent_name(raw) == expected

    @pytest.mark.parametrize("raw", ["", None, "geography wizard", "music_specialist"])
    def test_unknown_names(self, raw):
        assert normalize_agent_name(raw) is None

    def test_subject_to_specialist(self):
        assert agent_for_subject("Math") == AgentName.MATH_SPECIALIST
        assert agent_for_subject("assessment") is None
        assert agent_for_subject(None) is None


@pytest.mark.asyncio
class TestAgentRegistry:
    async def test_defaults_without_store_rows(self, store, test_settings):
        registry = AgentRegistry(store, test_settings)

        agents = await registry.get_all()

        assert set(agents) == set(AgentName)
        specialists = await registry.specialists()
        assert all(spec.role == AgentRole.SPECIALIST for spec in specialists)
        assert AgentName.VALIDATOR not in {spec.name for spec in await registry.routable()}

    async def test_ttl_and_invalidate(self, store, test_settings):
        clock = FakeClock()
        registry = AgentRegistry(store, test_settings, clock=clock)
        first = await registry.get_all()

        await store.save_agent_definition("math_specialist", {
            "role": "specialist",
            "display_name": "Fractions Coach",
            "system_prompt": "You coach fractions.",
        })

        # Cached generation is still served inside the TTL
        assert (await registry.get_all()) is first
        assert (await registry.get(AgentName.MATH_SPECIALIST)).display_name != "Fractions Coach"

        clock.advance(test_settings.AGENT_REGISTRY_TTL_SECONDS)
        assert (await registry.get(AgentName.MATH_SPECIALIST)).display_name == "Fractions Coach"

        await store.save_agent_definition("math_specialist", {"display_name": "Ratio Coach"})
        registry.invalidate()
        assert (await registry.get(AgentName.MATH_SPECIALIST)).display_name == "Ratio Coach"

    async def test_snapshot_is_read_only(self, store, test_settings):
        agents = await AgentRegistry(store, test_settings).get_all()
        with pytest.raises(TypeError):
            agents[AgentName.MATH_SPECIALIST] = None

    async def test_seed_defaults_once(self, store, test_settings):
        registry = AgentRegistry(store, test_settings)
        seeded = await registry.seed_defaults()

        assert seeded == len(AgentName)
        assert await registry.seed_defaults() == 0
        assert len(await store.list_agent_definitions()) == seeded


@pytest.mark.asyncio
class TestContextCache:
    async def test_concurrent_misses_build_once(self, store, lesson, test_settings):
        backend = CountingBackend(delay=0.05)
        manager = ContextCacheManager(store, AgentRegistry(store, test_settings), backend, test_settings)

        contexts = await asyncio.gather(*(
            manager.get_context(AgentName.MATH_SPECIALIST, LESSON_ID) for _ in range(5)
        ))

        assert backend.created == 1
        assert len({context.handle for context in contexts}) == 1
        assert "Adding fractions" in contexts[0].system_instruction
        assert "Equivalent fractions" in contexts[0].system_instruction

    async def test_renewed_after_renew_window(self, store, lesson, test_settings):
        clock = FakeClock()
        backend = CountingBackend()
        manager = ContextCacheManager(store, AgentRegistry(store, test_settings), backend, test_settings, clock=clock)

        first = await manager.get_context(AgentName.MATH_SPECIALIST, LESSON_ID)
        clock.advance(test_settings.CONTEXT_CACHE_RENEW_AFTER_SECONDS - 1)
        assert (await manager.get_context(AgentName.MATH_SPECIALIST, LESSON_ID)) is first

        clock.advance(2)
        renewed = await manager.get_context(AgentName.MATH_SPECIALIST, LESSON_ID)

        assert renewed.handle != first.handle
        assert backend.created == 2
        assert backend.deleted == [first.handle]

    async def test_invalidate_by_lesson(self, store, lesson, test_settings):
        backend = CountingBackend()
        manager = ContextCacheManager(store, AgentRegistry(store, test_settings), backend, test_settings)
        await manager.get_context(AgentName.MATH_SPECIALIST, LESSON_ID)
        await manager.get_context(AgentName.COORDINATOR, LESSON_ID)
        await manager.get_context(AgentName.MATH_SPECIALIST, "other-lesson")

        removed = await manager.invalidate(lesson_id=LESSON_ID)

        assert removed == 2
        assert len(manager) == 1
        assert len(backend.deleted) == 2

    async def test_warmup_builds_routable_agents(self, store, lesson, test_settings):
        manager = ContextCacheManager(store, AgentRegistry(store, test_settings), CountingBackend(), test_settings)

        built = await manager.warmup(LESSON_ID)

        routable = await manager.registry.routable()
        assert built == len(routable) + 1
        assert len(manager) == built


@pytest.mark.asyncio
class TestProfileCache:
    async def test_cached_until_write(self, store, test_settings):
        profiles = ProfileManager(store, test_settings)
        await store.save_profile(LEARNER_ID, {"learning_style": "visual"})

        cached = await profiles.get_profile(LEARNER_ID)
        await store.save_profile(LEARNER_ID, {"learning_style": "auditory"})
        assert (await profiles.get_profile(LEARNER_ID)).learning_style == cached.learning_style == "visual"

        await profiles.update_profile(LEARNER_ID, {"learning_style": "kinesthetic", "unknown": 1})
        assert (await profiles.get_profile(LEARNER_ID)).learning_style == "kinesthetic"

    async def test_add_topics_is_a_union(self, store, test_settings):
        profiles = ProfileManager(store, test_settings)

        assert await profiles.add_topics(LEARNER_ID, struggles=["fractions"]) is True
        assert await profiles.add_topics(LEARNER_ID, struggles=["fractions"]) is False
        assert await profiles.add_topics(LEARNER_ID, strengths=["counting"], struggles=["decimals"]) is True

        profile = await profiles.get_profile(LEARNER_ID)
        assert profile.struggles == ["fractions", "decimals"]
        assert profile.strengths == ["counting"]

    async def test_read_racing_a_write_is_not_cached(self, store, test_settings):
        paused = PausedProfileStore(store)
        profiles = ProfileManager(paused, test_settings)

        read = asyncio.create_task(profiles.get_profile(LEARNER_ID))
        await paused.reading.wait()
        assert await profiles.add_topics(LEARNER_ID, struggles=["fractions"]) is True
        paused.release.set()

        assert (await read).struggles == []
        assert (await profiles.get_profile(LEARNER_ID)).struggles == ["fractions"]


class PausedProfileStore:
    """Store wrapper whose first profile read waits until released."""

    def __init__(self, store):
        self.store = store
        self.reading = asyncio.Event()
        self.release = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self.store, name)

    async def get_profile(self, learner_id):
        row = await self.store.get_profile(learner_id)
        if not self.reading.is_set():
            self.reading.set()
            await self.release.wait()
        return row
