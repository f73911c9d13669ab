"""
Pytest configuration and fixtures for the tutoring core.

Model calls go to scripted chat models and storage to a throwaway SQLite
database per test.
"""

import sys
from pathlib import Path
from typing import Any, AsyncGenerator, Dict

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptive_tutor.core.config import Settings
from adaptive_tutor.db.base import create_tables
from adaptive_tutor.db.store import TutorStore
from adaptive_tutor.main import create_app
from adaptive_tutor.orchestrator.service import TutorOrchestrator, build_orchestrator

from scripted_llm import LESSON_ID, ScriptedLLMFactory


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real backoff waits in tests."""
    monkeypatch.setenv("LLM_RETRY_INITIAL_DELAY", "0")
    monkeypatch.setenv("LLM_RETRY_MAX_DELAY", "0")
    monkeypatch.setenv("LLM_RETRY_MAX_RETRIES", "2")


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        TUTOR_DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'tutor_test.db'}",
        DEBUG=False,
        LOG_FILE="",
        LLM_RETRY_INITIAL_DELAY=0,
        LLM_RETRY_MAX_DELAY=0,
        VALIDATOR_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
async def test_engine(test_settings):
    """Create the test database schema."""
    engine = create_async_engine(test_settings.TUTOR_DB_URL)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(test_engine) -> TutorStore:
    return TutorStore(async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False))


@pytest.fixture
async def lesson(store) -> Dict[str, Any]:
    return await store.save_lesson(LESSON_ID, {
        "title": "Adding fractions",
        "subject": "math",
        "grade_level": 5,
        "learning_objective": "Add fractions with unlike denominators",
        "curriculum": {"steps": [
            {"title": "Equivalent fractions", "description": "Rewrite with a common denominator"},
            {"title": "Add numerators"},
        ]},
    })


@pytest.fixture
def llm_factory() -> ScriptedLLMFactory:
    return ScriptedLLMFactory()


@pytest.fixture
def orchestrator(store, llm_factory, test_settings) -> TutorOrchestrator:
    return build_orchestrator(store=store, llm_factory=llm_factory, settings=test_settings)


@pytest.fixture
async def async_client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client around an app bound to the test orchestrator."""
    app = create_app(orchestrator=orchestrator)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
