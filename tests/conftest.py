"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import AsyncGenerator, Optional

_TEST_DIR = tempfile.mkdtemp(prefix="langloop-tests-")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"

# Must be set before langloop reads its settings
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BABEL_WEBHOOK_SECRET"] = "test-babel-secret"
os.environ["PROLIFIC_WEBHOOK_SECRET"] = "test-prolific-secret"
os.environ["WEBHOOK_URL"] = "http://receiver.test/v1/webhooks"
os.environ["PROCESSING_MODE"] = "webhook"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakeredis import FakeAsyncRedis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from langloop.config import Settings, get_settings  # noqa: E402
from langloop.db import models  # noqa: E402, F401
from langloop.db.models import DeliveryOutcome, utcnow  # noqa: E402
from langloop.db.session import Base  # noqa: E402
from langloop.schemas.domain import DeliveryAttempt, EditorialGuidelines  # noqa: E402
from langloop.schemas.events import EventEnvelope  # noqa: E402
from langloop.services.capabilities import ScoreResult  # noqa: E402
from langloop.services.container import Services, build_services  # noqa: E402
from langloop.services.delivery import DeliveryResult  # noqa: E402
from langloop.services.prolific import DemoMarketplace  # noqa: E402
from langloop.services.task_store import TaskStore  # noqa: E402


class FakeTranslator:
    """Prefixes the text with the language; fails for configured languages."""

    def __init__(self, failing: Optional[set[str]] = None):
        self.failing = failing or set()
        self.calls: list[str] = []

    async def translate(self, text: str, guidelines: EditorialGuidelines, language: str) -> str:
        self.calls.append(language)
        if language in self.failing:
            raise RuntimeError(f"translation provider unavailable for {language}")
        return f"[{language}] {text}"


class FakeScorer:
    """
    Returns raw 1-100 scores per language.

    ``initial`` is used for the first machine verification, ``post_human``
    once human feedback is part of the context.
    """

    def __init__(self, initial: Optional[dict[str, float]] = None, post_human: Optional[dict[str, float]] = None):
        self.initial = initial or {}
        self.post_human = post_human or {}
        self.calls: list[tuple[str, str]] = []

    async def score(self, text: str, guidelines: EditorialGuidelines, context: Optional[str] = None) -> ScoreResult:
        language = text[1:text.index("]")]
        if context and "Human reviewer feedback" in context:
            self.calls.append((language, "post_human"))
            return ScoreResult(score=self.post_human.get(language, 90.0), findings=["Reads naturally"])
        self.calls.append((language, "initial"))
        return ScoreResult(score=self.initial.get(language, 90.0), findings=["Tone matches"])


class LoopbackEmitter:
    """Records emitted events and feeds them straight back through the router."""

    def __init__(self, store: TaskStore):
        self.store = store
        self.router = None
        self.events: list[EventEnvelope] = []

    def of_type(self, event_type: str) -> list[EventEnvelope]:
        return [e for e in self.events if e.event == event_type]

    async def emit(self, event: EventEnvelope) -> DeliveryResult:
        self.events.append(event)
        now = utcnow()
        await self.store.record_delivery(
            event.task_id,
            DeliveryAttempt(
                event_type=event.event,
                destination="loopback",
                attempt=1,
                outcome=DeliveryOutcome.SUCCESS,
                status_code=200,
                created_at=now,
                last_attempt_at=now,
            ),
        )
        if self.router is not None:
            await self.router.dispatch(event)
        return DeliveryResult(event.event, delivered=True, attempts=1, status_code=200)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def translator() -> FakeTranslator:
    return FakeTranslator()


@pytest.fixture
def scorer() -> FakeScorer:
    return FakeScorer(initial={"es": 90, "fr": 60, "de": 60}, post_human={"fr": 88, "de": 80})


@pytest.fixture
def make_services(session_factory, redis, translator, scorer, settings):
    """Factory building a service graph wired to the loopback emitter."""

    def _make(**overrides) -> Services:
        effective = settings.model_copy(update=overrides) if overrides else settings
        emitter = LoopbackEmitter(TaskStore(session_factory))
        services = build_services(
            settings=effective,
            session_factory=session_factory,
            redis=redis,
            emitter=emitter,
            translator=translator,
            scorer=scorer,
            marketplace=DemoMarketplace(),
        )
        emitter.router = services.router
        return services

    return _make


@pytest.fixture
def services(make_services) -> Services:
    return make_services()


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    from langloop.main import app

    app.state.services = services

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
