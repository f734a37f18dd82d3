import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from discovery_service.application.analytics import AnalyticsSink
from discovery_service.application.dispatcher import QueryDispatcher
from discovery_service.application.feed import FeedComposer
from discovery_service.application.fetchers import build_fetchers
from discovery_service.application.suggestions import SuggestionAggregator
from discovery_service.config import Settings
from discovery_service.dependencies import build_services
from discovery_service.domain.scoring import RelevanceScorer
from discovery_service.infrastructure.cache import MemoryResultCache
from discovery_service.infrastructure.memory import InMemorySearchRepository
from discovery_service.main import app

from factories import FixedClock, ManualTimer, ScriptedRepository


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def scorer(clock):
    return RelevanceScorer(clock=clock)


@pytest_asyncio.fixture
async def store():
    return InMemorySearchRepository()


@pytest_asyncio.fixture
async def repository(store):
    return ScriptedRepository(store)


@pytest_asyncio.fixture
async def cache(timer):
    return MemoryResultCache(ttl_seconds=3600, max_entries=100, timer=timer)


@pytest_asyncio.fixture
async def suggestions(clock):
    return SuggestionAggregator(clock=clock)


@pytest_asyncio.fixture
async def analytics(repository):
    sink = AnalyticsSink(repository=repository)
    try:
        yield sink
    finally:
        await sink.drain()


@pytest_asyncio.fixture
async def dispatcher(repository, scorer, cache, suggestions, analytics):
    return QueryDispatcher(
        build_fetchers(repository, page_size=200),
        scorer,
        cache,
        suggestions,
        analytics,
        fetch_timeout=0.5,
        request_deadline=1.0,
    )


@pytest_asyncio.fixture
async def composer(repository, scorer, suggestions, analytics):
    return FeedComposer(
        repository,
        scorer,
        suggestions,
        analytics,
        stream_timeout=0.5,
        max_candidates=100,
    )


@pytest.fixture
def test_settings():
    return Settings(
        DATA_BACKEND="memory",
        CACHE_BACKEND="memory",
        REDIS_ENABLED=False,
        KAFKA_ENABLED=False,
    )


@pytest_asyncio.fixture
async def services(test_settings, repository, cache, scorer, suggestions):
    services = build_services(
        test_settings,
        repository=repository,
        cache=cache,
        scorer=scorer,
        suggestions=suggestions,
    )
    app.state.services = services
    try:
        yield services
    finally:
        await services.analytics.drain()
        app.state.services = None


@pytest_asyncio.fixture
async def api_client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
