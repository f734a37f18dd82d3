"""
Service wiring and FastAPI dependencies
"""
from dataclasses import dataclass
from typing import Optional
from fastapi import Request
import logging

from .application.analytics import AnalyticsSink
from .application.dispatcher import QueryDispatcher
from .application.feed import FeedComposer
from .application.fetchers import build_fetchers
from .application.suggestions import SuggestionAggregator
from .config import Settings
from .domain.repositories import ISearchRepository
from .domain.scoring import RelevanceScorer
from .infrastructure.cache import MemoryResultCache, RedisResultCache, ResultCache
from .infrastructure.database import Database, PostgresSearchRepository
from .infrastructure.kafka_producer import KafkaProducerManager
from .infrastructure.memory import InMemorySearchRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide components shared by every request"""
    repository: ISearchRepository
    cache: ResultCache
    suggestions: SuggestionAggregator
    analytics: AnalyticsSink
    dispatcher: QueryDispatcher
    feed: FeedComposer
    database: Optional[Database] = None
    kafka: Optional[KafkaProducerManager] = None

    async def start(self):
        if self.database is not None:
            await self.database.connect()
        await self.cache.start()
        if self.kafka is not None:
            await self.kafka.start()

    async def stop(self):
        await self.analytics.drain()
        if self.kafka is not None:
            await self.kafka.stop()
        await self.cache.stop()
        if self.database is not None:
            await self.database.disconnect()


def build_cache(config: Settings) -> ResultCache:
    if config.CACHE_BACKEND == "redis" and config.REDIS_ENABLED:
        return RedisResultCache(ttl_seconds=config.SEARCH_CACHE_TTL)
    if config.CACHE_BACKEND == "redis":
        logger.warning("Redis cache requested but REDIS_ENABLED is false; using memory cache")
    return MemoryResultCache(
        ttl_seconds=config.SEARCH_CACHE_TTL,
        max_entries=config.CACHE_MAX_ENTRIES,
        sweep_interval=config.CACHE_SWEEP_INTERVAL,
    )


def build_services(
    config: Settings,
    repository: Optional[ISearchRepository] = None,
    cache: Optional[ResultCache] = None,
    scorer: Optional[RelevanceScorer] = None,
    suggestions: Optional[SuggestionAggregator] = None,
) -> Services:
    """Assemble the search pipeline; explicit arguments override configuration"""
    database = None
    if repository is None:
        if config.DATA_BACKEND == "memory":
            repository = InMemorySearchRepository()
        else:
            database = Database(config.DATABASE_URL)
            repository = PostgresSearchRepository(database)

    kafka = KafkaProducerManager() if config.KAFKA_ENABLED else None
    cache = cache or build_cache(config)
    scorer = scorer or RelevanceScorer()
    suggestions = suggestions or SuggestionAggregator(
        clock=scorer.now, retention_hours=config.QUERY_LOG_RETENTION_HOURS
    )
    analytics = AnalyticsSink(repository=repository, kafka=kafka)

    dispatcher = QueryDispatcher(
        build_fetchers(repository, config.CANDIDATE_PAGE_SIZE, config.DEFAULT_RADIUS_KM),
        scorer,
        cache,
        suggestions,
        analytics,
        min_query_length=config.MIN_QUERY_LENGTH,
        max_query_length=config.MAX_QUERY_LENGTH,
        fetch_timeout=config.FETCH_TIMEOUT_SECONDS,
        request_deadline=config.REQUEST_DEADLINE_SECONDS,
        default_radius_km=config.DEFAULT_RADIUS_KM,
    )
    feed = FeedComposer(
        repository,
        scorer,
        suggestions,
        analytics,
        stream_timeout=config.FEED_STREAM_TIMEOUT_SECONDS,
        max_candidates=config.FEED_MAX_CANDIDATES_PER_STREAM,
        trending_window_hours=config.TRENDING_WINDOW_HOURS,
    )
    return Services(
        repository=repository,
        cache=cache,
        suggestions=suggestions,
        analytics=analytics,
        dispatcher=dispatcher,
        feed=feed,
        database=database,
        kafka=kafka,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatcher(request: Request) -> QueryDispatcher:
    """Dependency for getting the query dispatcher"""
    return get_services(request).dispatcher


def get_feed_composer(request: Request) -> FeedComposer:
    """Dependency for getting the feed composer"""
    return get_services(request).feed


def get_suggestions(request: Request) -> SuggestionAggregator:
    """Dependency for getting the suggestion aggregator"""
    return get_services(request).suggestions


def get_result_cache(request: Request) -> ResultCache:
    """Dependency for getting the result cache"""
    return get_services(request).cache
