"""
Query dispatcher - validation, cache, fan-out, ranking and pagination
"""
import asyncio
import math
import time
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

from ..domain.models import (
    ENTITY_ORDER,
    EntityType,
    ScoredResult,
    SearchQuery,
    SearchResult,
    ensure_utc,
)
from ..domain.repositories import SearchLogEntry
from ..domain.scoring import RelevanceScorer, sort_results
from ..exceptions import CacheError, FetchError, TotalFailureError, ValidationError
from ..infrastructure.cache import ResultCache, make_cache_key
from .analytics import AnalyticsSink
from .fetchers import CandidateFetcher
from .suggestions import SuggestionAggregator

logger = logging.getLogger(__name__)


class QueryDispatcher:
    """Entry point for multi-entity search"""

    def __init__(
        self,
        fetchers: Dict[EntityType, CandidateFetcher],
        scorer: RelevanceScorer,
        cache: ResultCache,
        suggestions: SuggestionAggregator,
        analytics: Optional[AnalyticsSink] = None,
        *,
        min_query_length: int = 2,
        max_query_length: int = 120,
        fetch_timeout: float = 3.0,
        request_deadline: float = 8.0,
        default_radius_km: float = 50.0,
    ):
        self.fetchers = fetchers
        self.scorer = scorer
        self.cache = cache
        self.suggestions = suggestions
        self.analytics = analytics
        self.min_query_length = min_query_length
        self.max_query_length = max_query_length
        self.fetch_timeout = fetch_timeout
        self.request_deadline = request_deadline
        self.default_radius_km = default_radius_km

    def validate(self, query: SearchQuery):
        """Reject malformed queries before any data-store access"""
        text = query.text.strip() if query.text else ""
        if len(text) < self.min_query_length:
            raise ValidationError(
                f"Search query must be at least {self.min_query_length} characters"
            )
        if len(text) > self.max_query_length:
            raise ValidationError(
                f"Search query must be at most {self.max_query_length} characters"
            )
        if not query.entity_types:
            raise ValidationError("At least one entity type is required")
        if query.pagination.limit < 1 or query.pagination.offset < 0:
            raise ValidationError("Invalid pagination")

        filters = query.filters
        if filters.radius_km is not None:
            if not math.isfinite(filters.radius_km) or filters.radius_km <= 0:
                raise ValidationError("radius_km must be a positive number")
        if filters.date_from and filters.date_to:
            if ensure_utc(filters.date_from) > ensure_utc(filters.date_to):
                raise ValidationError("date_from must not be after date_to")
        price = filters.price_range
        if price and any(v is not None and not math.isfinite(v) for v in (price.min, price.max)):
            raise ValidationError("price range must be finite")
        if price and price.min is not None and price.max is not None and price.min > price.max:
            raise ValidationError("price_min must not exceed price_max")

    async def search(self, query: SearchQuery, user_id: Optional[str] = None) -> SearchResult:
        """
        Run a search end to end

        Raises:
            ValidationError: query rejected, nothing fetched
            TotalFailureError: every entity-type branch failed
        """
        self.validate(query)
        started = time.perf_counter()
        key = make_cache_key(query)

        ranked = await self._cache_get(key)
        cached = ranked is not None
        failed: Tuple[EntityType, ...] = ()

        if ranked is None:
            ranked, failed = await self._fan_out(query)
            if len(failed) == len(query.entity_types):
                raise TotalFailureError(failed_branches=[t.value for t in failed])
            if not failed:
                await self._cache_set(key, ranked)
        else:
            logger.debug(f"Cache hit for '{query.normalized_text}'")

        await self.suggestions.record(query.text)

        offset, limit = query.pagination.offset, query.pagination.limit
        result = SearchResult(
            query=query,
            items=ranked[offset:offset + limit],
            total=len(ranked),
            facets=compute_facets(ranked),
            cached=cached,
            failed_types=failed,
        )

        if self.analytics is not None:
            self.analytics.submit(SearchLogEntry(
                kind="search",
                query=query.normalized_text,
                entity_types=tuple(t.value for t in query.ordered_types()),
                filters=query.filters.normalized(),
                results_count=result.total,
                duration_ms=int((time.perf_counter() - started) * 1000),
                cached=cached,
                user_id=user_id,
                created_at=self.scorer.now(),
            ))
        return result

    async def _cache_get(self, key: str) -> Optional[List[ScoredResult]]:
        try:
            return await self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

    async def _cache_set(self, key: str, ranked: List[ScoredResult]):
        try:
            await self.cache.set(key, ranked)
        except CacheError as e:
            logger.warning(f"Cache write failed: {e}")

    async def _fan_out(
        self, query: SearchQuery
    ) -> Tuple[List[ScoredResult], Tuple[EntityType, ...]]:
        """Fetch and score every requested type concurrently; failures stay in their branch"""
        now = self.scorer.now()
        tasks = {
            asyncio.create_task(self._run_branch(entity_type, query, now)): entity_type
            for entity_type in query.ordered_types()
        }
        done, pending = await asyncio.wait(tasks, timeout=self.request_deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        by_type: Dict[EntityType, List[ScoredResult]] = {}
        failed = []
        for task, entity_type in tasks.items():
            if task in pending:
                logger.warning(f"Search branch {entity_type.value} missed the request deadline")
                failed.append(entity_type)
                continue
            error = task.exception()
            if error is not None:
                logger.warning(f"Search branch {entity_type.value} failed: {error}")
                failed.append(entity_type)
                continue
            by_type[entity_type] = task.result()

        merged = [
            result
            for entity_type in ENTITY_ORDER
            for result in by_type.get(entity_type, [])
        ]
        ranked = sort_results(merged, query.sort_by, query.filters.has_geo)
        ordered_failed = tuple(t for t in ENTITY_ORDER if t in failed)
        return ranked, ordered_failed

    async def _run_branch(
        self, entity_type: EntityType, query: SearchQuery, now: datetime
    ) -> List[ScoredResult]:
        fetcher = self.fetchers.get(entity_type)
        if fetcher is None:
            raise FetchError(f"No fetcher for {entity_type.value}", branch=entity_type.value)
        try:
            candidates = await asyncio.wait_for(fetcher.fetch(query, now), self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(
                f"Timed out after {self.fetch_timeout}s", branch=entity_type.value
            ) from e

        scored = self.scorer.score_all(candidates, query, now)
        if query.filters.has_geo:
            radius = query.filters.radius_km or self.default_radius_km
            scored = [
                result for result in scored
                if result.distance_km is not None and result.distance_km <= radius
            ]
        return scored


def compute_facets(results: List[ScoredResult]) -> Dict[str, Dict[str, int]]:
    """Counts per entity type and per event category over the full ranked set"""
    types = Counter(result.entity_type.plural for result in results)
    categories = Counter(
        result.candidate.category
        for result in results
        if result.entity_type == EntityType.EVENT and result.candidate.category
    )
    return {
        "types": dict(types),
        "categories": dict(categories.most_common()),
    }
