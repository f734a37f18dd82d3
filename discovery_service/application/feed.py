"""
Discovery feed composer

Merges the trending, nearby, recommended and following event streams into
one deduplicated, ranked feed and derives discovery insights from it.
"""
import asyncio
import time
from collections import Counter, OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from ..domain.geo import bounding_box, distance_between
from ..domain.models import (
    CategoryCount,
    DiscoveryInsights,
    EntityType,
    EventCandidate,
    FeedItem,
    FeedRequest,
    FeedResult,
    FeedStream,
    ensure_utc,
)
from ..domain.repositories import CandidateFilter, ISearchRepository, SearchLogEntry
from ..domain.scoring import (
    FOLLOWING_BONUS,
    TRENDING_QUERY_BONUS,
    TRENDING_WEIGHT,
    RelevanceScorer,
    matches_any_query,
    personalization_boost,
    proximity_bonus,
    temporal_bonus,
    trending_score,
)
from ..exceptions import FetchError
from .analytics import AnalyticsSink
from .suggestions import SuggestionAggregator

logger = logging.getLogger(__name__)

POPULAR_CATEGORIES_LIMIT = 8
TRENDING_TOPICS_LIMIT = 10

STREAM_ORDER: Tuple[FeedStream, ...] = (
    FeedStream.TRENDING,
    FeedStream.NEARBY,
    FeedStream.RECOMMENDED,
    FeedStream.FOLLOWING,
)


def merge_streams(streams: Dict[FeedStream, List[FeedItem]]) -> List[FeedItem]:
    """Deduplicate by event id keeping the highest score and its stream, then rank"""
    best: Dict[str, FeedItem] = {}
    for stream in STREAM_ORDER:
        for item in streams.get(stream, []):
            current = best.get(item.candidate.id)
            if current is None or item.relevance_score > current.relevance_score:
                best[item.candidate.id] = item
    return sorted(best.values(), key=_feed_sort_key)


def _feed_sort_key(item: FeedItem):
    return (
        -item.relevance_score,
        ensure_utc(item.candidate.start_at).timestamp(),
        item.candidate.id,
    )


def interleave(items: Sequence[FeedItem]) -> List[FeedItem]:
    """Round-robin across source streams, keeping score order within each stream"""
    queues: "OrderedDict[FeedStream, List[FeedItem]]" = OrderedDict(
        (stream, []) for stream in STREAM_ORDER
    )
    for item in items:
        queues[item.source_stream].append(item)

    result: List[FeedItem] = []
    position = 0
    while len(result) < len(items):
        for queue in queues.values():
            if position < len(queue):
                result.append(queue[position])
        position += 1
    return result


def build_insights(
    items: Sequence[FeedItem],
    trending_queries: Sequence[str],
) -> DiscoveryInsights:
    categories = Counter(item.candidate.category for item in items if item.candidate.category)
    popular = [
        CategoryCount(name=name, count=count)
        for name, count in categories.most_common(POPULAR_CATEGORIES_LIMIT)
    ]

    topics: List[str] = []
    seen = set()
    tags = Counter(
        tag.casefold() for item in items for tag in item.candidate.tags if tag
    )
    for topic in list(trending_queries) + [tag for tag, _ in tags.most_common()]:
        if topic in seen:
            continue
        seen.add(topic)
        topics.append(topic)
        if len(topics) >= TRENDING_TOPICS_LIMIT:
            break
    return DiscoveryInsights(popular_categories=popular, trending_topics=topics)


class FeedComposer:
    """Personalized discovery feed over upcoming events"""

    def __init__(
        self,
        repository: ISearchRepository,
        scorer: RelevanceScorer,
        suggestions: SuggestionAggregator,
        analytics: Optional[AnalyticsSink] = None,
        *,
        stream_timeout: float = 3.0,
        max_candidates: int = 100,
        trending_window_hours: int = 24,
    ):
        self.repository = repository
        self.scorer = scorer
        self.suggestions = suggestions
        self.analytics = analytics
        self.stream_timeout = stream_timeout
        self.max_candidates = max_candidates
        self.trending_window_hours = trending_window_hours

    async def compose(self, request: FeedRequest) -> FeedResult:
        started = time.perf_counter()
        now = self.scorer.now()
        trending_queries = [
            t.query for t in await self.suggestions.trending(
                self.trending_window_hours, TRENDING_TOPICS_LIMIT
            )
        ]

        runnable = [
            stream for stream in request.enabled_streams()
            if self._applicable(stream, request)
        ]
        outcomes = await asyncio.gather(
            *(self._run_stream(stream, request, now, trending_queries) for stream in runnable),
            return_exceptions=True,
        )

        streams: Dict[FeedStream, List[FeedItem]] = {}
        failed: List[FeedStream] = []
        for stream, outcome in zip(runnable, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Feed stream {stream.value} failed: {outcome}")
                failed.append(stream)
            else:
                streams[stream] = outcome

        if runnable and len(failed) == len(runnable):
            logger.error("All feed streams failed")
            return FeedResult(
                items=[],
                total=0,
                has_more=False,
                available=False,
                failed_streams=tuple(failed),
            )

        merged = merge_streams(streams)
        if request.interleave:
            merged = interleave(merged)

        offset, limit = request.pagination.offset, request.pagination.limit
        page = merged[offset:offset + limit]
        result = FeedResult(
            items=page,
            total=len(merged),
            has_more=offset + len(page) < len(merged),
            stream_counts={stream.value: len(items) for stream, items in streams.items()},
            failed_streams=tuple(failed),
            insights=build_insights(merged, trending_queries),
        )

        if self.analytics is not None:
            self.analytics.submit(SearchLogEntry(
                kind="discovery",
                query=None,
                entity_types=(EntityType.EVENT.value,),
                filters={
                    "streams": [stream.value for stream in runnable],
                    "location": request.location,
                    "categories": list(request.categories),
                },
                results_count=result.total,
                duration_ms=int((time.perf_counter() - started) * 1000),
                user_id=request.user_id,
                created_at=now,
            ))
        return result

    def _applicable(self, stream: FeedStream, request: FeedRequest) -> bool:
        """Streams that have nothing to work with are skipped, not failed"""
        if stream == FeedStream.NEARBY:
            return request.coordinates is not None or bool(request.location)
        if stream in (FeedStream.RECOMMENDED, FeedStream.FOLLOWING):
            return request.user_id is not None
        return True

    async def _run_stream(
        self,
        stream: FeedStream,
        request: FeedRequest,
        now: datetime,
        trending_queries: List[str],
    ) -> List[FeedItem]:
        handlers = {
            FeedStream.TRENDING: self._trending,
            FeedStream.NEARBY: self._nearby,
            FeedStream.RECOMMENDED: self._recommended,
            FeedStream.FOLLOWING: self._following,
        }
        try:
            return await asyncio.wait_for(
                handlers[stream](request, now, trending_queries), self.stream_timeout
            )
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out after {self.stream_timeout}s", branch=stream.value) from e

    async def _events(self, request: FeedRequest, now: datetime, **criteria) -> List[EventCandidate]:
        candidate_filter = CandidateFilter(
            categories=request.categories,
            starts_after=now,
            limit=self.max_candidates,
            **criteria,
        )
        return await self.repository.fetch_candidates(EntityType.EVENT, candidate_filter)

    def _item(
        self,
        event: EventCandidate,
        stream: FeedStream,
        score: float,
        request: FeedRequest,
    ) -> FeedItem:
        distance = None
        if request.coordinates is not None and event.coordinates is not None:
            distance = distance_between(request.coordinates, event.coordinates)
        return FeedItem(
            candidate=event,
            source_stream=stream,
            relevance_score=max(0.0, score),
            distance_km=distance,
        )

    async def _trending(self, request, now, trending_queries) -> List[FeedItem]:
        items = []
        for event in await self._events(request, now):
            score = temporal_bonus(event, now)
            score += TRENDING_WEIGHT * trending_score(event, now, self.trending_window_hours)
            if trending_queries and matches_any_query(event, trending_queries):
                score += TRENDING_QUERY_BONUS
            items.append(self._item(event, FeedStream.TRENDING, score, request))
        return items

    async def _nearby(self, request, now, trending_queries) -> List[FeedItem]:
        if request.coordinates is None:
            events = await self._events(request, now, city=request.location.strip())
            return [
                self._item(event, FeedStream.NEARBY, temporal_bonus(event, now), request)
                for event in events
            ]

        box = bounding_box(request.coordinates, request.radius_km)
        items = []
        for event in await self._events(request, now, bounding_box=box):
            item = self._item(event, FeedStream.NEARBY, 0.0, request)
            if item.distance_km is None or item.distance_km > request.radius_km:
                continue
            score = temporal_bonus(event, now) + proximity_bonus(item.distance_km, request.radius_km)
            items.append(self._item(event, FeedStream.NEARBY, score, request))
        return items

    async def _recommended(self, request, now, trending_queries) -> List[FeedItem]:
        profile = await self.repository.fetch_user_profile(request.user_id)
        items = []
        for event in await self._events(request, now):
            score = temporal_bonus(event, now) + personalization_boost(event, profile)
            items.append(self._item(event, FeedStream.RECOMMENDED, score, request))
        return items

    async def _following(self, request, now, trending_queries) -> List[FeedItem]:
        organization_ids = await self.repository.fetch_followed_organization_ids(request.user_id)
        if not organization_ids:
            return []
        events = await self._events(request, now, organization_ids=organization_ids)
        return [
            self._item(event, FeedStream.FOLLOWING, temporal_bonus(event, now) + FOLLOWING_BONUS, request)
            for event in events
        ]
