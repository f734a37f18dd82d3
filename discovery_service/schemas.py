"""
Pydantic schemas for Discovery Service
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime, time
import math

from .config import settings
from .domain.geo import parse_location
from .domain.models import (
    ENTITY_ORDER,
    Candidate,
    EntityType,
    FeedRequest,
    FeedResult,
    Pagination,
    PriceRange,
    ScoredResult,
    SearchFilters,
    SearchQuery,
    SearchResult,
    SortBy,
    SuggestionRecord,
    TrendingQuery,
    candidate_to_dict,
    ensure_utc,
)
from .exceptions import ValidationError


# =============================================================================
# Request parsing
# =============================================================================

def parse_entity_types(value: Optional[str]) -> frozenset:
    """Comma separated singular or plural names; empty or "all" means every type"""
    if not value or value.strip().lower() == "all":
        return frozenset(ENTITY_ORDER)
    types = set()
    for part in value.split(","):
        if not part.strip():
            continue
        try:
            types.add(EntityType.parse(part))
        except ValueError:
            raise ValidationError(f"Unknown entity type: {part.strip()}")
    if not types:
        raise ValidationError("At least one entity type is required")
    return frozenset(types)


def parse_datetime(value: Optional[str], field: str, end_of_day: bool = False) -> Optional[datetime]:
    """ISO-8601 date or datetime; a bare date_to covers the whole day"""
    if not value:
        return None
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")
    if end_of_day and len(raw) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return ensure_utc(parsed)


def parse_sort_by(value: Optional[str]) -> SortBy:
    if not value:
        return SortBy.RELEVANCE
    try:
        return SortBy(value.strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid sort_by: {value}")


def build_search_query(
    q: Optional[str],
    types: Optional[str] = None,
    category: Optional[str] = None,
    location: Optional[str] = None,
    radius_km: Optional[float] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    sort_by: Optional[str] = None,
    verified_only: bool = False,
    include_past_events: bool = False,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
) -> SearchQuery:
    """Translate raw query parameters into a domain query"""
    if radius_km is not None and (not math.isfinite(radius_km) or radius_km <= 0):
        raise ValidationError("radius_km must be a positive number")
    for name, value in (("price_min", price_min), ("price_max", price_max)):
        if value is not None and not math.isfinite(value):
            raise ValidationError(f"{name} must be a finite number")

    coordinates = parse_location(location)
    if coordinates is None and location and _looks_like_coordinates(location):
        raise ValidationError(f"Invalid coordinates: {location}")

    price_range = None
    if price_min is not None or price_max is not None:
        price_range = PriceRange(min=price_min, max=price_max)

    filters = SearchFilters(
        category=category or None,
        location=location or None,
        coordinates=coordinates,
        radius_km=(radius_km or settings.DEFAULT_RADIUS_KM) if coordinates else None,
        date_from=parse_datetime(date_from, "date_from"),
        date_to=parse_datetime(date_to, "date_to", end_of_day=True),
        price_range=price_range,
        verified_only=verified_only,
        include_past=include_past_events,
    )
    return SearchQuery(
        text=q or "",
        entity_types=parse_entity_types(types),
        filters=filters,
        sort_by=parse_sort_by(sort_by),
        pagination=Pagination(limit=limit, offset=offset),
    )


def _looks_like_coordinates(value: str) -> bool:
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 2:
        return False
    try:
        float(parts[0])
        float(parts[1])
    except ValueError:
        return False
    return True


class FeedRequestBody(BaseModel):
    """Discovery feed request"""
    user_id: Optional[str] = None
    location: Optional[str] = Field(None, description='City name or "lat,lng"')
    radius_km: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    categories: List[str] = Field(default_factory=list)
    include_trending: bool = True
    include_recommendations: bool = True
    include_nearby: bool = True
    include_following: bool = True
    interleave: bool = False
    limit: int = Field(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE)
    offset: int = Field(0, ge=0)

    def to_domain(self) -> FeedRequest:
        coordinates = parse_location(self.location)
        if coordinates is None and self.location and _looks_like_coordinates(self.location):
            raise ValidationError(f"Invalid coordinates: {self.location}")
        return FeedRequest(
            user_id=self.user_id,
            location=self.location.strip() if self.location and self.location.strip() else None,
            coordinates=coordinates,
            radius_km=self.radius_km or settings.DEFAULT_RADIUS_KM,
            categories=tuple(c.strip() for c in self.categories if c.strip()),
            include_trending=self.include_trending,
            include_recommendations=self.include_recommendations,
            include_nearby=self.include_nearby,
            include_following=self.include_following,
            interleave=self.interleave,
            pagination=Pagination(limit=self.limit, offset=self.offset),
        )


# =============================================================================
# Search responses
# =============================================================================

class CoordinatesSchema(BaseModel):
    lat: float
    lng: float


class SearchResultItem(BaseModel):
    """One ranked entity"""
    id: str
    type: str
    title: str
    relevance_score: float
    highlights: List[str] = []
    distance_km: Optional[float] = None
    data: Dict[str, Any]


class SearchMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool
    cached: bool = False
    facets: Dict[str, Dict[str, int]] = {}
    failed_types: List[str] = []


class SuggestionSchema(BaseModel):
    query: str
    usage_count: int
    last_used_at: Optional[datetime] = None


class TrendingSchema(BaseModel):
    query: str
    count: int


class SearchResponse(BaseModel):
    """Grouped search results"""
    query: str
    results: Dict[str, List[SearchResultItem]]
    meta: SearchMeta
    suggestions: List[str] = []
    trending: Optional[List[TrendingSchema]] = None


class SuggestionsResponse(BaseModel):
    suggestions: List[SuggestionSchema]


class TrendingResponse(BaseModel):
    window_hours: int
    trending: List[TrendingSchema]


class ErrorDetail(BaseModel):
    message: str
    code: str


class ErrorResponse(BaseModel):
    """Error payload; service-unavailable searches also carry empty results"""
    error: ErrorDetail
    results: Optional[Dict[str, List[SearchResultItem]]] = None
    meta: Optional[SearchMeta] = None


def display_title(candidate: Candidate) -> str:
    if candidate.type == EntityType.EVENT:
        return candidate.title
    if candidate.type == EntityType.POST:
        caption = candidate.caption or ""
        return caption if len(caption) <= 80 else caption[:77] + "..."
    return candidate.name


def result_item(result: ScoredResult) -> SearchResultItem:
    candidate = result.candidate
    return SearchResultItem(
        id=candidate.id,
        type=candidate.type.value,
        title=display_title(candidate),
        relevance_score=round(result.relevance_score, 4),
        highlights=list(result.highlights),
        distance_km=round(result.distance_km, 3) if result.distance_km is not None else None,
        data=candidate_to_dict(candidate),
    )


def trending_items(trending: List[TrendingQuery]) -> List[TrendingSchema]:
    return [TrendingSchema(query=t.query, count=t.count_in_window) for t in trending]


def suggestion_items(records: List[SuggestionRecord]) -> List[SuggestionSchema]:
    return [
        SuggestionSchema(query=r.query, usage_count=r.usage_count, last_used_at=r.last_used_at)
        for r in records
    ]


def search_response(
    result: SearchResult,
    suggestions: List[SuggestionRecord],
    trending: Optional[List[TrendingQuery]] = None,
) -> SearchResponse:
    query = result.query
    return SearchResponse(
        query=query.text.strip(),
        results={
            name: [result_item(item) for item in items]
            for name, items in result.grouped().items()
        },
        meta=SearchMeta(
            total=result.total,
            limit=query.pagination.limit,
            offset=query.pagination.offset,
            has_more=result.has_more,
            cached=result.cached,
            facets=result.facets,
            failed_types=[t.value for t in result.failed_types],
        ),
        suggestions=[record.query for record in suggestions],
        trending=trending_items(trending) if trending is not None else None,
    )


def empty_results(query: SearchQuery) -> Dict[str, List[SearchResultItem]]:
    return {entity_type.plural: [] for entity_type in query.ordered_types()}


# =============================================================================
# Feed responses
# =============================================================================

class FeedItemSchema(BaseModel):
    """Event in the discovery feed with its provenance"""
    id: str
    title: str
    start_at: datetime
    category: Optional[str] = None
    city: Optional[str] = None
    venue: Optional[str] = None
    source_stream: str
    relevance_score: float
    distance_km: Optional[float] = None
    data: Dict[str, Any]


class CategoryCountSchema(BaseModel):
    name: str
    count: int


class InsightsSchema(BaseModel):
    popular_categories: List[CategoryCountSchema] = []
    trending_topics: List[str] = []


class FeedMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool
    feed_available: bool = True
    user_location: Optional[Union[CoordinatesSchema, str]] = None
    streams: Dict[str, int] = {}
    failed_streams: List[str] = []


class FeedResponse(BaseModel):
    events: List[FeedItemSchema]
    meta: FeedMeta
    insights: InsightsSchema


def feed_response(result: FeedResult, request: FeedRequest) -> FeedResponse:
    if request.coordinates is not None:
        user_location = CoordinatesSchema(lat=request.coordinates.lat, lng=request.coordinates.lng)
    else:
        user_location = request.location

    return FeedResponse(
        events=[
            FeedItemSchema(
                id=item.candidate.id,
                title=item.candidate.title,
                start_at=item.candidate.start_at,
                category=item.candidate.category,
                city=item.candidate.city,
                venue=item.candidate.venue,
                source_stream=item.source_stream.value,
                relevance_score=round(item.relevance_score, 4),
                distance_km=round(item.distance_km, 3) if item.distance_km is not None else None,
                data=candidate_to_dict(item.candidate),
            )
            for item in result.items
        ],
        meta=FeedMeta(
            total=result.total,
            limit=request.pagination.limit,
            offset=request.pagination.offset,
            has_more=result.has_more,
            feed_available=result.available,
            user_location=user_location,
            streams=result.stream_counts,
            failed_streams=[stream.value for stream in result.failed_streams],
        ),
        insights=InsightsSchema(
            popular_categories=[
                CategoryCountSchema(name=c.name, count=c.count)
                for c in result.insights.popular_categories
            ],
            trending_topics=result.insights.trending_topics,
        ),
    )
