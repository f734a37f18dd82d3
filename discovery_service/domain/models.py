"""
Domain models - Core business entities
"""
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, List, Optional, Tuple, Union


class EntityType(str, Enum):
    """Searchable entity kinds"""
    EVENT = "event"
    ORGANIZATION = "organization"
    VENUE = "venue"
    POST = "post"

    @property
    def plural(self) -> str:
        return f"{self.value}s"

    @classmethod
    def parse(cls, value: str) -> "EntityType":
        """Accept both singular and plural spellings ("event", "events")"""
        normalized = value.strip().lower()
        for member in cls:
            if normalized in (member.value, member.plural):
                return member
        raise ValueError(f"Unknown entity type: {value}")


# Canonical fan-out and merge order
ENTITY_ORDER: Tuple[EntityType, ...] = (
    EntityType.EVENT,
    EntityType.ORGANIZATION,
    EntityType.VENUE,
    EntityType.POST,
)


class SortBy(str, Enum):
    """Result ordering"""
    RELEVANCE = "relevance"
    DATE = "date"
    POPULARITY = "popularity"
    DISTANCE = "distance"


class FeedStream(str, Enum):
    """Candidate streams merged into the discovery feed"""
    TRENDING = "trending"
    NEARBY = "nearby"
    RECOMMENDED = "recommended"
    FOLLOWING = "following"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class BoundingBox:
    """Rectangular geo pre-filter"""
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lng <= point.lng <= self.max_lng
        )


@dataclass(frozen=True)
class PriceRange:
    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, price: Optional[float]) -> bool:
        if price is None:
            return False
        if self.min is not None and price < self.min:
            return False
        if self.max is not None and price > self.max:
            return False
        return True


@dataclass(frozen=True)
class SearchFilters:
    """Optional search filters; radius_km only applies with coordinates"""
    category: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    radius_km: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    price_range: Optional[PriceRange] = None
    verified_only: bool = False
    include_past: bool = False

    @property
    def has_geo(self) -> bool:
        return self.coordinates is not None

    @property
    def text_location(self) -> Optional[str]:
        """Location used as a city substring filter when it is not a coordinate"""
        if self.coordinates is not None or not self.location:
            return None
        return self.location.strip() or None

    def normalized(self) -> Dict[str, object]:
        """Stable, JSON-friendly form used for cache keys"""
        return {
            "category": self.category.strip().lower() if self.category else None,
            "location": self.text_location.lower() if self.text_location else None,
            "coordinates": (
                [round(self.coordinates.lat, 5), round(self.coordinates.lng, 5)]
                if self.coordinates else None
            ),
            "radius_km": self.radius_km if self.coordinates else None,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "price_range": (
                [self.price_range.min, self.price_range.max] if self.price_range else None
            ),
            "verified_only": self.verified_only,
            "include_past": self.include_past,
        }


@dataclass(frozen=True)
class Pagination:
    limit: int = 20
    offset: int = 0


@dataclass(frozen=True)
class SearchQuery:
    """A validated-at-dispatch search request"""
    text: str
    entity_types: FrozenSet[EntityType] = frozenset(ENTITY_ORDER)
    filters: SearchFilters = field(default_factory=SearchFilters)
    sort_by: SortBy = SortBy.RELEVANCE
    pagination: Pagination = field(default_factory=Pagination)

    @property
    def normalized_text(self) -> str:
        """Trimmed, whitespace-collapsed and case-folded query text"""
        return " ".join(self.text.split()).casefold()

    def ordered_types(self) -> List[EntityType]:
        return [entity_type for entity_type in ENTITY_ORDER if entity_type in self.entity_types]


# =============================================================================
# Candidates (tagged union over the four entity types)
# =============================================================================

@dataclass(frozen=True)
class EventCandidate:
    """Public event projection"""
    id: str
    title: str
    start_at: datetime
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    venue: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    end_at: Optional[datetime] = None
    coordinates: Optional[Coordinates] = None
    organization_id: Optional[str] = None
    organization_verified: bool = False
    price_min: Optional[float] = None
    status: str = "published"
    visibility: str = "public"
    likes_count: int = 0
    shares_count: int = 0
    views_count: int = 0
    tickets_sold: int = 0

    type: ClassVar[EntityType] = EntityType.EVENT

    @property
    def popularity(self) -> float:
        return (
            self.likes_count * 2
            + self.shares_count * 3
            + self.tickets_sold * 5
            + self.views_count * 0.1
        )

    @property
    def sort_date(self) -> Optional[datetime]:
        return self.start_at


@dataclass(frozen=True)
class OrganizationCandidate:
    """Organizer projection"""
    id: str
    name: str
    description: Optional[str] = None
    city: Optional[str] = None
    is_verified: bool = False
    is_active: bool = True
    follower_count: int = 0
    event_count: int = 0
    coordinates: Optional[Coordinates] = None
    created_at: Optional[datetime] = None

    type: ClassVar[EntityType] = EntityType.ORGANIZATION

    @property
    def popularity(self) -> float:
        return self.follower_count + self.event_count * 5

    @property
    def sort_date(self) -> Optional[datetime]:
        return None


@dataclass(frozen=True)
class VenueCandidate:
    """Venue projection"""
    id: str
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    event_count: int = 0

    type: ClassVar[EntityType] = EntityType.VENUE

    @property
    def popularity(self) -> float:
        return float(self.event_count)

    @property
    def sort_date(self) -> Optional[datetime]:
        return None


@dataclass(frozen=True)
class PostCandidate:
    """Social post projection"""
    id: str
    caption: str
    created_at: datetime
    author_name: Optional[str] = None
    tags: Tuple[str, ...] = ()
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    like_count: int = 0
    comment_count: int = 0
    share_count: int = 0
    is_hidden: bool = False

    type: ClassVar[EntityType] = EntityType.POST

    @property
    def popularity(self) -> float:
        return self.like_count * 2 + self.comment_count * 3 + self.share_count * 5

    @property
    def sort_date(self) -> Optional[datetime]:
        return self.created_at


Candidate = Union[EventCandidate, OrganizationCandidate, VenueCandidate, PostCandidate]

CANDIDATE_TYPES: Dict[EntityType, type] = {
    EntityType.EVENT: EventCandidate,
    EntityType.ORGANIZATION: OrganizationCandidate,
    EntityType.VENUE: VenueCandidate,
    EntityType.POST: PostCandidate,
}

_DATETIME_FIELDS = {"start_at", "end_at", "created_at"}


def candidate_to_dict(candidate: Candidate) -> Dict[str, object]:
    """Serialize a candidate into JSON-compatible primitives"""
    data: Dict[str, object] = {"type": candidate.type.value}
    for item in fields(candidate):
        value = getattr(candidate, item.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Coordinates):
            value = {"lat": value.lat, "lng": value.lng}
        elif isinstance(value, tuple):
            value = list(value)
        data[item.name] = value
    return data


def candidate_from_dict(data: Dict[str, object]) -> Candidate:
    """Inverse of candidate_to_dict"""
    cls = CANDIDATE_TYPES[EntityType(data["type"])]
    kwargs = {}
    for item in fields(cls):
        if item.name not in data:
            continue
        value = data[item.name]
        if value is not None:
            if item.name in _DATETIME_FIELDS:
                value = datetime.fromisoformat(value)
            elif item.name == "coordinates":
                value = Coordinates(lat=value["lat"], lng=value["lng"])
            elif isinstance(value, list):
                value = tuple(value)
        kwargs[item.name] = value
    return cls(**kwargs)


# =============================================================================
# Scored results and cache
# =============================================================================

@dataclass(frozen=True)
class ScoredResult:
    """Candidate with its relevance score; relevance_score is never negative"""
    candidate: Candidate
    relevance_score: float
    highlights: Tuple[str, ...] = ()
    distance_km: Optional[float] = None
    match_count: int = 0

    @property
    def entity_type(self) -> EntityType:
        return self.candidate.type

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidate": candidate_to_dict(self.candidate),
            "relevance_score": self.relevance_score,
            "highlights": list(self.highlights),
            "distance_km": self.distance_km,
            "match_count": self.match_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ScoredResult":
        return cls(
            candidate=candidate_from_dict(data["candidate"]),
            relevance_score=data["relevance_score"],
            highlights=tuple(data.get("highlights") or ()),
            distance_km=data.get("distance_km"),
            match_count=data.get("match_count", 0),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Ranked result set held by the result cache until expires_at"""
    key: str
    results: Tuple[ScoredResult, ...]
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class SearchResult:
    """Full ranked set plus the requested page of it"""
    query: SearchQuery
    items: List[ScoredResult]
    total: int
    facets: Dict[str, Dict[str, int]]
    cached: bool = False
    failed_types: Tuple[EntityType, ...] = ()

    @property
    def has_more(self) -> bool:
        return self.query.pagination.offset + len(self.items) < self.total

    def grouped(self) -> Dict[str, List[ScoredResult]]:
        """Page items grouped by the plural entity name, in ranked order"""
        groups: Dict[str, List[ScoredResult]] = {
            entity_type.plural: [] for entity_type in self.query.ordered_types()
        }
        for item in self.items:
            groups.setdefault(item.entity_type.plural, []).append(item)
        return groups


# =============================================================================
# Suggestions and trending
# =============================================================================

@dataclass
class SuggestionRecord:
    """Usage counter for a normalized query; owned by the suggestion aggregator"""
    query: str
    usage_count: int = 0
    last_used_at: Optional[datetime] = None


@dataclass(frozen=True)
class TrendingQuery:
    query: str
    count_in_window: int


@dataclass(frozen=True)
class TrendingWindow:
    """Query counts over a rolling window; recomputed on every read"""
    window_hours: int
    generated_at: datetime
    queries: Tuple[TrendingQuery, ...] = ()

    def top(self, limit: int) -> List[TrendingQuery]:
        return list(self.queries[:limit])


# =============================================================================
# Discovery feed
# =============================================================================

@dataclass(frozen=True)
class UserProfile:
    """Behaviour-derived personalization signals"""
    user_id: str
    category_affinity: Dict[str, float] = field(default_factory=dict)
    preferred_cities: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class FeedRequest:
    user_id: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    radius_km: float = 50.0
    categories: Tuple[str, ...] = ()
    include_trending: bool = True
    include_recommendations: bool = True
    include_nearby: bool = True
    include_following: bool = True
    interleave: bool = False
    pagination: Pagination = field(default_factory=Pagination)

    def enabled_streams(self) -> List[FeedStream]:
        streams = []
        if self.include_trending:
            streams.append(FeedStream.TRENDING)
        if self.include_nearby:
            streams.append(FeedStream.NEARBY)
        if self.include_recommendations:
            streams.append(FeedStream.RECOMMENDED)
        if self.include_following:
            streams.append(FeedStream.FOLLOWING)
        return streams


@dataclass(frozen=True)
class FeedItem:
    """Event annotated with the stream that produced its winning score"""
    candidate: EventCandidate
    source_stream: FeedStream
    relevance_score: float
    distance_km: Optional[float] = None


@dataclass(frozen=True)
class CategoryCount:
    name: str
    count: int


@dataclass(frozen=True)
class DiscoveryInsights:
    popular_categories: List[CategoryCount] = field(default_factory=list)
    trending_topics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FeedResult:
    items: List[FeedItem]
    total: int
    has_more: bool
    available: bool = True
    stream_counts: Dict[str, int] = field(default_factory=dict)
    failed_streams: Tuple[FeedStream, ...] = ()
    insights: DiscoveryInsights = field(default_factory=DiscoveryInsights)
