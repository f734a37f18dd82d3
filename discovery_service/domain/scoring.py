"""
Relevance scoring and result ordering

Scores are feature-weighted heuristics over already filtered candidates:
field matches, temporal proximity for events and, in the discovery feed,
engagement, proximity and personalization boosts.
"""
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .geo import distance_between
from .models import (
    Candidate,
    EntityType,
    EventCandidate,
    ScoredResult,
    SearchQuery,
    SortBy,
    UserProfile,
    ensure_utc,
    utcnow,
)

TEMPORAL_MAX_BONUS = 5.0
TEMPORAL_DECAY_DAYS = 7.0  # one point lost per week; zero at 35 days

TRENDING_WEIGHT = 5.0
TRENDING_QUERY_BONUS = 2.0
PROXIMITY_WEIGHT = 5.0
FOLLOWING_BONUS = 3.0
CATEGORY_AFFINITY_WEIGHT = 4.0
PREFERRED_CITY_BONUS = 2.0

SNIPPET_RADIUS = 40


@dataclass(frozen=True)
class FieldRule:
    """A searchable field, its weight and how a hit is highlighted"""
    name: str
    weight: float
    label: str

    def match(self, candidate: Candidate, text: str) -> Optional[str]:
        value = getattr(candidate, self.name, None)
        if not value:
            return None
        if isinstance(value, tuple):
            for item in value:
                if item and text in item.casefold():
                    return self.label.format(value=item)
            return None
        folded = value.casefold()
        if text not in folded:
            return None
        if self.name in LONG_TEXT_FIELDS:
            start, length = _locate(value, text)
            return self.label.format(value=_snippet(value, start, length))
        return self.label.format(value=value)


LONG_TEXT_FIELDS = {"description", "caption"}

# Ordered by weight; highlights follow this order
FIELD_RULES: Dict[EntityType, Tuple[FieldRule, ...]] = {
    EntityType.EVENT: (
        FieldRule("title", 10.0, "**{value}**"),
        FieldRule("category", 8.0, "Category: {value}"),
        FieldRule("tags", 6.0, "Tag: {value}"),
        FieldRule("venue", 6.0, "Venue: {value}"),
        FieldRule("city", 5.0, "Location: {value}"),
        FieldRule("description", 3.0, "Description: {value}"),
    ),
    EntityType.ORGANIZATION: (
        FieldRule("name", 10.0, "**{value}**"),
        FieldRule("city", 5.0, "Location: {value}"),
        FieldRule("description", 5.0, "Description: {value}"),
    ),
    EntityType.VENUE: (
        FieldRule("name", 10.0, "**{value}**"),
        FieldRule("city", 6.0, "Location: {value}"),
        FieldRule("address", 5.0, "Address: {value}"),
    ),
    EntityType.POST: (
        FieldRule("caption", 10.0, "Caption: {value}"),
        FieldRule("tags", 6.0, "Tag: {value}"),
        FieldRule("location", 5.0, "Location: {value}"),
        FieldRule("author_name", 5.0, "By: {value}"),
    ),
}

# Fields the candidate fetchers match the query text against
SEARCH_FIELDS: Dict[EntityType, Tuple[str, ...]] = {
    entity_type: tuple(rule.name for rule in rules)
    for entity_type, rules in FIELD_RULES.items()
}


def _locate(value: str, text: str) -> Tuple[int, int]:
    """Position of a casefolded needle in the original string"""
    hit = re.search(re.escape(text), value, re.IGNORECASE)
    if hit:
        return hit.start(), hit.end() - hit.start()
    # casefold can expand a character ("ß" -> "ss"); map the folded offset back
    target = value.casefold().index(text)
    folded = 0
    for i, char in enumerate(value):
        folded += len(char.casefold())
        if folded > target:
            return i, len(text)
    return 0, len(text)


def _snippet(value: str, start: int, length: int) -> str:
    left = max(0, start - SNIPPET_RADIUS)
    right = min(len(value), start + length + SNIPPET_RADIUS)
    snippet = value[left:right].strip()
    if left > 0:
        snippet = "..." + snippet
    if right < len(value):
        snippet = snippet + "..."
    return snippet


def temporal_bonus(candidate: Candidate, now: datetime) -> float:
    """Up to +5 for events starting now, decaying linearly to 0 at 35 days"""
    if not isinstance(candidate, EventCandidate):
        return 0.0
    days_until = (ensure_utc(candidate.start_at) - now).total_seconds() / 86400
    if days_until < 0:
        return 0.0
    return max(0.0, TEMPORAL_MAX_BONUS - days_until / TEMPORAL_DECAY_DAYS)


class RelevanceScorer:
    """Scores candidates against a query; pure CPU work"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def score(
        self,
        candidate: Candidate,
        query: SearchQuery,
        now: Optional[datetime] = None,
    ) -> ScoredResult:
        now = now or self.now()
        text = query.normalized_text

        score = 0.0
        match_count = 0
        highlights: List[str] = []
        if text:
            for rule in FIELD_RULES[candidate.type]:
                hit = rule.match(candidate, text)
                if hit is None:
                    continue
                score += rule.weight
                match_count += 1
                highlights.append(hit)

        score += temporal_bonus(candidate, now)

        distance = None
        origin = query.filters.coordinates
        if origin is not None and candidate.coordinates is not None:
            distance = distance_between(origin, candidate.coordinates)

        return ScoredResult(
            candidate=candidate,
            relevance_score=max(0.0, score),
            highlights=tuple(highlights),
            distance_km=distance,
            match_count=match_count,
        )

    def score_all(
        self,
        candidates: Iterable[Candidate],
        query: SearchQuery,
        now: Optional[datetime] = None,
    ) -> List[ScoredResult]:
        now = now or self.now()
        return [self.score(candidate, query, now) for candidate in candidates]


# =============================================================================
# Ordering
# =============================================================================

def relevance_sort_key(result: ScoredResult) -> Tuple[float, int, float]:
    """Score desc, then match count desc, then nearer first; stable sort keeps fetch order"""
    distance = result.distance_km if result.distance_km is not None else math.inf
    return (-result.relevance_score, -result.match_count, distance)


def sort_results(results: List[ScoredResult], sort_by: SortBy, has_geo: bool) -> List[ScoredResult]:
    """Sort the whole candidate set; secondary order is always relevance"""
    ranked = sorted(results, key=relevance_sort_key)

    if sort_by == SortBy.DATE:
        return sorted(
            ranked,
            key=lambda r: (
                r.candidate.sort_date is None,
                ensure_utc(r.candidate.sort_date).timestamp() if r.candidate.sort_date else 0.0,
            ),
        )
    if sort_by == SortBy.POPULARITY:
        return sorted(ranked, key=lambda r: -r.candidate.popularity)
    if sort_by == SortBy.DISTANCE and has_geo:
        return sorted(
            ranked,
            key=lambda r: (r.distance_km is None, r.distance_km or 0.0),
        )
    return ranked


# =============================================================================
# Discovery feed scoring
# =============================================================================

def trending_score(event: EventCandidate, now: datetime, hours_back: int = 24) -> float:
    """Engagement and urgency blend in [0, 1]"""
    time_factor = 0.5 + 0.5 * min(hours_back / 24.0, 1.0)
    engagement = min(
        (
            event.likes_count * 0.3
            + event.shares_count * 0.4
            + event.views_count * 0.1
            + event.tickets_sold * 0.2
        ) / 100.0,
        1.0,
    )
    seconds_until = (ensure_utc(event.start_at) - now).total_seconds()
    urgency = min(1.0, max(0.1, 1.0 - seconds_until / (7 * 86400)))
    return min(time_factor * 0.3 + engagement * 0.4 + urgency * 0.3, 1.0)


def matches_any_query(event: EventCandidate, queries: Iterable[str]) -> bool:
    rules = FIELD_RULES[EntityType.EVENT]
    for query in queries:
        if any(rule.match(event, query) is not None for rule in rules):
            return True
    return False


def proximity_bonus(distance: Optional[float], radius_km: float) -> float:
    """Linear bonus from PROXIMITY_WEIGHT at the origin to 0 at the radius"""
    if distance is None or radius_km <= 0:
        return 0.0
    return max(0.0, PROXIMITY_WEIGHT * (1.0 - distance / radius_km))


def personalization_boost(event: EventCandidate, profile: Optional[UserProfile]) -> float:
    """User-history boost layered on the relevance score for recommendations"""
    if profile is None:
        return 0.0
    boost = 0.0
    if event.category:
        affinity = profile.category_affinity.get(event.category.casefold(), 0.0)
        boost += CATEGORY_AFFINITY_WEIGHT * max(0.0, min(affinity, 1.0))
    if event.city and event.city.casefold() in profile.preferred_cities:
        boost += PREFERRED_CITY_BONUS
    return boost
