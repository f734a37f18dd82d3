"""
In-memory repository used for local development and tests
"""
import asyncio
from collections import Counter
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..domain.models import (
    Candidate,
    EntityType,
    EventCandidate,
    OrganizationCandidate,
    PostCandidate,
    UserProfile,
    VenueCandidate,
    ensure_utc,
)
from ..domain.repositories import CandidateFilter, ISearchRepository, SearchLogEntry
from ..domain.scoring import SEARCH_FIELDS


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.casefold()


def _is_public(candidate: Candidate) -> bool:
    if isinstance(candidate, EventCandidate):
        return candidate.status == "published" and candidate.visibility == "public"
    if isinstance(candidate, OrganizationCandidate):
        return candidate.is_active
    if isinstance(candidate, PostCandidate):
        return not candidate.is_hidden
    return True


def _matches_text(candidate: Candidate, text: str) -> bool:
    for name in SEARCH_FIELDS[candidate.type]:
        value = getattr(candidate, name, None)
        if isinstance(value, tuple):
            if any(_contains(item, text) for item in value):
                return True
        elif _contains(value, text):
            return True
    return False


def _matches(candidate: Candidate, f: CandidateFilter) -> bool:
    if not _is_public(candidate):
        return False
    if f.text and not _matches_text(candidate, f.text.casefold()):
        return False

    if f.bounding_box is not None or f.require_coordinates:
        if candidate.coordinates is None:
            return False
        if f.bounding_box is not None and not f.bounding_box.contains(candidate.coordinates):
            return False

    if f.city:
        city = candidate.location if isinstance(candidate, PostCandidate) else candidate.city
        if not _contains(city, f.city.casefold()):
            return False

    if isinstance(candidate, EventCandidate):
        start_at = ensure_utc(candidate.start_at)
        category = (candidate.category or "").casefold()
        if f.category and category != f.category.casefold():
            return False
        if f.categories and category not in {c.casefold() for c in f.categories}:
            return False
        if f.starts_after and start_at < f.starts_after:
            return False
        if f.date_from and start_at < f.date_from:
            return False
        if f.date_to and start_at > f.date_to:
            return False
        if f.price_range and not f.price_range.contains(candidate.price_min):
            return False
        if f.verified_only and not candidate.organization_verified:
            return False
        if f.organization_ids is not None and candidate.organization_id not in f.organization_ids:
            return False
    elif isinstance(candidate, OrganizationCandidate):
        if f.verified_only and not candidate.is_verified:
            return False
    elif isinstance(candidate, PostCandidate):
        created_at = ensure_utc(candidate.created_at)
        if f.date_from and created_at < f.date_from:
            return False
        if f.date_to and created_at > f.date_to:
            return False
    return True


class InMemorySearchRepository(ISearchRepository):
    """Dictionary-backed store mirroring the PostgreSQL repository semantics"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.candidates: Dict[EntityType, List[Candidate]] = {t: [] for t in EntityType}
        self.follows: Set[Tuple[str, str]] = set()
        self.interactions: List[Tuple[str, str]] = []
        self.search_log: List[SearchLogEntry] = []

    async def seed(
        self,
        *,
        events: Iterable[EventCandidate] = (),
        organizations: Iterable[OrganizationCandidate] = (),
        venues: Iterable[VenueCandidate] = (),
        posts: Iterable[PostCandidate] = (),
        follows: Iterable[Tuple[str, str]] = (),
        interactions: Iterable[Tuple[str, str]] = (),
    ) -> None:
        """Replace the store contents; follows are (user_id, organization_id), interactions (user_id, event_id)"""
        async with self._lock:
            self.candidates = {
                EntityType.EVENT: list(events),
                EntityType.ORGANIZATION: list(organizations),
                EntityType.VENUE: list(venues),
                EntityType.POST: list(posts),
            }
            self.follows = set(follows)
            self.interactions = list(interactions)
            self.search_log = []

    async def reset(self) -> None:
        await self.seed()

    async def fetch_candidates(
        self,
        entity_type: EntityType,
        candidate_filter: CandidateFilter,
    ) -> List[Candidate]:
        async with self._lock:
            matched = [
                candidate
                for candidate in self.candidates[entity_type]
                if _matches(candidate, candidate_filter)
            ]
        start = candidate_filter.offset
        return matched[start:start + candidate_filter.limit]

    async def fetch_followed_organization_ids(self, user_id: str) -> FrozenSet[str]:
        async with self._lock:
            return frozenset(org_id for follower, org_id in self.follows if follower == user_id)

    async def fetch_user_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self._lock:
            event_ids = {event_id for uid, event_id in self.interactions if uid == user_id}
            if not event_ids:
                return None
            events = [e for e in self.candidates[EntityType.EVENT] if e.id in event_ids]

        categories = Counter(e.category.casefold() for e in events if e.category)
        top = max(categories.values()) if categories else 0
        return UserProfile(
            user_id=user_id,
            category_affinity={name: count / top for name, count in categories.items()},
            preferred_cities=frozenset(e.city.casefold() for e in events if e.city),
        )

    async def record_search(self, entry: SearchLogEntry) -> None:
        async with self._lock:
            self.search_log.append(entry)
