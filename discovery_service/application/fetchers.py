"""
Candidate fetchers - one per entity type

Each fetcher translates a search query into a repository filter and returns
every matching candidate, read page by page. Ordering is the scorer's job.
"""
from dataclasses import replace
from datetime import datetime
from typing import Dict, List
import logging

from ..domain.geo import bounding_box
from ..domain.models import (
    Candidate,
    EntityType,
    SearchQuery,
    ensure_utc,
)
from ..domain.repositories import CandidateFilter, ISearchRepository
from ..exceptions import FetchError

logger = logging.getLogger(__name__)


class CandidateFetcher:
    """Filtered read of one entity type"""

    entity_type: EntityType = EntityType.EVENT

    def __init__(
        self,
        repository: ISearchRepository,
        page_size: int = 200,
        default_radius_km: float = 50.0,
    ):
        self.repository = repository
        self.page_size = page_size
        self.default_radius_km = default_radius_km

    def build_filter(self, query: SearchQuery, now: datetime) -> CandidateFilter:
        filters = query.filters
        box = None
        if filters.coordinates is not None:
            box = bounding_box(filters.coordinates, filters.radius_km or self.default_radius_km)
        return CandidateFilter(
            text=query.normalized_text or None,
            city=filters.text_location,
            bounding_box=box,
            date_from=ensure_utc(filters.date_from),
            date_to=ensure_utc(filters.date_to),
            offset=0,
            limit=self.page_size,
        )

    def post_process(self, candidates: List[Candidate]) -> List[Candidate]:
        return candidates

    async def fetch(self, query: SearchQuery, now: datetime) -> List[Candidate]:
        candidate_filter = self.build_filter(query, now)
        candidates: List[Candidate] = []
        pages = 0
        while True:
            page = await self._fetch_page(candidate_filter)
            candidates.extend(page)
            pages += 1
            if len(page) < candidate_filter.limit:
                break
            candidate_filter = replace(
                candidate_filter, offset=candidate_filter.offset + candidate_filter.limit
            )
        logger.debug(f"Fetched {len(candidates)} {self.entity_type.plural} in {pages} page(s)")
        return self.post_process(candidates)

    async def _fetch_page(self, candidate_filter: CandidateFilter) -> List[Candidate]:
        try:
            return await self.repository.fetch_candidates(self.entity_type, candidate_filter)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(
                f"Failed to fetch {self.entity_type.plural}: {e}",
                branch=self.entity_type.value,
            ) from e


class EventFetcher(CandidateFetcher):
    """Published public events; upcoming only unless past events are requested"""

    entity_type = EntityType.EVENT

    def build_filter(self, query: SearchQuery, now: datetime) -> CandidateFilter:
        base = super().build_filter(query, now)
        filters = query.filters
        return CandidateFilter(
            text=base.text,
            category=filters.category.strip() if filters.category else None,
            city=base.city,
            bounding_box=base.bounding_box,
            starts_after=None if filters.include_past else now,
            date_from=base.date_from,
            date_to=base.date_to,
            price_range=filters.price_range,
            verified_only=filters.verified_only,
            offset=base.offset,
            limit=base.limit,
        )


class OrganizationFetcher(CandidateFetcher):
    entity_type = EntityType.ORGANIZATION

    def build_filter(self, query: SearchQuery, now: datetime) -> CandidateFilter:
        base = super().build_filter(query, now)
        return CandidateFilter(
            text=base.text,
            city=base.city,
            bounding_box=base.bounding_box,
            verified_only=query.filters.verified_only,
            offset=base.offset,
            limit=base.limit,
        )


class VenueFetcher(CandidateFetcher):
    """Venues, collapsed to one candidate per (name, city)"""

    entity_type = EntityType.VENUE

    def build_filter(self, query: SearchQuery, now: datetime) -> CandidateFilter:
        base = super().build_filter(query, now)
        return CandidateFilter(
            text=base.text,
            city=base.city,
            bounding_box=base.bounding_box,
            offset=base.offset,
            limit=base.limit,
        )

    def post_process(self, candidates: List[Candidate]) -> List[Candidate]:
        seen = set()
        unique = []
        for venue in candidates:
            key = (venue.name.casefold(), (venue.city or "").casefold())
            if key in seen:
                continue
            seen.add(key)
            unique.append(venue)
        return unique


class PostFetcher(CandidateFetcher):
    entity_type = EntityType.POST


def build_fetchers(
    repository: ISearchRepository,
    page_size: int = 200,
    default_radius_km: float = 50.0,
) -> Dict[EntityType, CandidateFetcher]:
    """One fetcher per entity type over a shared repository"""
    return {
        cls.entity_type: cls(repository, page_size, default_radius_km)
        for cls in (EventFetcher, OrganizationFetcher, VenueFetcher, PostFetcher)
    }
