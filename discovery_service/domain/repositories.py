"""
Repository interfaces - Define contracts for data access
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .models import BoundingBox, Candidate, EntityType, PriceRange, UserProfile


@dataclass(frozen=True)
class CandidateFilter:
    """Filtered, paginated read against one entity table"""
    text: Optional[str] = None
    category: Optional[str] = None
    categories: Tuple[str, ...] = ()
    city: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    require_coordinates: bool = False
    starts_after: Optional[datetime] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    price_range: Optional[PriceRange] = None
    verified_only: bool = False
    organization_ids: Optional[FrozenSet[str]] = None
    offset: int = 0
    limit: int = 200


@dataclass(frozen=True)
class SearchLogEntry:
    """Append-only analytics record"""
    kind: str  # "search" or "discovery"
    query: Optional[str]
    entity_types: Tuple[str, ...] = ()
    filters: Dict[str, Any] = field(default_factory=dict)
    results_count: int = 0
    duration_ms: int = 0
    cached: bool = False
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ISearchRepository(ABC):
    """Read-mostly query interface over the relational store"""

    @abstractmethod
    async def fetch_candidates(
        self,
        entity_type: EntityType,
        candidate_filter: CandidateFilter,
    ) -> List[Candidate]:
        """Return public candidates of one type matching the filter, unordered"""
        pass

    @abstractmethod
    async def fetch_followed_organization_ids(self, user_id: str) -> FrozenSet[str]:
        """Organizations the user follows"""
        pass

    @abstractmethod
    async def fetch_user_profile(self, user_id: str) -> Optional[UserProfile]:
        """Category affinity and preferred cities from the behaviour log"""
        pass

    @abstractmethod
    async def record_search(self, entry: SearchLogEntry) -> None:
        """Append an analytics record"""
        pass
