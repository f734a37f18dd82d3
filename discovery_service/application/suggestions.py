"""
Query suggestions and trending searches
"""
import asyncio
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple
import logging

from ..domain.models import (
    SuggestionRecord,
    TrendingQuery,
    TrendingWindow,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


def normalize_query(text: Optional[str]) -> str:
    """Trimmed, whitespace-collapsed, case-folded form used as the counter key"""
    if not text:
        return ""
    return " ".join(text.split()).casefold()


class SuggestionAggregator:
    """Owns the per-query usage counters and the query log behind trending"""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        retention_hours: int = 168,
    ):
        self._clock = clock or utcnow
        self.retention = timedelta(hours=retention_hours)
        self._records: Dict[str, SuggestionRecord] = {}
        self._log: Deque[Tuple[datetime, str]] = deque()
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    async def record(self, query_text: str) -> Optional[SuggestionRecord]:
        """Increment (or create) the counter for a successfully searched query"""
        query = normalize_query(query_text)
        if not query:
            return None
        async with self._lock:
            now = self._now()
            record = self._records.get(query)
            if record is None:
                record = SuggestionRecord(query=query)
                self._records[query] = record
            record.usage_count += 1
            record.last_used_at = now
            self._log.append((now, query))
            self._prune(now)
            return SuggestionRecord(record.query, record.usage_count, record.last_used_at)

    def _prune(self, now: datetime):
        cutoff = now - self.retention
        while self._log and self._log[0][0] < cutoff:
            self._log.popleft()

    async def suggestions(self, prefix: str, limit: int = 5) -> List[SuggestionRecord]:
        """Known queries starting with prefix, most used first, then most recent"""
        normalized = normalize_query(prefix)
        if not normalized or limit <= 0:
            return []
        async with self._lock:
            matches = [
                SuggestionRecord(r.query, r.usage_count, r.last_used_at)
                for r in self._records.values()
                if r.query.startswith(normalized)
            ]
        matches.sort(
            key=lambda r: (
                -r.usage_count,
                -(r.last_used_at.timestamp() if r.last_used_at else 0.0),
                r.query,
            )
        )
        return matches[:limit]

    async def window(self, window_hours: int = 24) -> TrendingWindow:
        """Count logged queries inside the rolling window"""
        async with self._lock:
            now = self._now()
            cutoff = now - timedelta(hours=window_hours)
            counts: Counter = Counter()
            latest: Dict[str, datetime] = {}
            for used_at, query in self._log:
                if used_at < cutoff:
                    continue
                counts[query] += 1
                latest[query] = used_at

        ranked = sorted(
            counts.items(),
            key=lambda item: (-item[1], -latest[item[0]].timestamp(), item[0]),
        )
        return TrendingWindow(
            window_hours=window_hours,
            generated_at=now,
            queries=tuple(TrendingQuery(query, count) for query, count in ranked),
        )

    async def trending(self, window_hours: int = 24, limit: int = 10) -> List[TrendingQuery]:
        window = await self.window(window_hours)
        return window.top(limit)
