"""
Database connection and search queries for Discovery Service
"""
import asyncpg
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple
import json
import logging

from ..config import settings
from ..domain.models import (
    Candidate,
    Coordinates,
    EntityType,
    EventCandidate,
    OrganizationCandidate,
    PostCandidate,
    UserProfile,
    VenueCandidate,
    utcnow,
)
from ..domain.repositories import CandidateFilter, ISearchRepository, SearchLogEntry

logger = logging.getLogger(__name__)


class Database:
    """PostgreSQL database connection manager using asyncpg"""

    def __init__(self, database_url: Optional[str] = None):
        self.pool: Optional[asyncpg.Pool] = None
        self.database_url = database_url or settings.DATABASE_URL

    async def connect(self):
        """Create database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=1,
                max_size=settings.DB_POOL_SIZE,
                command_timeout=settings.DB_COMMAND_TIMEOUT,
            )
            logger.info("Database connection pool created successfully")

            await self._init_schema()
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")

    async def _init_schema(self):
        """Create the tables this service owns; entity tables belong to other services"""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS search_logs (
                    id BIGSERIAL PRIMARY KEY,
                    kind VARCHAR(16) NOT NULL,
                    query TEXT,
                    entity_types TEXT[] DEFAULT '{}',
                    filters JSONB DEFAULT '{}'::jsonb,
                    results_count INTEGER DEFAULT 0,
                    duration_ms INTEGER DEFAULT 0,
                    cached BOOLEAN DEFAULT FALSE,
                    user_id VARCHAR(64),
                    created_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_search_logs_created
                ON search_logs (created_at DESC)
            """)

            logger.info("Database schema initialized successfully")

    async def fetch_one(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def fetch_all(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch all rows"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def execute(self, query: str, *args) -> str:
        """Execute a query"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)


# =============================================================================
# Query building
# =============================================================================

def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally"""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class _Where:
    """Accumulates WHERE clauses with positional $n parameters"""

    def __init__(self):
        self.clauses: List[str] = []
        self.args: List[Any] = []

    def param(self, value: Any) -> str:
        self.args.append(value)
        return f"${len(self.args)}"

    def add(self, clause: str):
        self.clauses.append(clause)

    def sql(self) -> str:
        return " AND ".join(self.clauses) if self.clauses else "TRUE"


@dataclass(frozen=True)
class _TableSpec:
    select: str
    text_columns: Tuple[str, ...]
    base_clauses: Tuple[str, ...]
    order_by: str
    tags_column: Optional[str] = None
    city_column: Optional[str] = None
    lat_column: Optional[str] = None
    lng_column: Optional[str] = None
    date_column: Optional[str] = None


_TABLES: Dict[EntityType, _TableSpec] = {
    EntityType.EVENT: _TableSpec(
        select="""
            SELECT e.id, e.title, e.description, e.category, e.tags, e.venue_name,
                   e.address, e.city, e.latitude, e.longitude, e.start_date, e.end_date,
                   e.organization_id, COALESCE(o.is_verified, false) AS organization_verified,
                   e.price_min, e.status, e.visibility, e.likes_count, e.shares_count,
                   e.views_count, e.tickets_sold
            FROM events e
            LEFT JOIN organizations o ON o.id = e.organization_id
        """,
        text_columns=("e.title", "e.category", "e.venue_name", "e.city", "e.description"),
        base_clauses=("e.status = 'published'", "e.visibility = 'public'"),
        order_by="e.start_date ASC, e.id ASC",
        tags_column="e.tags",
        city_column="e.city",
        lat_column="e.latitude",
        lng_column="e.longitude",
        date_column="e.start_date",
    ),
    EntityType.ORGANIZATION: _TableSpec(
        select="""
            SELECT o.id, o.name, o.description, o.city, o.is_verified, o.is_active,
                   o.follower_count, o.latitude, o.longitude, o.created_at,
                   (SELECT COUNT(*) FROM events e WHERE e.organization_id = o.id) AS event_count
            FROM organizations o
        """,
        text_columns=("o.name", "o.city", "o.description"),
        base_clauses=("o.is_active = true",),
        order_by="o.follower_count DESC, o.id ASC",
        city_column="o.city",
        lat_column="o.latitude",
        lng_column="o.longitude",
    ),
    EntityType.VENUE: _TableSpec(
        select="""
            SELECT v.id, v.name, v.address, v.city, v.latitude, v.longitude,
                   (SELECT COUNT(*) FROM events e WHERE e.venue_id = v.id) AS event_count
            FROM venues v
        """,
        text_columns=("v.name", "v.city", "v.address"),
        base_clauses=(),
        order_by="v.name ASC, v.id ASC",
        city_column="v.city",
        lat_column="v.latitude",
        lng_column="v.longitude",
    ),
    EntityType.POST: _TableSpec(
        select="""
            SELECT p.id, p.caption, p.created_at, u.username AS author_name, p.tags,
                   p.location, p.latitude, p.longitude, p.like_count, p.comment_count,
                   p.share_count, p.is_hidden
            FROM posts p
            LEFT JOIN users u ON u.id = p.user_id
        """,
        text_columns=("p.caption", "p.location", "u.username"),
        base_clauses=("p.is_hidden = false",),
        order_by="p.created_at DESC, p.id ASC",
        tags_column="p.tags",
        city_column="p.location",
        lat_column="p.latitude",
        lng_column="p.longitude",
        date_column="p.created_at",
    ),
}


def build_candidate_query(entity_type: EntityType, f: CandidateFilter) -> Tuple[str, List[Any]]:
    """Compose the parameterized SELECT for one entity table"""
    table = _TABLES[entity_type]
    where = _Where()
    for clause in table.base_clauses:
        where.add(clause)

    if f.text:
        pattern = where.param(f"%{escape_like(f.text)}%")
        matches = [f"{column} ILIKE {pattern}" for column in table.text_columns]
        if table.tags_column:
            matches.append(
                f"EXISTS (SELECT 1 FROM unnest({table.tags_column}) AS tag WHERE tag ILIKE {pattern})"
            )
        where.add("(" + " OR ".join(matches) + ")")

    if f.city and table.city_column:
        where.add(f"{table.city_column} ILIKE {where.param(f'%{escape_like(f.city)}%')}")

    if f.bounding_box is not None or f.require_coordinates:
        where.add(f"{table.lat_column} IS NOT NULL AND {table.lng_column} IS NOT NULL")
    if f.bounding_box is not None:
        box = f.bounding_box
        where.add(
            f"{table.lat_column} BETWEEN {where.param(box.min_lat)} AND {where.param(box.max_lat)}"
        )
        where.add(
            f"{table.lng_column} BETWEEN {where.param(box.min_lng)} AND {where.param(box.max_lng)}"
        )

    if table.date_column:
        if f.date_from:
            where.add(f"{table.date_column} >= {where.param(f.date_from)}")
        if f.date_to:
            where.add(f"{table.date_column} <= {where.param(f.date_to)}")

    if entity_type == EntityType.EVENT:
        if f.category:
            where.add(f"LOWER(e.category) = {where.param(f.category.lower())}")
        if f.categories:
            where.add(f"LOWER(e.category) = ANY({where.param([c.lower() for c in f.categories])})")
        if f.starts_after:
            where.add(f"e.start_date >= {where.param(f.starts_after)}")
        if f.price_range is not None:
            where.add("e.price_min IS NOT NULL")
            if f.price_range.min is not None:
                where.add(f"e.price_min >= {where.param(f.price_range.min)}")
            if f.price_range.max is not None:
                where.add(f"e.price_min <= {where.param(f.price_range.max)}")
        if f.verified_only:
            where.add("o.is_verified = true")
        if f.organization_ids is not None:
            where.add(f"e.organization_id::text = ANY({where.param(list(f.organization_ids))})")
    elif entity_type == EntityType.ORGANIZATION and f.verified_only:
        where.add("o.is_verified = true")

    limit = where.param(f.limit)
    offset = where.param(f.offset)
    query = (
        f"{table.select} WHERE {where.sql()} "
        f"ORDER BY {table.order_by} LIMIT {limit} OFFSET {offset}"
    )
    return query, where.args


# =============================================================================
# Row mapping
# =============================================================================

def _coordinates(row: Dict[str, Any]) -> Optional[Coordinates]:
    if row.get("latitude") is None or row.get("longitude") is None:
        return None
    return Coordinates(lat=float(row["latitude"]), lng=float(row["longitude"]))


def _event_from_row(row: Dict[str, Any]) -> EventCandidate:
    return EventCandidate(
        id=str(row["id"]),
        title=row["title"],
        start_at=row["start_date"],
        description=row.get("description"),
        category=row.get("category"),
        tags=tuple(row.get("tags") or ()),
        venue=row.get("venue_name"),
        address=row.get("address"),
        city=row.get("city"),
        end_at=row.get("end_date"),
        coordinates=_coordinates(row),
        organization_id=str(row["organization_id"]) if row.get("organization_id") else None,
        organization_verified=bool(row.get("organization_verified")),
        price_min=float(row["price_min"]) if row.get("price_min") is not None else None,
        status=row.get("status") or "published",
        visibility=row.get("visibility") or "public",
        likes_count=row.get("likes_count") or 0,
        shares_count=row.get("shares_count") or 0,
        views_count=row.get("views_count") or 0,
        tickets_sold=row.get("tickets_sold") or 0,
    )


def _organization_from_row(row: Dict[str, Any]) -> OrganizationCandidate:
    return OrganizationCandidate(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        city=row.get("city"),
        is_verified=bool(row.get("is_verified")),
        is_active=bool(row.get("is_active", True)),
        follower_count=row.get("follower_count") or 0,
        event_count=row.get("event_count") or 0,
        coordinates=_coordinates(row),
        created_at=row.get("created_at"),
    )


def _venue_from_row(row: Dict[str, Any]) -> VenueCandidate:
    return VenueCandidate(
        id=str(row["id"]),
        name=row["name"],
        address=row.get("address"),
        city=row.get("city"),
        coordinates=_coordinates(row),
        event_count=row.get("event_count") or 0,
    )


def _post_from_row(row: Dict[str, Any]) -> PostCandidate:
    return PostCandidate(
        id=str(row["id"]),
        caption=row.get("caption") or "",
        created_at=row["created_at"],
        author_name=row.get("author_name"),
        tags=tuple(row.get("tags") or ()),
        location=row.get("location"),
        coordinates=_coordinates(row),
        like_count=row.get("like_count") or 0,
        comment_count=row.get("comment_count") or 0,
        share_count=row.get("share_count") or 0,
        is_hidden=bool(row.get("is_hidden")),
    )


_ROW_MAPPERS: Dict[EntityType, Callable[[Dict[str, Any]], Candidate]] = {
    EntityType.EVENT: _event_from_row,
    EntityType.ORGANIZATION: _organization_from_row,
    EntityType.VENUE: _venue_from_row,
    EntityType.POST: _post_from_row,
}


class PostgresSearchRepository(ISearchRepository):
    """Search repository over the shared PostgreSQL schema"""

    def __init__(self, database: Database):
        self.db = database

    async def fetch_candidates(
        self,
        entity_type: EntityType,
        candidate_filter: CandidateFilter,
    ) -> List[Candidate]:
        query, args = build_candidate_query(entity_type, candidate_filter)
        rows = await self.db.fetch_all(query, *args)
        mapper = _ROW_MAPPERS[entity_type]
        return [mapper(row) for row in rows]

    async def fetch_followed_organization_ids(self, user_id: str) -> FrozenSet[str]:
        rows = await self.db.fetch_all(
            """
            SELECT organization_id FROM organization_follows
            WHERE user_id::text = $1
            """,
            user_id,
        )
        return frozenset(str(row["organization_id"]) for row in rows)

    async def fetch_user_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = await self.db.fetch_all(
            """
            SELECT e.category, e.city, COUNT(*) AS interactions
            FROM user_behavior_logs b
            JOIN events e ON e.id = b.event_id
            WHERE b.user_id::text = $1
            GROUP BY e.category, e.city
            """,
            user_id,
        )
        if not rows:
            return None

        categories: Counter = Counter()
        cities = set()
        for row in rows:
            if row.get("category"):
                categories[row["category"].casefold()] += row["interactions"]
            if row.get("city"):
                cities.add(row["city"].casefold())
        top = max(categories.values()) if categories else 0
        return UserProfile(
            user_id=user_id,
            category_affinity={name: count / top for name, count in categories.items()},
            preferred_cities=frozenset(cities),
        )

    async def record_search(self, entry: SearchLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO search_logs (
                kind, query, entity_types, filters, results_count,
                duration_ms, cached, user_id, created_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9)
            """,
            entry.kind,
            entry.query,
            list(entry.entity_types),
            json.dumps(entry.filters, default=str),
            entry.results_count,
            entry.duration_ms,
            entry.cached,
            entry.user_id,
            entry.created_at or utcnow(),
        )
