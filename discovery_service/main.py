"""
FastAPI application for Discovery Service
"""
from fastapi import FastAPI, Depends, Query, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import settings
from .dependencies import (
    build_services,
    get_dispatcher,
    get_feed_composer,
    get_result_cache,
    get_suggestions,
)
from .application.dispatcher import QueryDispatcher
from .application.feed import FeedComposer
from .application.suggestions import SuggestionAggregator
from .exceptions import DiscoveryError, TotalFailureError
from .infrastructure.cache import ResultCache
from .schemas import (
    ErrorDetail,
    ErrorResponse,
    FeedRequestBody,
    FeedResponse,
    SearchMeta,
    SearchResponse,
    SuggestionsResponse,
    TrendingResponse,
    build_search_query,
    empty_results,
    feed_response,
    search_response,
    suggestion_items,
    trending_items,
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Discovery Service...")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    services = app.state.services
    await services.start()

    logger.info(f"Discovery Service started successfully on port {settings.PORT}")

    yield

    # Shutdown
    logger.info("Shutting down Discovery Service...")
    await services.stop()
    logger.info("Discovery Service shut down successfully")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-entity search, ranking and personalized discovery",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DiscoveryError)
async def discovery_exception_handler(request: Request, exc: DiscoveryError):
    return JSONResponse(status_code=exc.status, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"{location}: {errors[0].get('msg')}" if location else errors[0].get("msg", message)
    return JSONResponse(
        status_code=400,
        content={"error": {"message": message, "code": "validation_error"}},
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


# =============================================================================
# Search
# =============================================================================

@app.get(
    "/api/v1/search",
    response_model=SearchResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Search"],
    summary="Search events, organizations, venues and posts",
)
async def search(
    q: Optional[str] = Query(None, description="Search text (at least 2 characters)"),
    types: Optional[str] = Query(None, description="Comma separated entity types"),
    category: Optional[str] = Query(None),
    location: Optional[str] = Query(None, description='City name or "lat,lng"'),
    radius_km: Optional[float] = Query(None),
    date_from: Optional[str] = Query(None, description="ISO-8601 date or datetime"),
    date_to: Optional[str] = Query(None, description="ISO-8601 date or datetime"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    sort_by: Optional[str] = Query(None, description="relevance, date, popularity or distance"),
    verified_only: bool = Query(False),
    include_past_events: bool = Query(False),
    price_min: Optional[float] = Query(None, ge=0),
    price_max: Optional[float] = Query(None, ge=0),
    include_trending: bool = Query(False),
    x_user_id: Optional[str] = Header(None),
    dispatcher: QueryDispatcher = Depends(get_dispatcher),
    aggregator: SuggestionAggregator = Depends(get_suggestions),
):
    """
    Ranked search across entity types

    - Results are grouped by entity type but ranked as one list
    - Pagination applies to the merged ranking
    - A failing entity type is omitted rather than failing the request
    """
    query = build_search_query(
        q,
        types=types,
        category=category,
        location=location,
        radius_km=radius_km,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        verified_only=verified_only,
        include_past_events=include_past_events,
        price_min=price_min,
        price_max=price_max,
    )

    try:
        result = await dispatcher.search(query, user_id=x_user_id)
    except TotalFailureError as exc:
        logger.error(f"Search unavailable for '{query.normalized_text}': {exc.failed_branches}")
        payload = ErrorResponse(
            error=ErrorDetail(message=exc.message, code=exc.code),
            results=empty_results(query),
            meta=SearchMeta(total=0, limit=limit, offset=offset, has_more=False),
        )
        return JSONResponse(status_code=exc.status, content=payload.model_dump(mode="json"))

    suggestions = await aggregator.suggestions(query.text, settings.SUGGESTION_LIMIT)
    trending = None
    if include_trending:
        trending = await aggregator.trending(settings.TRENDING_WINDOW_HOURS, settings.TRENDING_LIMIT)
    return search_response(result, suggestions, trending)


@app.get(
    "/api/v1/search/suggestions",
    response_model=SuggestionsResponse,
    tags=["Search"],
    summary="Query completions",
)
async def get_suggestions_endpoint(
    q: str = Query("", description="Prefix"),
    limit: int = Query(settings.SUGGESTION_LIMIT, ge=1, le=50),
    aggregator: SuggestionAggregator = Depends(get_suggestions),
):
    """Previously searched queries starting with the prefix, most used first"""
    records = await aggregator.suggestions(q, limit)
    return SuggestionsResponse(suggestions=suggestion_items(records))


@app.get(
    "/api/v1/search/trending",
    response_model=TrendingResponse,
    tags=["Search"],
    summary="Trending searches",
)
async def get_trending(
    window_hours: int = Query(settings.TRENDING_WINDOW_HOURS, ge=1, le=24 * 30),
    limit: int = Query(settings.TRENDING_LIMIT, ge=1, le=50),
    aggregator: SuggestionAggregator = Depends(get_suggestions),
):
    """Most searched queries within the window"""
    trending = await aggregator.trending(window_hours, limit)
    return TrendingResponse(window_hours=window_hours, trending=trending_items(trending))


# =============================================================================
# Discovery feed
# =============================================================================

@app.post(
    "/api/v1/discover/feed",
    response_model=FeedResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Discovery"],
    summary="Personalized discovery feed",
)
async def discover_feed(
    body: FeedRequestBody,
    composer: FeedComposer = Depends(get_feed_composer),
):
    """
    Merge trending, nearby, recommended and following events

    - Each event appears once, tagged with the stream that ranked it highest
    - When every stream fails the feed is empty and meta.feed_available is false
    """
    request = body.to_domain()
    result = await composer.compose(request)
    return feed_response(result, request)


# =============================================================================
# Internal
# =============================================================================

@app.post("/internal/cache/clear", tags=["Internal"], include_in_schema=settings.DEBUG)
async def clear_cache(cache: ResultCache = Depends(get_result_cache)):
    """Drop every cached result set"""
    removed = await cache.clear()
    logger.info(f"Cleared {removed} cached result sets")
    return {"cleared": removed}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "discovery_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
