import pytest

from discovery_service.domain.models import EntityType

from factories import TORONTO, event, music_events, venue


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_short_query_returns_validation_payload(api_client, repository):
    resp = await api_client.get("/api/v1/search", params={"q": "m"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert "at least 2 characters" in body["error"]["message"]
    assert repository.fetch_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {"q": "music", "sort_by": "loudness"},
        {"q": "music", "types": "events,concerts"},
        {"q": "music", "date_from": "next tuesday"},
        {"q": "music", "limit": 0},
        {"q": "music", "location": "95.0,10.0"},
        {"q": "music", "location": "43.65,-79.38", "radius_km": "nan"},
        {"q": "music", "location": "43.65,-79.38", "radius_km": "inf"},
        {"q": "music", "price_max": "inf"},
        {"q": "music", "price_min": "nan"},
    ],
)
async def test_malformed_parameters_are_rejected(api_client, params):
    resp = await api_client.get("/api/v1/search", params=params)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_search_groups_results_and_reports_meta(api_client, store):
    await store.seed(events=music_events(), venues=[venue("v1", "Music Hall", city="Toronto")])

    resp = await api_client.get(
        "/api/v1/search",
        params={"q": "music", "types": "events,venues", "limit": 10, "include_trending": "true"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["query"] == "music"
    assert [e["id"] for e in body["results"]["events"]] == ["evt-summer", "evt-jazz"]
    assert [v["id"] for v in body["results"]["venues"]] == ["v1"]
    assert body["results"]["events"][0]["highlights"][0] == "**Summer Music Festival**"
    assert body["meta"]["total"] == 3
    assert body["meta"]["has_more"] is False
    assert body["meta"]["cached"] is False
    assert body["meta"]["facets"]["types"] == {"events": 2, "venues": 1}
    assert body["suggestions"] == ["music"]
    assert body["trending"] == [{"query": "music", "count": 1}]


@pytest.mark.asyncio
async def test_second_identical_search_is_cached(api_client, store):
    await store.seed(events=music_events())

    first = await api_client.get("/api/v1/search", params={"q": "music"})
    second = await api_client.get("/api/v1/search", params={"q": "Music"})

    assert second.json()["meta"]["cached"] is True
    assert second.json()["results"] == first.json()["results"]


@pytest.mark.asyncio
async def test_geo_search_reports_distance(api_client, store):
    await store.seed(venues=[venue("v1", "Concert Hall", coordinates=TORONTO)])

    resp = await api_client.get(
        "/api/v1/search",
        params={"q": "hall", "types": "venues", "location": "43.6532,-79.3832", "radius_km": 5},
    )

    assert resp.status_code == 200
    assert resp.json()["results"]["venues"][0]["distance_km"] == 0


@pytest.mark.asyncio
async def test_total_failure_returns_503_with_empty_results(api_client, store, repository):
    await store.seed(events=music_events())
    repository.fail_types = set(EntityType)

    resp = await api_client.get("/api/v1/search", params={"q": "music", "types": "events"})

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "service_unavailable"
    assert body["results"] == {"events": []}
    assert body["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_suggestions_and_trending_endpoints(api_client, store):
    await store.seed(events=music_events())
    for text in ("music", "music", "music", "museum"):
        await api_client.get("/api/v1/search", params={"q": text})

    suggestions = await api_client.get("/api/v1/search/suggestions", params={"q": "mus"})
    trending = await api_client.get("/api/v1/search/trending", params={"limit": 1})

    assert [s["query"] for s in suggestions.json()["suggestions"]] == ["music", "museum"]
    assert trending.json() == {"window_hours": 24, "trending": [{"query": "music", "count": 3}]}


@pytest.mark.asyncio
async def test_discovery_feed(api_client, store):
    await store.seed(events=[
        event("e1", "Street Festival", days=1, category="Festival", city="Toronto", coordinates=TORONTO),
        event("e2", "Book Club", days=12, category="Literature", city="Toronto"),
    ])

    resp = await api_client.post(
        "/api/v1/discover/feed",
        json={"location": "43.6532,-79.3832", "radius_km": 25, "limit": 10},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert [e["id"] for e in body["events"]] == ["e1", "e2"]
    assert body["events"][0]["source_stream"] == "nearby"
    assert body["meta"]["feed_available"] is True
    assert body["meta"]["user_location"] == {"lat": 43.6532, "lng": -79.3832}
    assert {c["name"] for c in body["insights"]["popular_categories"]} == {"Festival", "Literature"}


@pytest.mark.asyncio
async def test_discovery_feed_unavailable(api_client, store, repository):
    await store.seed(events=music_events())
    repository.fail_types = {EntityType.EVENT}

    resp = await api_client.post("/api/v1/discover/feed", json={})

    assert resp.status_code == 200
    body = resp.json()
    assert body["events"] == []
    assert body["meta"]["feed_available"] is False


@pytest.mark.asyncio
async def test_discovery_feed_rejects_bad_radius(api_client):
    resp = await api_client.post("/api/v1/discover/feed", json={"radius_km": -5})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_clear_cache(api_client, store):
    await store.seed(events=music_events())
    await api_client.get("/api/v1/search", params={"q": "music"})

    resp = await api_client.post("/internal/cache/clear")

    assert resp.json() == {"cleared": 1}
    again = await api_client.get("/api/v1/search", params={"q": "music"})
    assert again.json()["meta"]["cached"] is False


@pytest.mark.asyncio
async def test_discovery_feed_rejects_infinite_radius(api_client, repository):
    resp = await api_client.post("/api/v1/discover/feed", json={"radius_km": "Infinity"})
    assert resp.status_code == 400
    assert repository.fetch_calls == []
