import pytest
import pytest_asyncio

from discovery_service.application.feed import interleave, merge_streams
from discovery_service.domain.models import (
    EntityType,
    FeedItem,
    FeedRequest,
    FeedStream,
    Pagination,
)

from factories import MISSISSAUGA, MONTREAL, TORONTO, event


@pytest_asyncio.fixture
async def seeded(store):
    await store.seed(
        events=[
            event(
                "rock", "Rock Show", days=2, category="Music", city="Toronto",
                coordinates=TORONTO, tags=("live", "rock"), likes_count=300, tickets_sold=200,
            ),
            event("art", "Art Walk", days=10, category="Arts", city="Toronto", coordinates=MISSISSAUGA),
            event(
                "tech", "Tech Meetup", days=5, category="Tech", city="Montreal",
                coordinates=MONTREAL, organization_id="org-2", tags=("live",),
            ),
            event("gone", "Old Fair", days=-2, category="Arts", city="Toronto", coordinates=TORONTO),
        ],
        follows=[("user-1", "org-2")],
        interactions=[("user-1", "tech")],
    )
    return store


def item(id, stream, score):
    return FeedItem(candidate=event(id, id), source_stream=stream, relevance_score=score)


def test_merge_keeps_highest_scoring_duplicate():
    merged = merge_streams({
        FeedStream.TRENDING: [item("a", FeedStream.TRENDING, 3.0), item("b", FeedStream.TRENDING, 1.0)],
        FeedStream.FOLLOWING: [item("a", FeedStream.FOLLOWING, 5.0)],
        FeedStream.NEARBY: [item("b", FeedStream.NEARBY, 1.0)],
    })

    assert [(i.candidate.id, i.source_stream, i.relevance_score) for i in merged] == [
        ("a", FeedStream.FOLLOWING, 5.0),
        ("b", FeedStream.TRENDING, 1.0),
    ]


def test_interleave_round_robins_and_keeps_stream_order():
    ranked = [
        item("t1", FeedStream.TRENDING, 9),
        item("t2", FeedStream.TRENDING, 8),
        item("t3", FeedStream.TRENDING, 7),
        item("n1", FeedStream.NEARBY, 6),
        item("n2", FeedStream.NEARBY, 5),
    ]
    assert [i.candidate.id for i in interleave(ranked)] == ["t1", "n1", "t2", "n2", "t3"]


@pytest.mark.asyncio
async def test_feed_items_are_unique_and_tagged(composer, seeded):
    result = await composer.compose(FeedRequest(user_id="user-1", coordinates=TORONTO, radius_km=30))

    ids = [i.candidate.id for i in result.items]
    assert len(ids) == len(set(ids))
    assert set(ids) == {"rock", "art", "tech"}
    assert result.available is True

    scores = [i.relevance_score for i in result.items]
    assert scores == sorted(scores, reverse=True)

    by_id = {i.candidate.id: i for i in result.items}
    # category affinity and preferred city outweigh following and trending
    assert by_id["tech"].source_stream == FeedStream.RECOMMENDED
    assert by_id["rock"].source_stream == FeedStream.NEARBY
    assert result.stream_counts == {"trending": 3, "nearby": 2, "recommended": 3, "following": 1}


@pytest.mark.asyncio
async def test_anonymous_feed_without_location_uses_trending_only(composer, seeded, repository):
    result = await composer.compose(FeedRequest())

    assert {i.source_stream for i in result.items} == {FeedStream.TRENDING}
    assert list(result.stream_counts) == ["trending"]
    assert len(repository.calls_for(EntityType.EVENT)) == 1


@pytest.mark.asyncio
async def test_text_location_filters_nearby_by_city(composer, seeded):
    result = await composer.compose(FeedRequest(location="montreal", include_trending=False))

    assert [(i.candidate.id, i.source_stream) for i in result.items] == [("tech", FeedStream.NEARBY)]


@pytest.mark.asyncio
async def test_failed_stream_is_omitted(composer, seeded, repository):
    repository.fail_profile = True

    result = await composer.compose(FeedRequest(user_id="user-1"))

    assert result.available is True
    assert result.failed_streams == (FeedStream.RECOMMENDED,)
    assert result.items
    assert all(i.source_stream != FeedStream.RECOMMENDED for i in result.items)


@pytest.mark.asyncio
async def test_all_streams_failing_marks_feed_unavailable(composer, seeded, repository):
    repository.fail_types = {EntityType.EVENT}

    result = await composer.compose(FeedRequest(user_id="user-1", coordinates=TORONTO))

    assert result.available is False
    assert result.items == []
    assert result.total == 0
    assert set(result.failed_streams) == set(FeedStream)


@pytest.mark.asyncio
async def test_categories_restrict_every_stream(composer, seeded):
    result = await composer.compose(FeedRequest(user_id="user-1", categories=("arts",)))
    assert [i.candidate.id for i in result.items] == ["art"]


@pytest.mark.asyncio
async def test_feed_pagination_after_merge(composer, seeded):
    full = await composer.compose(FeedRequest(user_id="user-1", coordinates=TORONTO))
    page = await composer.compose(
        FeedRequest(user_id="user-1", coordinates=TORONTO, pagination=Pagination(limit=1, offset=1))
    )

    assert page.total == full.total == 3
    assert page.items == full.items[1:2]
    assert page.has_more is True


@pytest.mark.asyncio
async def test_trending_queries_boost_and_feed_insights(composer, seeded, suggestions):
    before = await composer.compose(FeedRequest(include_nearby=False))
    await suggestions.record("rock")
    after = await composer.compose(FeedRequest(include_nearby=False))

    score = lambda result: next(i.relevance_score for i in result.items if i.candidate.id == "rock")
    assert score(after) == pytest.approx(score(before) + 2.0)

    assert after.insights.trending_topics[:2] == ["rock", "live"]
    categories = {c.name: c.count for c in after.insights.popular_categories}
    assert categories == {"Music": 1, "Arts": 1, "Tech": 1}


@pytest.mark.asyncio
async def test_interleaved_feed_alternates_sources(composer, seeded):
    result = await composer.compose(
        FeedRequest(user_id="user-1", coordinates=TORONTO, radius_km=30, interleave=True)
    )
    sources = [i.source_stream for i in result.items]
    assert sources[0] != sources[1]
