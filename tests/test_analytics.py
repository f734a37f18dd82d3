import pytest

from discovery_service.application.analytics import AnalyticsSink
from discovery_service.domain.models import EntityType, SearchQuery
from discovery_service.domain.repositories import SearchLogEntry
from discovery_service.exceptions import AnalyticsError
from discovery_service.infrastructure.kafka_producer import KafkaProducerManager

from factories import music_events


class ExplodingKafka(KafkaProducerManager):
    def __init__(self):
        super().__init__()
        self.producer = object()
        self.sent = []

    async def publish_event(self, topic, key, event_data):
        self.sent.append(topic)
        return False


def entry(**overrides):
    values = dict(kind="search", query="music", entity_types=("event",), results_count=2)
    values.update(overrides)
    return SearchLogEntry(**values)


@pytest.mark.asyncio
async def test_store_failure_does_not_fail_search(dispatcher, store, repository, analytics):
    await store.seed(events=music_events())
    repository.fail_record = True

    result = await dispatcher.search(SearchQuery(text="music", entity_types=frozenset({EntityType.EVENT})))
    await analytics.drain()

    assert result.total == 2
    assert repository.recorded == []
    assert analytics.pending == 0


@pytest.mark.asyncio
async def test_record_raises_analytics_error_on_store_failure(repository):
    repository.fail_record = True
    sink = AnalyticsSink(repository=repository)

    with pytest.raises(AnalyticsError):
        await sink.record(entry())


@pytest.mark.asyncio
async def test_submit_swallows_failures(repository, caplog):
    repository.fail_record = True
    sink = AnalyticsSink(repository=repository)

    task = sink.submit(entry())
    await sink.drain()

    assert task.done()
    assert task.exception() is None
    assert "Analytics recording failed" in caplog.text


@pytest.mark.asyncio
async def test_kafka_topic_follows_entry_kind(repository):
    kafka = ExplodingKafka()
    sink = AnalyticsSink(repository=repository, kafka=kafka)

    with pytest.raises(AnalyticsError):
        await sink.record(entry(kind="discovery", query=None))
    with pytest.raises(AnalyticsError):
        await sink.record(entry())

    assert kafka.sent == ["discovery.served", "search.performed"]
    assert len(repository.recorded) == 2


@pytest.mark.asyncio
async def test_disabled_kafka_is_not_an_error(repository):
    sink = AnalyticsSink(repository=repository, kafka=KafkaProducerManager())

    await sink.record(entry())

    assert len(repository.recorded) == 1
