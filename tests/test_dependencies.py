from discovery_service.config import Settings
from discovery_service.dependencies import build_cache, build_services
from discovery_service.infrastructure.cache import MemoryResultCache, RedisResultCache
from discovery_service.infrastructure.database import PostgresSearchRepository
from discovery_service.infrastructure.kafka_producer import KafkaProducerManager
from discovery_service.infrastructure.memory import InMemorySearchRepository


def test_defaults_use_shared_backends():
    config = Settings(_env_file=None)

    assert config.REDIS_ENABLED is True
    assert config.KAFKA_ENABLED is True
    assert isinstance(build_cache(config), RedisResultCache)

    services = build_services(config)
    assert isinstance(services.repository, PostgresSearchRepository)
    assert isinstance(services.kafka, KafkaProducerManager)
    assert services.database is not None


def test_redis_backend_falls_back_to_memory_when_disabled():
    config = Settings(_env_file=None, CACHE_BACKEND="redis", REDIS_ENABLED=False)
    assert isinstance(build_cache(config), MemoryResultCache)


def test_dev_settings_run_without_external_services(test_settings):
    services = build_services(test_settings)

    assert isinstance(services.repository, InMemorySearchRepository)
    assert isinstance(services.cache, MemoryResultCache)
    assert services.kafka is None
    assert services.database is None
