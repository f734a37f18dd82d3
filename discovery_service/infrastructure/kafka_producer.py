"""
Kafka producer for publishing search analytics events
"""
from aiokafka import AIOKafkaProducer
from typing import Optional, Dict, Any
import json
import logging

from ..config import settings
from ..domain.models import utcnow
from ..domain.repositories import SearchLogEntry

logger = logging.getLogger(__name__)


class KafkaProducerManager:
    """Kafka producer manager for publishing events"""

    def __init__(self):
        self.producer: Optional[AIOKafkaProducer] = None

    async def start(self):
        """Start Kafka producer"""
        if not settings.KAFKA_ENABLED:
            logger.info("Kafka is disabled")
            return

        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                key_serializer=lambda v: str(v).encode("utf-8") if v else None,
            )
            await self.producer.start()
            logger.info("Kafka producer started successfully")
        except Exception as e:
            logger.warning(f"Failed to start Kafka producer: {e}. Continuing without Kafka.")
            self.producer = None

    async def stop(self):
        """Stop Kafka producer"""
        if self.producer:
            await self.producer.stop()
            logger.info("Kafka producer stopped")

    async def publish_event(self, topic: str, key: Optional[str], event_data: Dict[str, Any]) -> bool:
        """
        Publish event to Kafka topic

        Args:
            topic: Kafka topic name
            key: Message key (user id when known)
            event_data: Event data to publish

        Returns:
            True when the broker accepted the message
        """
        if not self.producer:
            logger.debug(f"Kafka disabled, skipping event: {topic}")
            return False

        try:
            await self.producer.send_and_wait(topic, value=event_data, key=key)
            logger.debug(f"Published event to {topic}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            return False

    def _payload(self, event_type: str, entry: SearchLogEntry) -> Dict[str, Any]:
        return {
            "event_type": event_type,
            "query": entry.query,
            "entity_types": list(entry.entity_types),
            "filters": entry.filters,
            "results_count": entry.results_count,
            "duration_ms": entry.duration_ms,
            "cached": entry.cached,
            "user_id": entry.user_id,
            "timestamp": (entry.created_at or utcnow()).isoformat(),
        }

    async def publish_search_performed(self, entry: SearchLogEntry) -> bool:
        """Publish a search analytics event"""
        return await self.publish_event(
            settings.KAFKA_TOPIC_SEARCH_PERFORMED,
            entry.user_id,
            self._payload("search_performed", entry),
        )

    async def publish_discovery_served(self, entry: SearchLogEntry) -> bool:
        """Publish a discovery feed analytics event"""
        return await self.publish_event(
            settings.KAFKA_TOPIC_DISCOVERY_SERVED,
            entry.user_id,
            self._payload("discovery_served", entry),
        )
