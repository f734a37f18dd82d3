"""
Analytics sink - detached recording of searches and served feeds

Recording never blocks or fails the request that triggered it.
"""
import asyncio
from typing import Optional, Set
import logging

from ..domain.repositories import ISearchRepository, SearchLogEntry
from ..exceptions import AnalyticsError
from ..infrastructure.kafka_producer import KafkaProducerManager

logger = logging.getLogger(__name__)


class AnalyticsSink:
    """Writes search log entries to the data store and Kafka in the background"""

    def __init__(
        self,
        repository: Optional[ISearchRepository] = None,
        kafka: Optional[KafkaProducerManager] = None,
    ):
        self.repository = repository
        self.kafka = kafka
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, entry: SearchLogEntry) -> Optional[asyncio.Task]:
        """Schedule recording and return immediately"""
        try:
            task = asyncio.create_task(self._record_safely(entry))
        except RuntimeError as e:
            logger.warning(f"Analytics not scheduled: {e}")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _record_safely(self, entry: SearchLogEntry):
        try:
            await self.record(entry)
        except AnalyticsError as e:
            logger.warning(f"Analytics recording failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected analytics failure: {e}")

    async def record(self, entry: SearchLogEntry):
        """Write one entry to every configured destination"""
        errors = []
        if self.repository is not None:
            try:
                await self.repository.record_search(entry)
            except Exception as e:
                errors.append(f"store: {e}")

        if self.kafka is not None:
            if entry.kind == "discovery":
                published = await self.kafka.publish_discovery_served(entry)
            else:
                published = await self.kafka.publish_search_performed(entry)
            if not published and self.kafka.producer is not None:
                errors.append("kafka: publish failed")

        if errors:
            raise AnalyticsError("; ".join(errors))

    async def drain(self):
        """Wait for in-flight recordings (shutdown and tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
