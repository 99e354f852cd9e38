"""Hand-off of newly stored messages to the downstream processing queue."""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum

import structlog
from aiokafka import AIOKafkaProducer

from mailpoll_schema import Message, Priority

from .config import QueueConfig, RetryConfig
from .db.store import EnqueueLedger
from .errors import EnqueueError
from .retry import with_retry

logger = structlog.get_logger()


class WorkQueue(ABC):
    """Downstream queue the processing workers consume from."""

    @abstractmethod
    async def enqueue(
        self,
        message_id: uuid.UUID,
        tenant_id: uuid.UUID,
        priority: Priority,
        dedupe_key: str,
    ) -> None:
        """Submit one processing job. *dedupe_key* is the idempotency token."""


class KafkaWorkQueue(WorkQueue):
    """Publishes processing jobs as JSON to a Kafka topic.

    Jobs are keyed by dedupe key, so every retry of the same message
    lands on the same partition and consumers can drop repeats.
    """

    def __init__(self, config: QueueConfig) -> None:
        self._config = config
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            acks=self._config.producer_acks,
            compression_type=self._config.producer_compression,
        )
        await self._producer.start()
        logger.info("kafka_producer_started", servers=self._config.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("kafka_producer_stopped")

    async def enqueue(
        self,
        message_id: uuid.UUID,
        tenant_id: uuid.UUID,
        priority: Priority,
        dedupe_key: str,
    ) -> None:
        assert self._producer is not None, "Producer not started"
        job = {
            "message_id": str(message_id),
            "tenant_id": str(tenant_id),
            "priority": priority.value,
            "dedupe_key": dedupe_key,
            "queued_at": datetime.now(UTC).isoformat(),
        }
        await self._producer.send_and_wait(
            self._config.topic,
            value=json.dumps(job).encode("utf-8"),
            key=dedupe_key.encode("utf-8"),
        )
        logger.debug("job_enqueued", topic=self._config.topic, message_id=str(message_id))


class HandOff(str, Enum):
    QUEUED = "queued"
    ALREADY_QUEUED = "already_queued"


class Enqueuer:
    """Records the hand-off in the ledger, then submits it with retry."""

    def __init__(
        self,
        ledger: EnqueueLedger,
        queue: WorkQueue,
        retry: RetryConfig,
        default_priority: Priority = Priority.NORMAL,
    ) -> None:
        self._ledger = ledger
        self._queue = queue
        self._retry = retry
        self._default_priority = default_priority

    async def hand_off(self, message: Message, priority: Priority | None = None) -> HandOff:
        """Queue *message* for processing exactly once per dedupe key.

        Raises :class:`EnqueueError` once the queue retries are exhausted.
        The ledger entry stays; reconciling it is left to an external sweep.
        """
        recorded = await self._ledger.append(message.tenant_id, message.dedupe_key, message.id)
        if not recorded:
            logger.info("enqueue_skipped_already_queued", dedupe_key=message.dedupe_key)
            return HandOff.ALREADY_QUEUED

        priority = priority or self._default_priority

        @with_retry(self._retry)
        async def _submit() -> None:
            await self._queue.enqueue(message.id, message.tenant_id, priority, message.dedupe_key)

        try:
            await _submit()
        except Exception as exc:
            raise EnqueueError(
                f"queue rejected message {message.id} after "
                f"{self._retry.max_attempts} attempts: {exc}",
            ) from exc
        return HandOff.QUEUED
