"""Retry cap and dead-letter routing for messages the consumer cannot process."""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict

import structlog

from cdc_relay.config.models import DeadLetterConfig
from cdc_relay.errors import SinkError
from cdc_relay.sinks.base import Delivery, QueueSink
from cdc_relay.streaming.naming import dead_letter_queue_name

logger = structlog.get_logger()


def fingerprint(delivery: Delivery) -> str:
    """Identify a message across redeliveries.

    Uses the AMQP ``message_id`` when the producer set one, otherwise a digest
    of queue name and body.
    """
    if delivery.message_id:
        return f"id:{delivery.message_id}"
    digest = hashlib.sha256(delivery.destination.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(delivery.body)
    return f"sha256:{digest.hexdigest()}"


class FailureTracker:
    """Bounded LRU of processing failures per message fingerprint.

    Counts live in process memory: a restart gives every message a fresh
    budget of ``max_retries`` requeues. Messages already copied to the
    dead-letter queue are remembered separately until their ack succeeds.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        self._capacity = capacity
        self._counts: OrderedDict[str, int] = OrderedDict()
        self._dead_lettered: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._counts)

    def record_failure(self, key: str) -> int:
        """Increment and return the failure count for *key*."""
        count = self._counts.pop(key, 0) + 1
        self._counts[key] = count
        while len(self._counts) > self._capacity:
            self._counts.popitem(last=False)
        return count

    def attempts(self, key: str) -> int:
        return self._counts.get(key, 0)

    def mark_dead_lettered(self, key: str) -> None:
        """Drop the failure count for *key* and remember it reached the DLQ."""
        self._counts.pop(key, None)
        self._dead_lettered.pop(key, None)
        self._dead_lettered[key] = None
        while len(self._dead_lettered) > self._capacity:
            self._dead_lettered.popitem(last=False)

    def dead_lettered(self, key: str) -> bool:
        return key in self._dead_lettered

    def forget(self, key: str) -> None:
        self._counts.pop(key, None)
        self._dead_lettered.pop(key, None)


class DeadLetterRouter:
    """Publishes poison messages to ``<queue>.<suffix>`` with diagnostic headers."""

    def __init__(self, sink: QueueSink, config: DeadLetterConfig | None = None) -> None:
        self._sink = sink
        self._config = config or DeadLetterConfig()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def send(self, delivery: Delivery, *, error: Exception, attempts: int) -> bool:
        """Dead-letter *delivery*; return False if the publish failed."""
        dlq = dead_letter_queue_name(delivery.destination, self._config.queue_suffix)

        headers: dict[str, object] = {}
        if self._config.include_headers:
            headers = {
                **delivery.headers,
                "dlq.source.queue": delivery.destination,
                "dlq.error.message": str(error),
                "dlq.error.type": type(error).__name__,
                "dlq.attempts": attempts,
                "dlq.timestamp": int(time.time() * 1000),
            }

        try:
            await self._sink.ensure_destination(dlq)
            await self._sink.publish(dlq, delivery.body, durable=True, headers=headers)
        except SinkError as dlq_exc:
            logger.error(
                "dlq.write_failed",
                queue=dlq,
                source_queue=delivery.destination,
                delivery_tag=delivery.delivery_tag,
                original_error=str(error),
                dlq_error=str(dlq_exc),
            )
            return False
        logger.warning(
            "dlq.message_sent",
            queue=dlq,
            source_queue=delivery.destination,
            delivery_tag=delivery.delivery_tag,
            attempts=attempts,
            error=str(error),
        )
        return True
