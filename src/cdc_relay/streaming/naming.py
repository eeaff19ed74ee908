"""Kafka topic → RabbitMQ queue naming conventions."""

from __future__ import annotations

DEFAULT_QUEUE_PREFIX = "cdc"


def route(stream_name: str, prefix: str = DEFAULT_QUEUE_PREFIX) -> str:
    """Map a CDC topic to its queue: ``<prefix>.<last segment, lower-cased>``.

    ``sqlserver.dbo.Customers`` → ``cdc.customers``.  A name without dots is
    used whole, so ``NoDots`` → ``cdc.nodots``.
    """
    segment = stream_name.rsplit(".", 1)[-1]
    return f"{prefix}.{segment.lower()}"


def dead_letter_queue_name(queue: str, suffix: str = "dlq") -> str:
    """Build a dead-letter queue name: ``<queue>.<suffix>``."""
    return f"{queue}.{suffix}"


def subscription_pattern(topic_pattern: str) -> str:
    """Turn a topic pattern into a librdkafka regex subscription.

    librdkafka only treats a subscription as a regex when it starts with ``^``.
    """
    if topic_pattern.startswith("^"):
        return topic_pattern
    return f"^{topic_pattern}"
