"""Kafka EventSource with pattern subscription with publish-gated offset commits."""

from __future__ import annotations

from typing import Any

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, Message, TopicPartition

from cdc_relay.config.models import CommitPolicy, KafkaConfig
from cdc_relay.errors import RetryableSourceError, SubscriptionLostError
from cdc_relay.sources.base import DeliveryUnit
from cdc_relay.streaming.naming import subscription_pattern

logger = structlog.get_logger()


def build_consumer_config(config: KafkaConfig) -> dict[str, Any]:
    """Build the confluent_kafka Consumer config for a commit policy.

    Neither policy lets librdkafka store an offset on read: with ``auto`` the
    background committer only flushes offsets the bridge stored after a
    confirmed publish.
    """
    conf: dict[str, Any] = {
        "bootstrap.servers": config.bootstrap_servers,
        "group.id": config.group_id,
        "auto.offset.reset": config.auto_offset_reset,
        "session.timeout.ms": config.session_timeout_ms,
        "max.poll.interval.ms": config.max_poll_interval_ms,
        "enable.auto.offset.store": False,
    }
    if config.commit_policy == CommitPolicy.AUTO:
        conf["enable.auto.commit"] = True
        conf["auto.commit.interval.ms"] = config.auto_commit_interval_ms
    else:
        conf["enable.auto.commit"] = False
    return conf


class KafkaEventSource:
    """Wraps a confluent_kafka Consumer behind the EventSource protocol."""

    def __init__(self, config: KafkaConfig, consumer: Consumer | None = None) -> None:
        self._config = config
        self._pattern = subscription_pattern(config.topic_pattern)
        self._consumer = consumer or Consumer(build_consumer_config(config))
        self._subscribed = False
        self._closed = False

    @property
    def pattern(self) -> str:
        return self._pattern

    def subscribe(self) -> None:
        self._consumer.subscribe(
            [self._pattern],
            on_assign=self._handle_assign,
            on_revoke=self._handle_revoke,
        )
        self._subscribed = True
        logger.info(
            "kafka_source.subscribed",
            pattern=self._pattern,
            group_id=self._config.group_id,
            commit_policy=self._config.commit_policy.value,
        )

    def _handle_assign(self, consumer: Any, partitions: list[Any]) -> None:
        logger.info(
            "kafka_source.partitions_assigned",
            partitions=[(tp.topic, tp.partition) for tp in partitions],
        )

    def _handle_revoke(self, consumer: Any, partitions: list[Any]) -> None:
        logger.info(
            "kafka_source.partitions_revoked",
            partitions=[(tp.topic, tp.partition) for tp in partitions],
        )

    def poll(self, timeout: float) -> DeliveryUnit | None:
        try:
            msg = self._consumer.poll(timeout)
        except KafkaException as exc:
            raise _classify_error(exc.args[0] if exc.args else None, exc) from exc
        if msg is None:
            return None

        err = msg.error()
        if err is not None:
            if err.code() == KafkaError._PARTITION_EOF:  # type: ignore[attr-defined]
                return None
            raise _classify_error(err)
        return _to_unit(msg)

    def commit(self, unit: DeliveryUnit) -> None:
        # committed = next-to-fetch
        tp = TopicPartition(unit.topic, unit.partition, unit.offset + 1)
        try:
            if self._config.commit_policy == CommitPolicy.AUTO:
                self._consumer.store_offsets(offsets=[tp])
            else:
                self._consumer.commit(offsets=[tp], asynchronous=False)
        except KafkaException as exc:
            raise _classify_error(exc.args[0] if exc.args else None, exc) from exc

    def rewind(self, unit: DeliveryUnit) -> None:
        try:
            self._consumer.seek(TopicPartition(unit.topic, unit.partition, unit.offset))
        except KafkaException as exc:
            # The partition was revoked; its next owner resumes from the
            # committed offset, which is still at or before this unit.
            logger.warning(
                "kafka_source.rewind_failed",
                topic=unit.topic,
                partition=unit.partition,
                offset=unit.offset,
                error=str(exc),
            )
            return
        logger.info(
            "kafka_source.rewound",
            topic=unit.topic,
            partition=unit.partition,
            offset=unit.offset,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._subscribed:
                self._consumer.unsubscribe()
        finally:
            self._consumer.close()
            logger.info("kafka_source.closed", pattern=self._pattern)


def _to_unit(msg: Message) -> DeliveryUnit:
    topic = msg.topic()
    partition = msg.partition()
    offset = msg.offset()
    assert topic is not None
    assert partition is not None
    assert offset is not None
    return DeliveryUnit(
        topic=topic,
        partition=partition,
        offset=offset,
        value=msg.value(),
        key=msg.key(),
        headers=dict(msg.headers() or []),
        raw=msg,
    )


def _classify_error(
    err: KafkaError | None, cause: Exception | None = None
) -> RetryableSourceError | SubscriptionLostError:
    if err is None:
        return RetryableSourceError(str(cause) if cause else "unknown Kafka error")
    if err.fatal():
        return SubscriptionLostError(f"Fatal Kafka error: {err.str()}")
    return RetryableSourceError(f"Kafka error: {err.str()}")
