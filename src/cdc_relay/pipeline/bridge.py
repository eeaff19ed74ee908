"""Bridge loop: Kafka topics → RabbitMQ queues with publish-gated commits."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import StrEnum

import structlog

from cdc_relay.errors import RetryableSourceError, SinkError
from cdc_relay.pipeline.signals import StopToken, unless_stopped
from cdc_relay.sinks.base import QueueSink
from cdc_relay.sources.base import DeliveryUnit, EventSource
from cdc_relay.streaming.naming import DEFAULT_QUEUE_PREFIX, route

logger = structlog.get_logger()


class BridgeState(StrEnum):
    IDLE = "idle"
    POLLING = "polling"
    ROUTING = "routing"
    PUBLISHING = "publishing"
    COMMITTED = "committed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class BridgeStats:
    published: int = 0
    failed: int = 0
    skipped: int = 0
    source_errors: int = 0


class Bridge:
    """Relays every record from the source to the queue named by ``route()``.

    The source position for a record advances only after the sink confirmed
    its publish. A failed publish rewinds the source to that record, so it is
    polled again instead of being skipped.
    """

    def __init__(
        self,
        source: EventSource,
        sink: QueueSink,
        *,
        queue_prefix: str = DEFAULT_QUEUE_PREFIX,
        poll_timeout: float = 1.0,
    ) -> None:
        self._source = source
        self._sink = sink
        self._queue_prefix = queue_prefix
        self._poll_timeout = poll_timeout
        self._state = BridgeState.IDLE
        self.stats = BridgeStats()

    @property
    def state(self) -> BridgeState:
        return self._state

    def _transition(self, state: BridgeState, **context: object) -> None:
        logger.debug("bridge.state", previous=self._state.value, state=state.value, **context)
        self._state = state

    async def run(self, stop: StopToken) -> None:
        """Poll → route → publish → commit until *stop* is set.

        Source and sink are released on every exit path. SubscriptionLostError
        and SinkConnectionError propagate to the caller.
        """
        loop = asyncio.get_running_loop()
        try:
            await self._sink.connect()
            self._source.subscribe()
            logger.info(
                "bridge.started",
                queue_prefix=self._queue_prefix,
                poll_timeout=self._poll_timeout,
            )
            while not stop.is_set():
                self._transition(BridgeState.POLLING)
                try:
                    unit = await loop.run_in_executor(
                        None, self._source.poll, self._poll_timeout
                    )
                except RetryableSourceError as exc:
                    self.stats.source_errors += 1
                    logger.error("bridge.consume_error", error=str(exc))
                    continue
                if unit is None:
                    continue
                await self.process(unit, stop)
        finally:
            await self._release()
            self._transition(BridgeState.STOPPED)
            logger.info("bridge.stopped", reason=stop.reason, **asdict(self.stats))

    async def process(self, unit: DeliveryUnit, stop: StopToken) -> BridgeState:
        """Carry one unit to its terminal state and return that state."""
        log = logger.bind(topic=unit.topic, partition=unit.partition, offset=unit.offset)
        log.info("bridge.received")

        if unit.value is None:
            # Debezium emits a tombstone after each delete; there is no
            # envelope to relay.
            await self._commit(unit)
            self._transition(BridgeState.COMMITTED)
            self.stats.skipped += 1
            log.info("bridge.tombstone_skipped", outcome="committed")
            return self._state

        self._transition(BridgeState.ROUTING, topic=unit.topic)
        destination = route(unit.topic, self._queue_prefix)
        log = log.bind(destination=destination)

        if stop.is_set():
            # Not published, not committed: redelivered after restart.
            log.info("bridge.publish_abandoned", reason=stop.reason)
            return self._state

        self._transition(BridgeState.PUBLISHING, destination=destination)
        try:
            published = await self._publish_unless_stopped(destination, unit, stop)
        except SinkError as exc:
            self._transition(BridgeState.FAILED, destination=destination)
            self.stats.failed += 1
            log.error("bridge.publish_failed", error=str(exc), outcome="rewound")
            self._source.rewind(unit)
            # Back off before the rewound unit is polled again.
            await stop.wait(self._poll_timeout)
            return self._state

        if not published:
            # Cancelled mid-publish and never committed: redelivered after restart.
            log.info("bridge.publish_abandoned", reason=stop.reason)
            return self._state

        await self._commit(unit)
        self._transition(BridgeState.COMMITTED, destination=destination)
        self.stats.published += 1
        log.info("bridge.published", outcome="committed")
        return self._state

    async def _publish_unless_stopped(
        self, destination: str, unit: DeliveryUnit, stop: StopToken
    ) -> bool:
        """Declare + publish, abandoning the attempt if *stop* fires first.

        Returns whether the publish was confirmed; sink errors propagate.
        """
        assert unit.value is not None

        async def _deliver() -> None:
            await self._sink.ensure_destination(destination)
            await self._sink.publish(
                destination, unit.value, durable=True, headers=unit.provenance()
            )

        finished, _ = await unless_stopped(_deliver(), stop)
        return finished

    async def _commit(self, unit: DeliveryUnit) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._source.commit, unit)
        except RetryableSourceError as exc:
            # Already published; a redelivery after restart is a duplicate,
            # never a loss.
            logger.warning(
                "bridge.commit_failed",
                topic=unit.topic,
                partition=unit.partition,
                offset=unit.offset,
                error=str(exc),
            )

    async def _release(self) -> None:
        try:
            self._source.close()
        except Exception as exc:
            logger.error("bridge.source_close_error", error=str(exc))
        try:
            await self._sink.close()
        except Exception as exc:
            logger.error("bridge.sink_close_error", error=str(exc))
