"""Queue consumer loop: decode, classify and settle CDC envelopes one at a time."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

import structlog

from cdc_relay.config.models import DeadLetterConfig
from cdc_relay.errors import SinkError
from cdc_relay.events.envelope import ClassifiedEvent, classify, decode_envelope
from cdc_relay.pipeline.signals import StopToken, unless_stopped
from cdc_relay.sinks.base import Delivery, QueueSink
from cdc_relay.sinks.dead_letter import DeadLetterRouter, FailureTracker, fingerprint

logger = structlog.get_logger()

EventHandler = Callable[[ClassifiedEvent], Awaitable[None]]

_PROVENANCE_HEADERS = {
    "kafka-topic": "topic",
    "kafka-partition": "partition",
    "kafka-offset": "offset",
}


class ConsumerState(StrEnum):
    WAITING = "waiting"
    DECODING = "decoding"
    CLASSIFYING = "classifying"
    ACKED = "acked"
    REJECTED = "rejected"
    STOPPED = "stopped"


@dataclass
class ConsumerStats:
    acked: int = 0
    rejected: int = 0
    dead_lettered: int = 0
    settle_errors: int = 0


class QueueConsumer:
    """Consumes one queue with prefetch 1 and settles every delivery exactly once.

    A delivery that fails decoding, classification or ``on_event`` is requeued
    until it has failed ``max_retries`` times, then dead-lettered.
    """

    def __init__(
        self,
        sink: QueueSink,
        queue_name: str = "cdc.customers",
        *,
        on_event: EventHandler | None = None,
        dead_letter: DeadLetterConfig | None = None,
        prefetch: int = 1,
    ) -> None:
        dl_cfg = dead_letter or DeadLetterConfig()
        self._sink = sink
        self._queue = queue_name
        self._on_event = on_event
        self._prefetch = prefetch
        self._max_retries = dl_cfg.max_retries
        self._tracker = FailureTracker(dl_cfg.tracker_size)
        self._dead_letter = DeadLetterRouter(sink, dl_cfg)
        self._state = ConsumerState.WAITING
        self.stats = ConsumerStats()

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def tracker(self) -> FailureTracker:
        return self._tracker

    def _transition(self, state: ConsumerState, **context: object) -> None:
        logger.debug(
            "consumer.state", previous=self._state.value, state=state.value, **context
        )
        self._state = state

    async def run(self, stop: StopToken) -> None:
        """Consume until *stop* is set; the sink is closed on every exit path."""
        try:
            await self._sink.connect()
            await self._sink.ensure_destination(self._queue)
            logger.info("consumer.started", queue=self._queue, prefetch=self._prefetch)
            self._transition(ConsumerState.WAITING)
            async for delivery in self._sink.consume(
                self._queue, stop=stop, prefetch=self._prefetch
            ):
                await self.process(delivery, stop)
                self._transition(ConsumerState.WAITING)
        finally:
            try:
                await self._sink.close()
            except Exception as exc:
                logger.error("consumer.sink_close_error", error=str(exc))
            self._transition(ConsumerState.STOPPED)
            logger.info("consumer.stopped", reason=stop.reason, **asdict(self.stats))

    async def process(
        self, delivery: Delivery, stop: StopToken | None = None
    ) -> ConsumerState:
        """Decode, classify and settle one delivery; return the terminal state.

        If *stop* fires while ``on_event`` or the dead-letter publish is still
        running, the delivery is left unsettled and the broker redelivers it
        once the channel closes.
        """
        log = logger.bind(
            queue=delivery.destination,
            delivery_tag=delivery.delivery_tag,
            redelivered=delivery.redelivered,
            **_provenance(delivery.headers),
        )
        try:
            self._transition(ConsumerState.DECODING)
            envelope = decode_envelope(delivery.body)

            self._transition(ConsumerState.CLASSIFYING)
            event = classify(envelope)
            log.info("consumer.cdc_event", **event.log_fields())
            if envelope.payload is not None:
                for violation in envelope.payload.expectation_violations():
                    log.warning("consumer.snapshot_mismatch", detail=violation)

            if self._on_event is not None:
                finished, _ = await unless_stopped(self._on_event(event), stop)
                if not finished:
                    _abandoned(log, stop)
                    return self._state
        except Exception as exc:
            await self._reject(delivery, exc, log, stop)
            return self._state

        if await self._settle(delivery, log, ack=True):
            self._tracker.forget(fingerprint(delivery))
            self.stats.acked += 1
            self._transition(ConsumerState.ACKED)
            log.info("consumer.acked", operation=event.operation.value, outcome="acked")
        return self._state

    async def _reject(
        self,
        delivery: Delivery,
        exc: Exception,
        log: structlog.BoundLogger,
        stop: StopToken | None = None,
    ) -> None:
        key = fingerprint(delivery)
        if self._tracker.dead_lettered(key):
            # Copied to the DLQ before, but the ack never reached the broker.
            self._transition(ConsumerState.REJECTED)
            log.error("consumer.processing_error", outcome="dead_lettered")
            if await self._settle(delivery, log, ack=True):
                self._tracker.forget(key)
            return

        attempts = self._tracker.record_failure(key)
        self._transition(ConsumerState.REJECTED)
        log = log.bind(error=str(exc), error_type=type(exc).__name__, attempts=attempts)

        if attempts <= self._max_retries:
            log.error("consumer.processing_error", outcome="requeued")
            if await self._settle(delivery, log, requeue=True):
                self.stats.rejected += 1
            return

        if self._dead_letter.enabled:
            finished, sent = await unless_stopped(
                self._dead_letter.send(delivery, error=exc, attempts=attempts), stop
            )
            if not finished:
                _abandoned(log, stop)
                return
            if sent:
                self._tracker.mark_dead_lettered(key)
                self.stats.dead_lettered += 1
                log.error("consumer.processing_error", outcome="dead_lettered")
                if await self._settle(delivery, log, ack=True):
                    self._tracker.forget(key)
                return
            # The dead-letter queue is unavailable; never drop the message.
            log.error("consumer.processing_error", outcome="requeued")
            if await self._settle(delivery, log, requeue=True):
                self.stats.rejected += 1
            return

        log.error("consumer.processing_error", outcome="discarded")
        if await self._settle(delivery, log, requeue=False):
            self._tracker.forget(key)
            self.stats.rejected += 1

    async def _settle(
        self,
        delivery: Delivery,
        log: structlog.BoundLogger,
        *,
        ack: bool = False,
        requeue: bool = False,
    ) -> bool:
        """Ack or nack; a broker failure leaves redelivery to the broker."""
        try:
            if ack:
                await self._sink.ack(delivery)
            else:
                await self._sink.nack(delivery, requeue=requeue)
        except SinkError as exc:
            self.stats.settle_errors += 1
            log.error("consumer.settle_failed", ack=ack, error=str(exc))
            return False
        return True


def _provenance(headers: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for header, name in _PROVENANCE_HEADERS.items():
        value = headers.get(header)
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if value is not None:
            fields[name] = value
    return fields


def _abandoned(log: structlog.BoundLogger, stop: StopToken | None) -> None:
    log.info("consumer.delivery_abandoned", reason=stop.reason if stop else None)
