"""RabbitMQ queue sink built on aio-pika."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import aio_pika
import structlog
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)
from aio_pika.exceptions import (
    AMQPConnectionError,
    AMQPError,
    ChannelInvalidStateError,
    ProbableAuthenticationError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from cdc_relay.config.models import RabbitMQConfig, RetryConfig
from cdc_relay.errors import PublishError, SinkConnectionError, SinkError
from cdc_relay.pipeline.signals import StopToken
from cdc_relay.sinks.base import Delivery, Disposition

logger = structlog.get_logger()

_TRANSIENT_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError, TimeoutError)


class RabbitMQSink:
    """Durable queue declaration, confirmed publishing and prefetch-bounded consumption."""

    def __init__(
        self,
        config: RabbitMQConfig,
        retry_config: RetryConfig | None = None,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self._config = config
        self._retry = retry_config or RetryConfig()
        self._poll_timeout = poll_timeout
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractRobustChannel | None = None
        self._queues: dict[str, AbstractQueue] = {}
        self._consumer_tags: dict[str, str] = {}

    @property
    def connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def __aenter__(self) -> RabbitMQSink:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._channel is not None:
            return
        cfg = self._config
        try:
            self._connection = await aio_pika.connect_robust(
                host=cfg.host,
                port=cfg.port,
                login=cfg.username,
                password=cfg.password.get_secret_value(),
                virtualhost=cfg.virtual_host,
                timeout=cfg.connection_timeout_seconds,
                heartbeat=cfg.heartbeat_seconds,
                client_properties={"connection_name": "cdc-relay"},
            )
            self._channel = await self._connection.channel(publisher_confirms=True)
        except ProbableAuthenticationError as exc:
            await self.close()
            msg = f"RabbitMQ rejected credentials for user '{cfg.username}'"
            raise SinkConnectionError(msg) from exc
        except (AMQPConnectionError, OSError) as exc:
            await self.close()
            msg = f"Cannot connect to RabbitMQ at {cfg.host}:{cfg.port}: {exc}"
            raise SinkConnectionError(msg) from exc
        logger.info(
            "rabbitmq_sink.connected",
            host=cfg.host,
            port=cfg.port,
            virtual_host=cfg.virtual_host,
        )

    def _require_channel(self) -> AbstractRobustChannel:
        if self._channel is None:
            msg = "RabbitMQSink not connected; call connect() first"
            raise RuntimeError(msg)
        return self._channel

    async def ensure_destination(self, name: str) -> None:
        await self._declare(name)

    async def _declare(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is not None:
            return queue
        channel = self._require_channel()
        try:
            queue = await channel.declare_queue(
                name, durable=True, exclusive=False, auto_delete=False
            )
        except _TRANSIENT_ERRORS as exc:
            msg = f"Failed to declare queue '{name}': {exc}"
            raise SinkError(msg) from exc
        self._queues[name] = queue
        logger.info("rabbitmq_sink.queue_declared", queue=name)
        return queue

    async def publish(
        self,
        destination: str,
        body: bytes,
        *,
        durable: bool = True,
        headers: dict[str, Any] | None = None,
    ) -> None:
        channel = self._require_channel()
        message = aio_pika.Message(
            body,
            headers=headers or {},
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if durable
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
            content_type="application/json",
        )
        retry_cfg = self._retry

        @retry(
            stop=stop_after_attempt(retry_cfg.max_attempts),
            wait=wait_exponential_jitter(
                initial=retry_cfg.initial_wait_seconds,
                max=retry_cfg.max_wait_seconds,
                jitter=retry_cfg.initial_wait_seconds if retry_cfg.jitter else 0,
            ),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            reraise=True,
        )
        async def _send() -> None:
            # Resolves once the broker confirms; a nack or return raises.
            await channel.default_exchange.publish(message, routing_key=destination)

        try:
            await _send()
        except _TRANSIENT_ERRORS as exc:
            msg = f"Publish to '{destination}' not confirmed: {exc}"
            raise PublishError(msg) from exc

        logger.debug(
            "rabbitmq_sink.published",
            queue=destination,
            size=len(body),
        )

    async def consume(
        self, destination: str, *, stop: StopToken, prefetch: int = 1
    ) -> AsyncIterator[Delivery]:
        channel = self._require_channel()
        queue = await self._declare(destination)

        # The broker holds back further deliveries until the outstanding
        # ones are settled, so this buffer never overflows.
        buffer: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue(maxsize=prefetch)
        try:
            await channel.set_qos(prefetch_count=prefetch)
            tag = await queue.consume(buffer.put, no_ack=False)
        except _TRANSIENT_ERRORS as exc:
            msg = f"Cannot start consuming '{destination}': {exc}"
            raise SinkError(msg) from exc
        self._consumer_tags[destination] = tag
        logger.info(
            "rabbitmq_sink.consuming", queue=destination, prefetch=prefetch, tag=tag
        )
        try:
            while not stop.is_set():
                try:
                    message = await asyncio.wait_for(buffer.get(), self._poll_timeout)
                except TimeoutError:
                    continue
                yield _to_delivery(destination, message)
        finally:
            await self._cancel_consumer(destination)

    async def _cancel_consumer(self, destination: str) -> None:
        tag = self._consumer_tags.pop(destination, None)
        queue = self._queues.get(destination)
        if tag is None or queue is None or not self.connected:
            return
        try:
            await queue.cancel(tag)
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "rabbitmq_sink.cancel_failed", queue=destination, error=str(exc)
            )

    async def ack(self, delivery: Delivery) -> None:
        delivery.settle(Disposition.ACKED)
        try:
            await delivery.raw.ack()
        except _TRANSIENT_ERRORS as exc:
            msg = f"Ack of delivery {delivery.delivery_tag} failed: {exc}"
            raise SinkError(msg) from exc

    async def nack(self, delivery: Delivery, *, requeue: bool) -> None:
        delivery.settle(Disposition.REJECTED)
        try:
            await delivery.raw.nack(requeue=requeue)
        except _TRANSIENT_ERRORS as exc:
            msg = f"Nack of delivery {delivery.delivery_tag} failed: {exc}"
            raise SinkError(msg) from exc

    async def close(self) -> None:
        for destination in list(self._consumer_tags):
            await self._cancel_consumer(destination)
        channel, self._channel = self._channel, None
        connection, self._connection = self._connection, None
        self._queues.clear()
        if channel is not None and not channel.is_closed:
            await channel.close()
        if connection is not None and not connection.is_closed:
            await connection.close()
            logger.info("rabbitmq_sink.closed", host=self._config.host)


def _to_delivery(destination: str, message: AbstractIncomingMessage) -> Delivery:
    return Delivery(
        body=message.body,
        destination=destination,
        delivery_tag=message.delivery_tag,
        headers=dict(message.headers or {}),
        message_id=message.message_id,
        redelivered=bool(message.redelivered),
        raw=message,
    )
