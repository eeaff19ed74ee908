"""Health checks for the relay's brokers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog
from confluent_kafka.admin import AdminClient

from cdc_relay.config.models import KafkaConfig, RabbitMQConfig, RelayConfig
from cdc_relay.errors import SinkError
from cdc_relay.sinks.rabbitmq import RabbitMQSink

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class RelayHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_kafka(config: KafkaConfig, timeout: float = 5.0) -> ComponentHealth:
    """Check Kafka broker connectivity."""
    try:
        admin_conf: dict[str, Any] = {"bootstrap.servers": config.bootstrap_servers}
        admin = AdminClient(admin_conf)
        meta = admin.list_topics(timeout=timeout)
        return ComponentHealth(
            name="kafka",
            status=Status.HEALTHY,
            detail=f"{len(meta.brokers)} broker(s)",
        )
    except Exception as exc:
        logger.warning("health.kafka_unreachable", error=str(exc))
        return ComponentHealth(name="kafka", status=Status.UNHEALTHY, detail=str(exc))


async def check_rabbitmq(config: RabbitMQConfig) -> ComponentHealth:
    """Check RabbitMQ by opening and closing a channel."""
    sink = RabbitMQSink(config)
    try:
        async with sink:
            pass
    except SinkError as exc:
        logger.warning("health.rabbitmq_unreachable", error=str(exc))
        return ComponentHealth(
            name="rabbitmq", status=Status.UNHEALTHY, detail=str(exc)
        )
    return ComponentHealth(
        name="rabbitmq",
        status=Status.HEALTHY,
        detail=f"{config.host}:{config.port}{config.virtual_host}",
    )


async def check_relay_health(config: RelayConfig | None = None) -> RelayHealth:
    """Run all health checks and return aggregated result.

    The Kafka metadata request blocks, so it runs in a worker thread while the
    RabbitMQ check proceeds on the loop.
    """
    cfg = config or RelayConfig()
    kafka, rabbitmq = await asyncio.gather(
        asyncio.to_thread(check_kafka, cfg.kafka),
        check_rabbitmq(cfg.rabbitmq),
    )
    return RelayHealth(components=[kafka, rabbitmq])
