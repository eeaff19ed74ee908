"""Pydantic configuration models for the Kafka → RabbitMQ relay."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class CommitPolicy(StrEnum):
    """How the Kafka group position advances once a unit is published."""

    # Synchronous commit of offset + 1 right after a confirmed publish.
    EXPLICIT = "explicit"
    # Background auto-commit, but offsets are only stored after publish.
    AUTO = "auto"


class KafkaConfig(BaseModel):
    """Kafka broker and consumer settings for the bridge."""

    bootstrap_servers: str = "localhost:9092"
    group_id: str = "kafka-rabbitmq-bridge"
    # Regex over topic names; a leading ``^`` is added when missing.
    topic_pattern: str = Field(default="sqlserver.*", min_length=1)
    auto_offset_reset: str = "earliest"
    commit_policy: CommitPolicy = CommitPolicy.EXPLICIT
    auto_commit_interval_ms: int = Field(default=5000, ge=100)
    session_timeout_ms: int = Field(default=45000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)


class RabbitMQConfig(BaseModel):
    """RabbitMQ connection settings, shared by the bridge and the consumer."""

    host: str = "localhost"
    port: int = Field(default=5672, ge=1, le=65535)
    username: str = "guest"
    password: SecretStr = SecretStr("guest")
    virtual_host: str = "/"
    heartbeat_seconds: int = Field(default=60, ge=0)
    connection_timeout_seconds: float = Field(default=10.0, gt=0)


QueuePrefix = Annotated[str, Field(pattern=r"^[a-zA-Z][a-zA-Z0-9._-]*$")]


class BridgeConfig(BaseModel):
    """Bridge loop settings."""

    queue_prefix: QueuePrefix = "cdc"
    poll_timeout_seconds: float = Field(default=1.0, gt=0, le=30)


class ConsumerConfig(BaseModel):
    """Queue consumer loop settings."""

    queue_name: str = Field(default="cdc.customers", min_length=1)
    prefetch_count: int = Field(default=1, ge=1)
    poll_timeout_seconds: float = Field(default=1.0, gt=0, le=30)

    @field_validator("prefetch_count")
    @classmethod
    def single_outstanding_delivery(cls, v: int) -> int:
        """Processing is strictly sequential, so only one delivery may be held."""
        if v != 1:
            msg = "prefetch_count must be 1: the consumer settles one delivery at a time"
            raise ValueError(msg)
        return v


class DeadLetterConfig(BaseModel):
    """Poison-message policy for the queue consumer."""

    enabled: bool = True
    queue_suffix: str = Field(default="dlq", min_length=1)
    max_retries: int = Field(default=3, ge=0)
    include_headers: bool = True
    tracker_size: int = Field(default=10_000, ge=1)


class RetryConfig(BaseModel):
    """Retry / backoff configuration for RabbitMQ publishes."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=0.5, gt=0)
    max_wait_seconds: float = Field(default=10.0, gt=0)
    jitter: bool = True


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: str = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"Unknown log level '{v}'"
            raise ValueError(msg)
        return level


class RelayConfig(BaseModel, extra="forbid"):
    """Top-level relay configuration."""

    kafka: KafkaConfig = KafkaConfig()
    rabbitmq: RabbitMQConfig = RabbitMQConfig()
    bridge: BridgeConfig = BridgeConfig()
    consumer: ConsumerConfig = ConsumerConfig()
    dead_letter: DeadLetterConfig = DeadLetterConfig()
    retry: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()
