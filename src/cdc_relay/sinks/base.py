"""Queue sink protocol and the sink-side delivery record."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from cdc_relay.errors import DeliveryAlreadySettledError
from cdc_relay.pipeline.signals import StopToken


class Disposition(StrEnum):
    PENDING = "pending"
    ACKED = "acked"
    REJECTED = "rejected"


@dataclass(slots=True)
class Delivery:
    """One message handed out by ``QueueSink.consume``.

    The delivery tag is the broker's ack handle and may be settled exactly
    once, by ``QueueSink.ack`` or ``QueueSink.nack``.
    """

    body: bytes
    destination: str
    delivery_tag: int | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    redelivered: bool = False
    disposition: Disposition = Disposition.PENDING
    raw: Any = field(default=None, repr=False)

    def settle(self, disposition: Disposition) -> None:
        """Record the terminal disposition; a second call raises."""
        if self.disposition != Disposition.PENDING:
            msg = (
                f"Delivery {self.delivery_tag} on '{self.destination}' "
                f"already {self.disposition.value}"
            )
            raise DeliveryAlreadySettledError(msg)
        self.disposition = disposition


@runtime_checkable
class QueueSink(Protocol):
    """Protocol both loops use to talk to the durable queue."""

    async def connect(self) -> None:
        """Open the connection and channel."""
        ...

    async def ensure_destination(self, name: str) -> None:
        """Declare a durable queue; repeated calls are no-ops."""
        ...

    async def publish(
        self,
        destination: str,
        body: bytes,
        *,
        durable: bool = True,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """Publish and wait for the broker confirm, or raise PublishError."""
        ...

    def consume(
        self, destination: str, *, stop: StopToken, prefetch: int = 1
    ) -> AsyncIterator[Delivery]:
        """Yield deliveries one at a time until *stop* is set."""
        ...

    async def ack(self, delivery: Delivery) -> None:
        ...

    async def nack(self, delivery: Delivery, *, requeue: bool) -> None:
        ...

    async def close(self) -> None:
        """Release the channel and connection."""
        ...
