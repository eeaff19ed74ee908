"""Transport-agnostic event source protocol.

Defines DeliveryUnit (one record read from a partitioned, offset-addressed
log) and EventSource (the pull-based contract the bridge loop drives).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(slots=True)
class DeliveryUnit:
    """One record read from the source, tagged with its positional identity.

    The payload is carried as opaque bytes; the bridge never decodes it.
    """

    topic: str
    partition: int
    offset: int
    value: bytes | None  # None is a tombstone
    key: bytes | None = None
    headers: dict[str, bytes] = field(default_factory=dict)
    raw: Any = field(default=None, repr=False)  # original transport message

    @property
    def is_tombstone(self) -> bool:
        return self.value is None

    def provenance(self) -> dict[str, Any]:
        """Provenance headers attached to the republished message."""
        return {
            "kafka-topic": self.topic,
            "kafka-partition": self.partition,
            "kafka-offset": self.offset,
        }


@runtime_checkable
class EventSource(Protocol):
    """Protocol the bridge loop relies on.

    ``poll`` blocks for at most *timeout* seconds and is called from a worker
    thread; everything else is cheap and called from the event loop.
    """

    def subscribe(self) -> None:
        """Start the (pattern-based) subscription."""
        ...

    def poll(self, timeout: float) -> DeliveryUnit | None:
        """Return the next unit, or ``None`` if nothing arrived in time.

        Raises RetryableSourceError for transient failures and
        SubscriptionLostError when the subscription cannot continue.
        """
        ...

    def commit(self, unit: DeliveryUnit) -> None:
        """Advance the committed position past *unit*."""
        ...

    def rewind(self, unit: DeliveryUnit) -> None:
        """Re-position so *unit* is delivered again by the next poll."""
        ...

    def close(self) -> None:
        """Unsubscribe and release the underlying client."""
        ...
