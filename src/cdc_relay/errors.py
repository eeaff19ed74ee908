"""Exception hierarchy shared by the relay's adapters and loops."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


# -- Source (Kafka) ------------------------------------------------------------


class SourceError(RelayError):
    """Raised when the event source fails."""


class RetryableSourceError(SourceError):
    """A transient read error; the subscription is still alive."""


class SubscriptionLostError(SourceError):
    """The subscription cannot continue and the process must restart."""


# -- Sink (RabbitMQ) -----------------------------------------------------------


class SinkError(RelayError):
    """Raised when the queue sink fails."""


class SinkConnectionError(SinkError):
    """Could not connect or authenticate to the broker."""


class PublishError(SinkError):
    """A publish was not confirmed after all retry attempts."""


class DeliveryAlreadySettledError(SinkError):
    """A delivery was acked or nacked more than once."""


# -- Envelope ------------------------------------------------------------------


class EnvelopeDecodeError(RelayError):
    """A queue message body is not a valid CDC envelope."""
