"""Event bus interface definitions.

The bus decouples the services of the saga: each service's coordinator
subscribes under its own consumer group and reacts to envelopes published
by the others. Delivery is at-least-once, ordered per partition key.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from fulfillment.events.base import EventEnvelope

# Handlers may be sync or async callables
EnvelopeHandler = Callable[[EventEnvelope], Awaitable[None] | None]


class EventBus(ABC):
    """
    Abstract publish/subscribe bus for event envelopes.

    Contract:
        - ``publish`` returns only after the envelope is durably accepted.
        - Every consumer group whose topics match an envelope receives it
          at least once. Handlers must therefore be idempotent.
        - Envelopes sharing a partition key are delivered to a consumer
          group one at a time, in publication order. Different partition
          keys are delivered in parallel.
        - A failing handler is retried with exponential backoff; after the
          last attempt the envelope is dead-lettered. Nothing is dropped.

    Topics are event types (``payment.failed``) or shell-style patterns
    (``payment.*``).

    Tracing Support:
        Implementations use the composition-based ``Tracer`` from
        ``fulfillment.observability`` with span names:

        - ``fulfillment.event_bus.publish``
        - ``fulfillment.event_bus.deliver``
        - ``fulfillment.event_bus.dead_letter``

    Example:
        >>> bus = InMemoryEventBus()
        >>> bus.subscribe("payment.*", coordinator.handle, consumer_group="order-service")
        >>> await bus.publish(envelope)
    """

    @abstractmethod
    async def publish(self, envelope: EventEnvelope) -> None:
        """
        Publish an envelope.

        Args:
            envelope: Envelope to publish

        Raises:
            TransientBusError: If the bus cannot accept the envelope right now
        """
        pass

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        handler: EnvelopeHandler,
        *,
        consumer_group: str,
    ) -> None:
        """
        Subscribe a consumer group's handler to a topic.

        A consumer group has exactly one handler; subscribing it to more
        topics widens what it receives. An envelope matching several topics
        of the same group is still delivered to that group once.

        Raises:
            ValueError: If the group is already bound to a different handler
        """
        pass

    @abstractmethod
    def unsubscribe(self, topic: str, *, consumer_group: str) -> bool:
        """
        Remove a topic from a consumer group.

        Returns:
            True if the subscription existed and was removed
        """
        pass


__all__ = [
    "EventBus",
    "EnvelopeHandler",
]
