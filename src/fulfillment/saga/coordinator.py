"""
Base class for choreography coordinators.

A coordinator belongs to one service (its consumer group) and reacts to
the event types listed in its dispatch table. Handling one envelope:

    1. decode the payload (unknown type/version -> dead-letter)
    2. claim (consumer_group, event_id); already processed -> skip
    3. run the reaction under the action timeout
    4. publish the single follow-up event, if the reaction returned one
    5. mark the event processed

Any failure releases the claim and propagates to the bus, which redelivers
with backoff and dead-letters after the last attempt. Follow-up events get
deterministic IDs, so a reaction re-run after a crash republishes the same
event and downstream consumers deduplicate it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, ClassVar

from fulfillment.bus import EventBus
from fulfillment.events import EventEnvelope, EventPayload, PayloadRegistry, default_registry
from fulfillment.exceptions import EventClaimed
from fulfillment.idempotency import ProcessedEventStore
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_CONSUMER_GROUP,
    ATTR_CORRELATION_ID,
    ATTR_DUPLICATE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_NAME,
    ATTR_PARTITION_KEY,
)

logger = logging.getLogger(__name__)

Reaction = Callable[[EventEnvelope, Any], Awaitable[EventPayload | None]]


class SagaCoordinator:
    """
    Deduplicating event consumer for one saga participant.

    Subclasses set ``consumer_group`` and return their dispatch table from
    ``reactions()``. A reaction receives the envelope and its decoded
    payload and returns the follow-up payload, or None.

    Example:
        >>> class ShippingCoordinator(SagaCoordinator):
        ...     consumer_group = "shipping-service"
        ...
        ...     def reactions(self):
        ...         return {"order.confirmed": self._on_confirmed}
        ...
        ...     async def _on_confirmed(self, envelope, payload):
        ...         await self._labels.print(payload.order_id)
        ...         return None
        >>>
        >>> coordinator = ShippingCoordinator(bus, processed_store)
        >>> coordinator.attach()
    """

    consumer_group: ClassVar[str] = ""

    def __init__(
        self,
        bus: EventBus,
        processed: ProcessedEventStore,
        *,
        registry: PayloadRegistry | None = None,
        action_timeout: float | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if not self.consumer_group:
            raise ValueError(f"{type(self).__name__} must declare a consumer_group")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._bus = bus
        self._processed = processed
        self._registry = registry or default_registry
        self._action_timeout = action_timeout
        self._reactions: dict[str, Reaction] = dict(self.reactions())
        self._stats = {"handled": 0, "duplicates": 0, "follow_ups": 0, "failures": 0}

    def reactions(self) -> Mapping[str, Reaction]:
        """Dispatch table from event type to reaction."""
        raise NotImplementedError

    @property
    def topics(self) -> list[str]:
        return sorted(self._reactions)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def attach(self) -> None:
        """Subscribe this coordinator to every event type it reacts to."""
        for topic in self.topics:
            self._bus.subscribe(topic, self.handle, consumer_group=self.consumer_group)

    def detach(self) -> None:
        for topic in self.topics:
            self._bus.unsubscribe(topic, consumer_group=self.consumer_group)

    async def handle(self, envelope: EventEnvelope) -> None:
        """
        Process one delivered envelope.

        Raises:
            NonRetryableEventError: The payload cannot be decoded
            EventClaimed: Another worker is processing the same event
            Exception: Whatever the reaction raised; the claim is released
        """
        reaction = self._reactions.get(envelope.event_type)
        if reaction is None:
            logger.debug(
                "%s ignoring %s",
                self.consumer_group,
                envelope,
                extra={"consumer_group": self.consumer_group, "event_type": envelope.event_type},
            )
            return

        with self._tracer.span(
            f"fulfillment.saga.{self.consumer_group}.handle",
            {
                ATTR_CONSUMER_GROUP: self.consumer_group,
                ATTR_EVENT_ID: str(envelope.event_id),
                ATTR_EVENT_TYPE: envelope.event_type,
                ATTR_PARTITION_KEY: envelope.partition_key,
                ATTR_CORRELATION_ID: str(envelope.correlation_id),
                ATTR_HANDLER_NAME: getattr(reaction, "__name__", repr(reaction)),
            },
        ) as span:
            payload = self._registry.decode(envelope)

            if not await self._processed.try_claim(self.consumer_group, envelope.event_id):
                if await self._processed.has_processed(self.consumer_group, envelope.event_id):
                    self._stats["duplicates"] += 1
                    if span:
                        span.set_attribute(ATTR_DUPLICATE, True)
                    logger.info(
                        "%s skipping already processed %s",
                        self.consumer_group,
                        envelope,
                        extra={
                            "consumer_group": self.consumer_group,
                            "event_id": str(envelope.event_id),
                        },
                    )
                    return
                raise EventClaimed(self.consumer_group, envelope.event_id)

            try:
                async with asyncio.timeout(self._action_timeout):
                    follow_up = await reaction(envelope, payload)
                if follow_up is not None:
                    await self._publish_follow_up(envelope, follow_up)
                await self._processed.mark_processed(self.consumer_group, envelope.event_id)
            except BaseException:
                self._stats["failures"] += 1
                await self._processed.release_claim(self.consumer_group, envelope.event_id)
                raise

            self._stats["handled"] += 1

    async def _publish_follow_up(self, cause: EventEnvelope, payload: EventPayload) -> None:
        envelope = EventEnvelope.wrap(
            payload,
            partition_key=cause.partition_key,
            caused_by=cause,
            event_id=EventEnvelope.follow_up_id(self.consumer_group, cause, payload.event_type),
        )
        await self._bus.publish(envelope)
        self._stats["follow_ups"] += 1
        logger.info(
            "%s reacted to %s with %s",
            self.consumer_group,
            cause.event_type,
            envelope,
            extra={
                "consumer_group": self.consumer_group,
                "event_id": str(envelope.event_id),
                "event_type": envelope.event_type,
                "causation_id": str(cause.event_id),
                "correlation_id": str(envelope.correlation_id),
            },
        )


__all__ = ["Reaction", "SagaCoordinator"]
