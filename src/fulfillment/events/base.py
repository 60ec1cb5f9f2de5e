"""
Event envelope and typed payload base classes.

Every message exchanged between coordinators is an ``EventEnvelope``: a
versioned, immutable wrapper around a JSON-compatible payload. Payloads
are declared as ``EventPayload`` subclasses carrying their event type tag
and schema version, and are decoded back through the payload registry.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar, Self
from uuid import UUID, uuid4, uuid5

from pydantic import BaseModel, ConfigDict, Field

# Namespace for deterministic follow-up event IDs
FOLLOW_UP_NAMESPACE = UUID("8b0f7f3e-2d4c-4f3b-9a57-3f2f6c1e9d10")


class EventPayload(BaseModel):
    """
    Base class for typed event payloads.

    Subclasses declare the event type tag and schema version as class
    variables. A payload carries only business fields; identity, ordering
    and correlation live on the envelope.

    Example:
        >>> class OrderCreated(EventPayload):
        ...     event_type: ClassVar[str] = "order.created"
        ...     version: ClassVar[int] = 1
        ...     order_id: UUID
        ...     user_id: str
    """

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str] = ""
    version: ClassVar[int] = 1


class EventEnvelope(BaseModel):
    """
    Immutable, versioned wrapper around an event payload.

    Envelopes are append-only: they are never mutated after publication,
    only superseded by newer envelopes sharing the same correlation_id.

    Attributes:
        event_id: Globally unique identifier, used for deduplication
        event_type: Event type tag (e.g., 'order.created')
        version: Payload schema version
        correlation_id: Ties every event of one saga instance together
        causation_id: ID of the envelope that caused this one
        partition_key: Ordering key (the order ID); envelopes sharing it are
            delivered in publication order
        timestamp: When the event was produced (UTC)
        payload: JSON-compatible payload fields

    Example:
        >>> envelope = EventEnvelope.wrap(
        ...     OrderCancelled(order_id=order_id, reason="customer request"),
        ...     partition_key=str(order_id),
        ... )
        >>> follow_up = EventEnvelope.wrap(
        ...     InventoryReleased(order_id=order_id, reason="order_cancelled"),
        ...     partition_key=str(order_id),
        ...     caused_by=envelope,
        ... )
        >>> assert follow_up.is_correlated_with(envelope)
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier",
    )
    event_type: str = Field(
        ...,
        min_length=1,
        description="Event type tag",
    )
    version: int = Field(
        default=1,
        ge=1,
        description="Payload schema version",
    )
    correlation_id: UUID = Field(
        default_factory=uuid4,
        description="ID linking every event of one saga instance",
    )
    causation_id: UUID | None = Field(
        default=None,
        description="ID of the envelope that caused this one",
    )
    partition_key: str = Field(
        ...,
        min_length=1,
        description="Ordering key (order ID)",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was produced (UTC)",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON-compatible payload fields",
    )

    @classmethod
    def wrap(
        cls,
        payload: EventPayload,
        *,
        partition_key: str,
        correlation_id: UUID | None = None,
        caused_by: EventEnvelope | None = None,
        event_id: UUID | None = None,
        timestamp: datetime | None = None,
    ) -> Self:
        """
        Wrap a typed payload in a new envelope.

        Args:
            payload: The typed payload
            partition_key: Ordering key for the envelope
            correlation_id: Saga correlation ID (ignored if caused_by is given)
            caused_by: Envelope that caused this one; its correlation_id is
                inherited and its event_id becomes the causation_id
            event_id: Explicit event ID (defaults to a random UUID)
            timestamp: Explicit timestamp (defaults to now)

        Returns:
            New envelope
        """
        fields: dict[str, Any] = {
            "event_type": payload.event_type,
            "version": payload.version,
            "partition_key": partition_key,
            "payload": payload.model_dump(mode="json"),
        }
        if caused_by is not None:
            fields["correlation_id"] = caused_by.correlation_id
            fields["causation_id"] = caused_by.event_id
        elif correlation_id is not None:
            fields["correlation_id"] = correlation_id
        if event_id is not None:
            fields["event_id"] = event_id
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return cls(**fields)

    @staticmethod
    def follow_up_id(consumer_group: str, cause: EventEnvelope, event_type: str) -> UUID:
        """
        Deterministic event ID for the follow-up a consumer emits for a cause.

        Re-running a reaction after a crash republishes the same event ID,
        so downstream consumers deduplicate it.
        """
        return uuid5(FOLLOW_UP_NAMESPACE, f"{consumer_group}:{cause.event_id}:{event_type}")

    def __str__(self) -> str:
        return (
            f"{self.event_type}(event_id={self.event_id}, "
            f"partition_key={self.partition_key}, version={self.version})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the envelope to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Create an envelope from a dictionary.

        Raises:
            ValidationError: If data doesn't match the envelope schema
        """
        return cls.model_validate(data)

    def is_caused_by(self, envelope: EventEnvelope) -> bool:
        """True if this envelope's causation_id is the other envelope's event_id."""
        return self.causation_id == envelope.event_id

    def is_correlated_with(self, envelope: EventEnvelope) -> bool:
        """True if both envelopes belong to the same saga instance."""
        return self.correlation_id == envelope.correlation_id


__all__ = [
    "EventEnvelope",
    "EventPayload",
    "FOLLOW_UP_NAMESPACE",
]
