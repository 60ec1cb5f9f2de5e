"""
Payload registry for decoding event envelopes.

Maps ``(event_type, version)`` pairs to payload classes. Decoding an
envelope whose type or version is not registered fails loudly so the bus
can dead-letter it instead of a coordinator guessing field semantics.

Usage:
    # Decorator-based registration in the default registry
    @register_payload
    class OrderCreated(EventPayload):
        event_type: ClassVar[str] = "order.created"
        version: ClassVar[int] = 1
        ...

    # Isolated registry (tests)
    registry = PayloadRegistry()
    registry.register(OrderCreated)

    # Decoding
    payload = registry.decode(envelope)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import TypeVar, overload

from pydantic import ValidationError

from fulfillment.events.base import EventEnvelope, EventPayload
from fulfillment.exceptions import NonRetryableEventError, UnknownEventType, UnsupportedEventVersion

logger = logging.getLogger(__name__)

TPayload = TypeVar("TPayload", bound=EventPayload)


class DuplicatePayloadError(ValueError):
    """Raised when a different class is registered for an existing (type, version)."""

    def __init__(
        self,
        event_type: str,
        version: int,
        existing_class: type[EventPayload],
        new_class: type[EventPayload],
    ) -> None:
        self.event_type = event_type
        self.version = version
        self.existing_class = existing_class
        self.new_class = new_class
        super().__init__(
            f"Payload '{event_type}' v{version} is already registered to "
            f"{existing_class.__name__}. Cannot register {new_class.__name__}."
        )


class MalformedPayload(NonRetryableEventError):
    """Raised when a payload does not validate against its registered schema."""

    def __init__(self, event_type: str, version: int, message: str) -> None:
        self.event_type = event_type
        self.version = version
        super().__init__(f"Malformed payload for '{event_type}' v{version}: {message}")


class PayloadRegistry:
    """
    Registry mapping (event_type, version) to payload classes.

    Thread-Safety:
        All operations are thread-safe and use internal locking.

    Example:
        >>> registry = PayloadRegistry()
        >>> registry.register(OrderCreated)
        >>> payload = registry.decode(envelope)
        >>> assert isinstance(payload, OrderCreated)
    """

    def __init__(self) -> None:
        self._registry: dict[tuple[str, int], type[EventPayload]] = {}
        self._lock = threading.RLock()

    def register(self, payload_class: type[TPayload]) -> type[TPayload]:
        """
        Register a payload class under its declared type and version.

        Returns:
            The registered class (enables use as decorator)

        Raises:
            ValueError: If the class declares no event_type
            DuplicatePayloadError: If another class owns the same (type, version)
        """
        event_type = payload_class.event_type
        version = payload_class.version
        if not event_type:
            raise ValueError(f"{payload_class.__name__} must declare a ClassVar event_type")

        key = (event_type, version)
        with self._lock:
            existing = self._registry.get(key)
            if existing is not None:
                if existing is not payload_class:
                    raise DuplicatePayloadError(event_type, version, existing, payload_class)
                return payload_class

            self._registry[key] = payload_class
            logger.debug(
                "Registered payload '%s' v%d -> %s",
                event_type,
                version,
                payload_class.__name__,
                extra={"event_type": event_type, "version": version},
            )
            return payload_class

    def get(self, event_type: str, version: int) -> type[EventPayload]:
        """
        Look up a payload class.

        Raises:
            UnknownEventType: If no version of the event type is registered
            UnsupportedEventVersion: If the type is known but the version is not
        """
        with self._lock:
            payload_class = self._registry.get((event_type, version))
            if payload_class is not None:
                return payload_class

            versions = [v for (t, v) in self._registry if t == event_type]
            if not versions:
                raise UnknownEventType(event_type, sorted({t for (t, _) in self._registry}))
            raise UnsupportedEventVersion(event_type, version, versions)

    def decode(self, envelope: EventEnvelope) -> EventPayload:
        """
        Decode an envelope's payload into its typed model.

        Raises:
            UnknownEventType: Unregistered event type
            UnsupportedEventVersion: Unregistered version of a known type
            MalformedPayload: Payload fields do not validate
        """
        payload_class = self.get(envelope.event_type, envelope.version)
        try:
            return payload_class.model_validate(envelope.payload)
        except ValidationError as e:
            raise MalformedPayload(envelope.event_type, envelope.version, str(e)) from e

    def supports(self, event_type: str, version: int) -> bool:
        with self._lock:
            return (event_type, version) in self._registry

    def list_types(self) -> list[str]:
        """Sorted list of registered event types."""
        with self._lock:
            return sorted({t for (t, _) in self._registry})

    def clear(self) -> None:
        """Clear all registrations. Primarily useful for tests."""
        with self._lock:
            self._registry.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._registry)

    def __contains__(self, event_type: str) -> bool:
        with self._lock:
            return any(t == event_type for (t, _) in self._registry)

    def __iter__(self) -> Iterator[tuple[str, int]]:
        with self._lock:
            return iter(list(self._registry.keys()))


# Module-level default registry instance
default_registry = PayloadRegistry()


@overload
def register_payload(payload_class: type[TPayload]) -> type[TPayload]: ...


@overload
def register_payload(
    payload_class: None = None,
    *,
    registry: PayloadRegistry | None = None,
) -> Callable[[type[TPayload]], type[TPayload]]: ...


def register_payload(
    payload_class: type[TPayload] | None = None,
    *,
    registry: PayloadRegistry | None = None,
) -> type[TPayload] | Callable[[type[TPayload]], type[TPayload]]:
    """
    Decorator to register a payload class.

    Can be used with or without parentheses:

        @register_payload
        class OrderCreated(EventPayload): ...

        @register_payload(registry=custom_registry)
        class OrderCreated(EventPayload): ...
    """
    target_registry = registry or default_registry

    def decorator(cls: type[TPayload]) -> type[TPayload]:
        return target_registry.register(cls)

    if payload_class is not None:
        return decorator(payload_class)
    return decorator


__all__ = [
    "PayloadRegistry",
    "DuplicatePayloadError",
    "MalformedPayload",
    "default_registry",
    "register_payload",
]
