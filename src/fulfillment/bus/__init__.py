"""
Event bus for the fulfillment saga.

Example:
    >>> from fulfillment.bus import InMemoryEventBus
    >>>
    >>> bus = InMemoryEventBus()
    >>> bus.subscribe("order.*", coordinator.handle, consumer_group="inventory-service")
    >>> await bus.publish(envelope)
"""

from fulfillment.bus.interface import EnvelopeHandler, EventBus
from fulfillment.bus.memory import InMemoryEventBus

__all__ = [
    "EventBus",
    "EnvelopeHandler",
    "InMemoryEventBus",
]
