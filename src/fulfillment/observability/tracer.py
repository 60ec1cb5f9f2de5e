"""
Tracers handed to saga components.

Stores, the bus, managers and coordinators never import OpenTelemetry
themselves. Each takes an optional ``tracer`` and otherwise builds one
with ``create_tracer(__name__, enable_tracing)``:

    >>> class ReservationLedger:
    ...     def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def hold(self, order_id: str) -> None:
    ...         with self._tracer.span("fulfillment.ledger.hold", {ATTR_ORDER_ID: order_id}):
    ...             ...

Tests pass a ``MockTracer`` and assert on the recorded span names.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Span

SpanAttributes = dict[str, Any]


@runtime_checkable
class Tracer(Protocol):
    """Something that opens spans around saga operations."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span for the duration of a ``with`` block.

        Args:
            name: ``fulfillment.<component>.<operation>``
            attributes: Initial span attributes

        Returns:
            Context manager yielding the live Span, or None when spans are
            not exported
        """
        ...

    @property
    def enabled(self) -> bool:
        """Whether callers should bother computing extra span attributes."""
        ...


class NullTracer:
    """Tracer used when ``enable_tracing=False``; yields None."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Spans through the globally configured OpenTelemetry TracerProvider.

    Without an SDK provider installed, OpenTelemetry hands out no-op spans
    and nothing is exported.

    Args:
        tracer_name: Instrumentation scope, normally the module ``__name__``
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Records every span opened, in order.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("fulfillment.payment.charge", {"fulfillment.order.id": "o-1"}):
        ...     ...
        >>> tracer.span_names
        ['fulfillment.payment.charge']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, SpanAttributes | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        # Components then compute their optional attributes as in production
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> list[SpanAttributes]:
        """Attributes of every recorded span with this name."""
        return [attributes or {} for span_name, attributes in self.spans if span_name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """OpenTelemetryTracer when tracing is enabled, NullTracer otherwise."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanAttributes",
    "Tracer",
    "create_tracer",
]
