"""
Idempotency and deduplication stores.

- ``ProcessedEventStore``: (consumer_group, event_id) markers that make
  redelivered envelopes a no-op
- ``IdempotencyKeyStore``: keys that make retried outbound commands
  (payment charges) execute their side effect at most once

Example:
    >>> from fulfillment.idempotency import InMemoryProcessedEventStore
    >>>
    >>> store = InMemoryProcessedEventStore()
    >>> await store.try_claim("order-service", envelope.event_id)
    True
"""

from fulfillment.idempotency.keys import (
    DEFAULT_PENDING_TIMEOUT,
    IdempotencyKeyStore,
    InMemoryIdempotencyKeyStore,
    KeyReservation,
    PostgreSQLIdempotencyKeyStore,
    SQLiteIdempotencyKeyStore,
)
from fulfillment.idempotency.processed import (
    DEFAULT_CLAIM_TIMEOUT,
    InMemoryProcessedEventStore,
    PostgreSQLProcessedEventStore,
    ProcessedEventMarker,
    ProcessedEventStore,
    SQLiteProcessedEventStore,
)

__all__ = [
    # Processed-event markers
    "DEFAULT_CLAIM_TIMEOUT",
    "ProcessedEventMarker",
    "ProcessedEventStore",
    "InMemoryProcessedEventStore",
    "SQLiteProcessedEventStore",
    "PostgreSQLProcessedEventStore",
    # Idempotency keys
    "DEFAULT_PENDING_TIMEOUT",
    "KeyReservation",
    "IdempotencyKeyStore",
    "InMemoryIdempotencyKeyStore",
    "SQLiteIdempotencyKeyStore",
    "PostgreSQLIdempotencyKeyStore",
]
