"""
Infrastructure repositories for the fulfillment package.

- **Dead Letter Queue (DLQ)**: envelopes a consumer group could not process

Each repository provides a Protocol, an in-memory implementation for tests,
a SQLite implementation for lightweight deployments and a PostgreSQL
implementation for production use.
"""

from fulfillment.repositories.dlq import (
    DLQEntry,
    DLQRepository,
    DLQStats,
    DLQStatus,
    InMemoryDLQRepository,
    PostgreSQLDLQRepository,
    SQLiteDLQRepository,
)

__all__ = [
    "DLQEntry",
    "DLQRepository",
    "DLQStats",
    "DLQStatus",
    "InMemoryDLQRepository",
    "PostgreSQLDLQRepository",
    "SQLiteDLQRepository",
]
