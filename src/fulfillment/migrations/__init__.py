"""
SQL schema templates for the persistent stores.

Tables:
    - dead_letter_queue: Envelopes a consumer group failed to process
    - processed_events: Processed-event markers used for deduplication
    - idempotency_keys: Outbound command keys and their stored results

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from fulfillment.migrations import get_schema, get_all_schemas

    dlq_sql = get_schema("dlq")
    markers_sql = get_schema("processed_events", backend="sqlite")

    # SQLite test database
    async with aiosqlite.connect(":memory:") as db:
        await db.executescript(get_all_schemas(backend="sqlite"))
"""

from pathlib import Path
from typing import Literal

SchemaName = Literal["dlq", "processed_events", "idempotency_keys", "all"]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"

# Order used when concatenating every schema
_ALL_SCHEMAS = ("dlq", "processed_events", "idempotency_keys")


def get_template_path(name: SchemaName, backend: BackendName = "postgresql") -> Path:
    """
    Get the path to a SQL template file.

    Raises:
        ValueError: If the schema is not available for the backend
    """
    path = _TEMPLATES_DIR / backend / f"{name}.sql"
    if not path.exists():
        raise ValueError(
            f"Schema '{name}' is not available for backend '{backend}'. "
            f"Available schemas: {list_schemas(backend)}"
        )
    return path


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    Load a SQL schema template by name and backend.

    Args:
        name: One of "dlq", "processed_events", "idempotency_keys" or "all"
        backend: "postgresql" (default) or "sqlite"

    Returns:
        SQL schema definition as a string

    Raises:
        ValueError: If the schema is not available for the backend

    Example:
        >>> from fulfillment.migrations import get_schema
        >>> sql = get_schema("idempotency_keys", backend="sqlite")
    """
    if name == "all":
        return get_all_schemas(backend)
    return get_template_path(name, backend).read_text()


def get_all_schemas(backend: BackendName = "postgresql") -> str:
    """Load every schema for a backend, concatenated in dependency order."""
    return "\n".join(get_template_path(name, backend).read_text() for name in _ALL_SCHEMAS)


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """
    List available schema templates for a backend.

    Example:
        >>> list_schemas("sqlite")
        ['dlq', 'idempotency_keys', 'processed_events']
    """
    templates_dir = _TEMPLATES_DIR / backend
    if not templates_dir.exists():
        return []
    return sorted(p.stem for p in templates_dir.glob("*.sql"))


def list_backends() -> list[str]:
    """List backends that ship schema templates."""
    return sorted(
        subdir.name
        for subdir in _TEMPLATES_DIR.iterdir()
        if subdir.is_dir() and list(subdir.glob("*.sql"))
    )


DLQ_SCHEMA = "dlq"
PROCESSED_EVENTS_SCHEMA = "processed_events"
IDEMPOTENCY_KEYS_SCHEMA = "idempotency_keys"

__all__ = [
    "get_schema",
    "get_all_schemas",
    "get_template_path",
    "list_schemas",
    "list_backends",
    "DLQ_SCHEMA",
    "PROCESSED_EVENTS_SCHEMA",
    "IDEMPOTENCY_KEYS_SCHEMA",
    "SchemaName",
    "BackendName",
]
