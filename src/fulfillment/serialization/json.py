"""
JSON serialization for envelopes and stored results.

Handles the types that appear in fulfillment payloads but are not natively
JSON-serializable: UUIDs, datetimes and Decimal amounts.

Example:
    >>> from fulfillment.serialization import json_dumps, json_loads
    >>>
    >>> text = json_dumps({"order_id": order_id, "amount": Decimal("19.99")})
    >>> json_loads(text)["amount"]
    '19.99'
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


class FulfillmentJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for UUID, datetime and Decimal values.

    Decimals are written as strings so monetary amounts keep their exact
    scale through a round trip.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize an object to a JSON string using FulfillmentJSONEncoder."""
    return json.dumps(obj, cls=FulfillmentJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string.

    UUID, datetime and Decimal strings are NOT converted back; payload
    models do that when they validate.
    """
    return json.loads(s)


__all__ = [
    "FulfillmentJSONEncoder",
    "json_dumps",
    "json_loads",
]
