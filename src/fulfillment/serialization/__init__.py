"""JSON serialization helpers for the fulfillment package."""

from fulfillment.serialization.json import (
    FulfillmentJSONEncoder,
    json_dumps,
    json_loads,
)

__all__ = [
    "FulfillmentJSONEncoder",
    "json_dumps",
    "json_loads",
]
