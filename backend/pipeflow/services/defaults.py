# Overview: Default records seeded on first start (settings and product taxonomy).

from __future__ import annotations

APP_SETTINGS_ID = "app"
PRODUCT_TYPES_ID = "product_types"

DEFAULT_APP_SETTINGS = {
    "companyName": "Pipe Inventory Management",
    "currency": "TZS",
    "taxRate": 0.18,
}

DEFAULT_PRODUCT_TYPES = [
    {
        "id": "pipe",
        "name": "Pipes",
        "attributes": ["diameter", "length", "material", "brand"],
        "defaultUnit": "piece",
    },
    {
        "id": "fitting",
        "name": "Fittings",
        "attributes": ["type", "diameter", "material", "brand"],
        "defaultUnit": "piece",
    },
    {
        "id": "valve",
        "name": "Valves",
        "attributes": ["type", "diameter", "material", "brand"],
        "defaultUnit": "piece",
    },
    {
        "id": "tool",
        "name": "Tools",
        "attributes": ["brand", "model", "condition"],
        "defaultUnit": "piece",
    },
    {
        "id": "accessory",
        "name": "Accessories",
        "attributes": ["type", "brand", "material"],
        "defaultUnit": "piece",
    },
]


def default_setting_records() -> dict[str, dict]:
    """Setting record id -> payload, fresh copies on every call."""
    return {
        APP_SETTINGS_ID: dict(DEFAULT_APP_SETTINGS),
        PRODUCT_TYPES_ID: {"types": [dict(t, attributes=list(t["attributes"])) for t in DEFAULT_PRODUCT_TYPES]},
    }
