from __future__ import annotations

from typing import Any

from .entities import COLLECTIONS, EntityType, ID_KEY


class ValidationError(ValueError):
    """400-level input problem."""


# Accept singular names, collection names and a few legacy aliases
_ENTITY_ALIASES: dict[str, EntityType] = {et.value: et for et in EntityType}
_ENTITY_ALIASES.update({name: et for et, name in COLLECTIONS.items()})
_ENTITY_ALIASES.update({
    "products": EntityType.INVENTORY,
    "items": EntityType.INVENTORY,
    "settings": EntityType.SETTING,
})


def parse_entity_type(value: Any) -> EntityType:
    if isinstance(value, EntityType):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("entity type is required")
    et = _ENTITY_ALIASES.get(value.strip().lower())
    if et is None:
        raise ValidationError(f"unknown entity type: {value}")
    return et


def validate_record_id(value: Any) -> str:
    """Record ids are opaque strings; ints are accepted and stringified."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("id must be a non-empty string")
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("id must be a non-empty string")
    return value.strip()


def validate_payload(payload: Any, *, require_id: bool = False) -> dict[str, Any]:
    """
    Check that a record payload is a JSON object.

    Returns a shallow copy; the id (when present) is normalized.
    """
    if not isinstance(payload, dict):
        raise ValidationError("record payload must be an object")
    doc = dict(payload)
    if ID_KEY in doc and doc[ID_KEY] is not None:
        doc[ID_KEY] = validate_record_id(doc[ID_KEY])
    elif require_id:
        raise ValidationError("id is required")
    else:
        doc.pop(ID_KEY, None)
    return doc


def parse_amount(value: Any, *, field: str = "amount") -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a number")
