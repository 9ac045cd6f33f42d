"""Helpers for talking to the Firestore REST API.

Firestore documents travel as ``{"name": ..., "fields": {...}}`` where every
value is wrapped in a type tag (``stringValue``, ``integerValue``, ...). The
functions here convert between those wrapped values and plain JSON-like
Python objects, and build the ``structuredQuery`` bodies used by
``documents:runQuery``.
"""

from __future__ import annotations

from typing import Any, Dict, Sequence, Tuple

FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"


def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Unsupported Firestore value type: {type(value).__name__}")


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key): encode_value(value) for key, value in data.items()}


def decode_value(raw: Dict[str, Any]) -> Any:
    if not isinstance(raw, dict) or not raw:
        return None

    if "nullValue" in raw:
        return None
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "doubleValue" in raw:
        return float(raw["doubleValue"])
    if "stringValue" in raw:
        return raw["stringValue"]
    if "timestampValue" in raw:
        return raw["timestampValue"]
    if "referenceValue" in raw:
        return raw["referenceValue"]
    if "arrayValue" in raw:
        values = (raw["arrayValue"] or {}).get("values") or []
        return [decode_value(item) for item in values]
    if "mapValue" in raw:
        return decode_fields((raw["mapValue"] or {}).get("fields") or {})
    return None


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in (fields or {}).items()}


def document_id(name: str) -> str:
    return name.rsplit("/", 1)[-1] if name else ""


def decode_document(document: Dict[str, Any]) -> Dict[str, Any]:
    """Plain dict for a REST document; the path id fills in a missing ``id``."""

    data = decode_fields(document.get("fields") or {})
    data.setdefault("id", document_id(str(document.get("name") or "")))
    return data


def build_structured_query(
    collection: str,
    filters: Sequence[Tuple[str, Any]] | None = None,
) -> Dict[str, Any]:
    """``runQuery`` body selecting ``collection`` with equality filters ANDed together."""

    query: Dict[str, Any] = {"from": [{"collectionId": collection}]}

    field_filters = [
        {
            "fieldFilter": {
                "field": {"fieldPath": field},
                "op": "EQUAL",
                "value": encode_value(value),
            }
        }
        for field, value in (filters or [])
    ]
    if len(field_filters) == 1:
        query["where"] = field_filters[0]
    elif field_filters:
        query["where"] = {"compositeFilter": {"op": "AND", "filters": field_filters}}

    return {"structuredQuery": query}
