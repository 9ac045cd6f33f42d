from __future__ import annotations

import pytest

from kartpass_core.firestore import (
    build_structured_query,
    decode_document,
    encode_fields,
    encode_value,
)


def test_encode_value_tags_each_type() -> None:
    assert encode_value(True) == {"booleanValue": True}
    assert encode_value(250) == {"integerValue": "250"}
    assert encode_value(12.5) == {"doubleValue": 12.5}
    assert encode_value(None) == {"nullValue": None}
    assert encode_value(["Mini"]) == {"arrayValue": {"values": [{"stringValue": "Mini"}]}}


def test_encode_value_rejects_unknown_types() -> None:
    with pytest.raises(TypeError):
        encode_value(object())


def test_decode_document_restores_nested_driver() -> None:
    fields = encode_fields({
        "name": "Alice",
        "hasSeasonPass": False,
        "guardians": [{"name": "Mor", "contact": "99999999", "licenses": []}],
    })
    document = {"name": "projects/p/databases/(default)/documents/drivers/abc123", "fields": fields}

    driver = decode_document(document)

    assert driver["id"] == "abc123"
    assert driver["name"] == "Alice"
    assert driver["hasSeasonPass"] is False
    assert driver["guardians"] == [{"name": "Mor", "contact": "99999999", "licenses": []}]


def test_decode_document_keeps_stored_id() -> None:
    document = {"name": "projects/p/databases/(default)/documents/settings/site_config", "fields": encode_fields({"id": "main"})}

    assert decode_document(document)["id"] == "main"


def test_structured_query_with_single_and_multiple_filters() -> None:
    single = build_structured_query("raceSignups", [("raceId", "r1")])
    assert single["structuredQuery"]["from"] == [{"collectionId": "raceSignups"}]
    assert single["structuredQuery"]["where"]["fieldFilter"]["field"] == {"fieldPath": "raceId"}

    combined = build_structured_query("raceSignups", [("raceId", "r1"), ("driverId", "d1")])
    composite = combined["structuredQuery"]["where"]["compositeFilter"]
    assert composite["op"] == "AND"
    assert len(composite["filters"]) == 2

    assert "where" not in build_structured_query("drivers")["structuredQuery"]
