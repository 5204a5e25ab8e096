"""Tests for transaction metadata merging."""

from betpulse.services.metadata import CollectionRequested, DisbursementDispatched, deep_merge


def test_nested_keys_are_preserved():
    existing = {"mpesa": {"msisdn": "258841234567", "displayPhone": "+258841234567"}, "note": "x"}
    patch = {"mpesa": {"status": "completed", "receipt": "NLJ7RT61SV"}}

    merged = deep_merge(existing, patch)

    assert merged == {
        "mpesa": {
            "msisdn": "258841234567",
            "displayPhone": "+258841234567",
            "status": "completed",
            "receipt": "NLJ7RT61SV",
        },
        "note": "x",
    }


def test_scalars_and_lists_are_replaced():
    merged = deep_merge({"a": 1, "tags": [1, 2], "mpesa": {"status": "pending"}},
                       {"a": 2, "tags": [3], "mpesa": {"status": "failed"}})

    assert merged == {"a": 2, "tags": [3], "mpesa": {"status": "failed"}}


def test_mapping_replaces_non_mapping_value():
    assert deep_merge({"mpesa": "legacy"}, {"mpesa": {"status": "pending"}}) == {
        "mpesa": {"status": "pending"}
    }


def test_inputs_are_not_mutated():
    existing = {"mpesa": {"status": "pending"}}
    patch = {"mpesa": {"status": "completed"}}

    deep_merge(existing, patch)

    assert existing == {"mpesa": {"status": "pending"}}
    assert patch == {"mpesa": {"status": "completed"}}


def test_patch_drops_unset_fields():
    patch = CollectionRequested(status="pending", checkoutRequestId="ws_CO_1").as_patch()
    assert patch == {"mpesa": {"status": "pending", "checkoutRequestId": "ws_CO_1"}}

    assert DisbursementDispatched(status="dispatching").as_patch() == {"mpesa": {"status": "dispatching"}}
