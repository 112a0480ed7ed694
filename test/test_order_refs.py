import pytest

from posapi.order_refs import PendingOrderRef, PersistedOrderRef, parse_order_ref


def test_integer_ids_are_persisted_refs():
    assert parse_order_ref("42") == PersistedOrderRef(42)
    assert parse_order_ref(7) == PersistedOrderRef(7)


def test_prefixed_ids_are_pending_refs():
    assert parse_order_ref("temp-1718000000") == PendingOrderRef("temp-1718000000")


def test_custom_prefix():
    assert parse_order_ref("draft-3", temp_prefix="draft-") == PendingOrderRef("draft-3")
    with pytest.raises(ValueError):
        parse_order_ref("temp-3", temp_prefix="draft-")


def test_garbage_is_rejected():
    with pytest.raises(ValueError):
        parse_order_ref("abc")
