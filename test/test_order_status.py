from decimal import Decimal

import pytest
from sqlmodel import select

from posapi import models, order_service
from posapi.models import Order, OrderStatus, Table, TableStatus
from posapi.order_refs import PendingOrderRef, PersistedOrderRef
from posapi.order_service import (
    InvalidStatusTransitionError,
    OrderNotFoundError,
    OrderValidationError,
)


@pytest.fixture()
def occupied_table(make_table):
    return make_table("T1", status=TableStatus.occupied)


def _table_status(session, table_id: int) -> TableStatus:
    session.expire_all()
    return session.get(Table, table_id).status


@pytest.mark.parametrize(
    "current, requested",
    [
        (OrderStatus.pending, OrderStatus.served),
        (OrderStatus.pending, OrderStatus.confirmed),
        (OrderStatus.confirmed, OrderStatus.paid),
        (OrderStatus.served, OrderStatus.paid),
        (OrderStatus.paid, OrderStatus.completed),
        (OrderStatus.served, OrderStatus.completed),
        (OrderStatus.served, OrderStatus.cancelled),
        (OrderStatus.paid, OrderStatus.paid),
    ],
)
def test_allowed_transitions(current, requested):
    order_service.check_transition(current, requested)


@pytest.mark.parametrize(
    "current, requested",
    [
        (OrderStatus.paid, OrderStatus.pending),
        (OrderStatus.cancelled, OrderStatus.paid),
        (OrderStatus.completed, OrderStatus.cancelled),
        (OrderStatus.served, OrderStatus.pending),
        (OrderStatus.paid, OrderStatus.cancelled),
    ],
)
def test_rejected_transitions(current, requested):
    with pytest.raises(InvalidStatusTransitionError) as excinfo:
        order_service.check_transition(current, requested)
    assert excinfo.value.status_code == 409


def test_every_status_has_a_transition_entry():
    assert set(order_service.ALLOWED_TRANSITIONS) == set(OrderStatus)


def test_status_update_writes_status(session, make_order):
    order = make_order("O1")

    updated = order_service.update_order_status(session, PersistedOrderRef(order.id), "served")

    assert updated.status == OrderStatus.served
    assert updated.paid_at is None
    assert updated.version == 2


def test_unknown_status_string_rejected(session, make_order):
    order = make_order("O1")
    with pytest.raises(OrderValidationError):
        order_service.update_order_status(session, PersistedOrderRef(order.id), "teleported")


def test_disallowed_transition_leaves_order_unchanged(session, make_order):
    order = make_order("O1", status=OrderStatus.cancelled)

    with pytest.raises(InvalidStatusTransitionError):
        order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.paid)

    session.expire_all()
    assert session.get(Order, order.id).status == OrderStatus.cancelled


def test_missing_order(session):
    with pytest.raises(OrderNotFoundError):
        order_service.update_order_status(session, PersistedOrderRef(404), OrderStatus.served)


def test_pending_ref_returns_synthetic_order_without_store_access(session):
    ref = PendingOrderRef("temp-1718000000")

    result = order_service.update_order_status(session, ref, OrderStatus.paid)

    assert result.id is None
    assert result.status == OrderStatus.paid
    assert result.payment_status == models.PaymentStatus.paid
    assert result.paid_at is not None
    assert result.order_number.startswith("TEMP-")
    assert session.exec(select(Order)).all() == []


def test_paid_releases_table_when_nothing_else_open(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.served)
    make_order("O0", table_id=occupied_table.id, status=OrderStatus.paid)
    make_order("OX", table_id=occupied_table.id, status=OrderStatus.cancelled)

    updated = order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.paid)

    assert updated.paid_at is not None
    assert _table_status(session, occupied_table.id) == TableStatus.available


def test_completed_order_does_not_hold_table(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.served)
    make_order("O0", table_id=occupied_table.id, status=OrderStatus.completed)

    order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.paid)

    assert _table_status(session, occupied_table.id) == TableStatus.available


def test_served_order_can_be_completed(session, make_order):
    order = make_order("O1", status=OrderStatus.served)

    updated = order_service.update_order_status(session, PersistedOrderRef(order.id), "completed")

    assert updated.status == OrderStatus.completed


def test_paid_keeps_table_when_another_order_open(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.served)
    make_order("O2", table_id=occupied_table.id, status=OrderStatus.pending)

    order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.paid)

    assert _table_status(session, occupied_table.id) == TableStatus.occupied


def test_non_paid_status_does_not_touch_table(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id)

    order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.cancelled)

    assert _table_status(session, occupied_table.id) == TableStatus.occupied


def test_table_release_failure_does_not_undo_payment(session, make_order, occupied_table, monkeypatch, caplog):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.served)

    def _broken_release(*args, **kwargs):
        raise RuntimeError("table store unavailable")

    monkeypatch.setattr(order_service, "release_table_if_free", _broken_release)

    updated = order_service.update_order_status(session, PersistedOrderRef(order.id), OrderStatus.paid)

    assert updated.status == OrderStatus.paid
    session.expire_all()
    assert session.get(Order, order.id).status == OrderStatus.paid
    assert _table_status(session, occupied_table.id) == TableStatus.occupied
    assert "release failed" in caplog.text


def test_release_table_if_free_excludes_given_order(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.pending)

    assert not order_service.release_table_if_free(session, occupied_table.id)
    assert order_service.release_table_if_free(session, occupied_table.id, exclude_order_id=order.id)
    assert _table_status(session, occupied_table.id) == TableStatus.available


def test_complete_payment_records_payment_fields(session, make_order, occupied_table):
    order = make_order("O1", table_id=occupied_table.id, status=OrderStatus.served)

    paid = order_service.complete_payment(
        session,
        PersistedOrderRef(order.id),
        "cash",
        amount_received=Decimal("50"),
        change=Decimal("8.5"),
    )

    assert paid.status == OrderStatus.paid
    assert paid.payment_status == models.PaymentStatus.paid
    assert paid.payment_method == "cash"
    assert paid.amount_received == Decimal("50.00")
    assert paid.change_amount == Decimal("8.50")
    assert paid.paid_at is not None
    assert _table_status(session, occupied_table.id) == TableStatus.available


def test_complete_payment_twice_rejected(session, make_order):
    order = make_order("O1", status=OrderStatus.served)
    order_service.complete_payment(session, PersistedOrderRef(order.id), "card")

    with pytest.raises(OrderValidationError):
        order_service.complete_payment(session, PersistedOrderRef(order.id), "card")


def test_complete_payment_on_cancelled_order_rejected(session, make_order):
    order = make_order("O1", status=OrderStatus.cancelled)
    with pytest.raises(InvalidStatusTransitionError):
        order_service.complete_payment(session, PersistedOrderRef(order.id), "cash")


def test_complete_payment_for_pending_ref(session):
    result = order_service.complete_payment(
        session, PendingOrderRef("temp-42"), "mobile", amount_received=Decimal("20")
    )

    assert result.status == OrderStatus.paid
    assert result.payment_method == "mobile"
    assert result.amount_received == Decimal("20.00")
