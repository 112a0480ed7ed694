"""
Order API Routes

- Order create / read / update / delete
- Item additions
- Order splitting
- Status updates and payment completion

Business rules live in order_service; its errors are rendered by the
OrderLifecycleError handler registered in main.
"""

from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlmodel import Session

from . import models, order_service
from .db import get_session
from .order_refs import OrderRef, PendingOrderRef, parse_order_ref


router = APIRouter()


def _money(value) -> float | None:
    return float(value) if value is not None else None


def item_to_dict(item: models.OrderItem) -> dict:
    return {
        "id": item.id,
        "order_id": item.order_id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "unit_price": _money(item.unit_price),
        "total": _money(item.total),
        "discount": _money(item.discount),
        "tax": _money(item.tax),
        "price_before_tax": _money(item.price_before_tax),
        "notes": item.notes,
    }


def order_to_dict(
    order: models.Order,
    ref: OrderRef | None = None,
    include_items: bool = False,
) -> dict:
    is_pending = isinstance(ref, PendingOrderRef)
    result = {
        "id": ref.client_token if is_pending else order.id,
        "temporary": is_pending,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "parent_order_id": order.parent_order_id,
        "employee_id": order.employee_id,
        "status": order.status.value,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "customer_count": order.customer_count,
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "discount": _money(order.discount),
        "total": _money(order.total),
        "price_include_tax": order.price_include_tax,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status.value,
        "amount_received": _money(order.amount_received),
        "change": _money(order.change_amount),
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "sales_channel": order.sales_channel.value,
        "notes": order.notes,
        "version": order.version,
        "ordered_at": order.ordered_at.isoformat() if order.ordered_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }
    if include_items and not is_pending:
        result["items"] = [item_to_dict(item) for item in order.items]
    return result


def _parse_ref(order_ref: str) -> OrderRef:
    try:
        return parse_order_ref(order_ref)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ============ ORDERS ============

@router.get("/orders")
def list_orders(
    session: Session = Depends(get_session),
    status: models.OrderStatus | None = None,
    table_id: int | None = Query(None, description="Only orders on this table"),
) -> list[dict]:
    orders = order_service.list_orders(session, status=status, table_id=table_id)
    return [order_to_dict(order) for order in orders]


@router.post("/orders", status_code=201)
def create_order(
    order_data: Annotated[models.OrderCreate | None, Body()] = None,
    session: Session = Depends(get_session),
) -> dict:
    """Create an order. An empty body creates an empty POS order."""
    order = order_service.create_order(session, order_data)
    return order_to_dict(order, include_items=True)


@router.post("/orders/split")
def split_order(
    split_request: models.SplitOrderRequest,
    session: Session = Depends(get_session),
) -> dict:
    """Split an order's items across new orders, keeping the remainder on the original."""
    result = order_service.split_order(session, split_request)
    return {
        "success": True,
        "original_order_id": result.original_order_id,
        "original_order_status": result.original_order.status.value,
        "original_order_version": result.original_order.version,
        "created_orders": [order_to_dict(order, include_items=True) for order in result.created_orders],
    }


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    session: Session = Depends(get_session),
) -> dict:
    order = order_service.get_order(session, order_id)
    return order_to_dict(order, include_items=True)


@router.get("/orders/{order_id}/items")
def get_order_items(
    order_id: int,
    session: Session = Depends(get_session),
) -> list[dict]:
    return [item_to_dict(item) for item in order_service.get_order_items(session, order_id)]


@router.post("/orders/{order_id}/items", status_code=201)
def add_order_items(
    order_id: int,
    items_data: models.OrderItemsAdd,
    session: Session = Depends(get_session),
) -> list[dict]:
    items = order_service.add_order_items(session, order_id, items_data.items)
    return [item_to_dict(item) for item in items]


@router.put("/orders/{order_ref}")
def update_order(
    order_ref: str,
    order_update: models.OrderUpdate,
    session: Session = Depends(get_session),
) -> dict:
    """Update order fields. Totals are saved exactly as received."""
    ref = _parse_ref(order_ref)
    order = order_service.update_order(session, ref, order_update)
    return order_to_dict(order, ref=ref)


@router.put("/orders/{order_ref}/status")
def update_order_status(
    order_ref: str,
    status_update: models.OrderStatusUpdate,
    session: Session = Depends(get_session),
) -> dict:
    ref = _parse_ref(order_ref)
    order = order_service.update_order_status(session, ref, status_update.status)
    return order_to_dict(order, ref=ref)


@router.post("/orders/{order_ref}/payment")
def complete_payment(
    order_ref: str,
    payment: models.PaymentCompletion,
    session: Session = Depends(get_session),
) -> dict:
    """Mark order as paid (cash, card, mobile, ...)."""
    ref = _parse_ref(order_ref)
    order = order_service.complete_payment(
        session,
        ref,
        payment.payment_method,
        amount_received=payment.amount_received,
        change=payment.change,
    )
    return order_to_dict(order, ref=ref)


@router.delete("/orders/{order_id}")
def delete_order(
    order_id: int,
    session: Session = Depends(get_session),
) -> dict:
    order_service.delete_order(session, order_id)
    return {"status": "deleted", "order_id": order_id}
