"""
Order Lifecycle Service

Business logic for the order lifecycle:
- Total computation on creation, pass-through totals on update
- Optional totals validation (subtotal + tax - discount == total)
- Order splitting in a single transaction
- Status transitions with table release on payment
- Payment completion
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session, select

from . import models
from .events import publish_order_update
from .models import Order, OrderItem, OrderStatus, Table, TableStatus, utcnow
from .order_refs import OrderRef, PendingOrderRef
from .settings import TotalsValidation, settings

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
TOTALS_TOLERANCE = Decimal("0.01")


# ============ ERRORS ============

class OrderLifecycleError(Exception):
    """Base class for business-rule failures surfaced to the caller."""
    status_code = 400
    code = "order_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class OrderValidationError(OrderLifecycleError):
    code = "validation_error"


class OrderNotFoundError(OrderLifecycleError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class TableNotFoundError(OrderLifecycleError):
    status_code = 404
    code = "table_not_found"

    def __init__(self, table_id: int):
        self.table_id = table_id
        super().__init__(f"Table {table_id} not found")


class InvalidStatusTransitionError(OrderLifecycleError):
    status_code = 409
    code = "invalid_status_transition"

    def __init__(self, current: OrderStatus, requested: OrderStatus):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from {current.value} to {requested.value}"
        )


class ConcurrentModificationError(OrderLifecycleError):
    status_code = 409
    code = "concurrent_modification"

    def __init__(self, order_id: int, expected_version: int, actual_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Order {order_id} was modified concurrently: "
            f"expected version {expected_version}, found {actual_version}"
        )


class TotalsMismatchError(OrderLifecycleError):
    status_code = 422
    code = "totals_mismatch"

    def __init__(self, context: str, expected_total: Decimal, total: Decimal):
        self.expected_total = expected_total
        self.total = total
        super().__init__(
            f"{context}: total {total} does not match subtotal + tax - discount = {expected_total}"
        )


class StoreSettingsNotFoundError(OrderLifecycleError):
    status_code = 500
    code = "store_settings_not_found"

    def __init__(self):
        super().__init__("Store settings not found")


# ============ STATUS TRANSITIONS ============

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset({
        OrderStatus.confirmed, OrderStatus.preparing, OrderStatus.served,
        OrderStatus.paid, OrderStatus.cancelled,
    }),
    OrderStatus.confirmed: frozenset({
        OrderStatus.preparing, OrderStatus.served, OrderStatus.paid, OrderStatus.cancelled,
    }),
    OrderStatus.preparing: frozenset({
        OrderStatus.ready, OrderStatus.served, OrderStatus.paid, OrderStatus.cancelled,
    }),
    OrderStatus.ready: frozenset({
        OrderStatus.served, OrderStatus.paid, OrderStatus.cancelled,
    }),
    OrderStatus.served: frozenset({
        OrderStatus.paid, OrderStatus.completed, OrderStatus.cancelled,
    }),
    OrderStatus.paid: frozenset({OrderStatus.completed}),
    OrderStatus.completed: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

# Orders in these statuses no longer hold their table
SETTLED_STATUSES = (OrderStatus.paid, OrderStatus.completed, OrderStatus.cancelled)


def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """Raise InvalidStatusTransitionError unless current -> requested is allowed.
    Writing the same status again is accepted."""
    if current == requested:
        return
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current, requested)


def _coerce_status(status: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise OrderValidationError(f"Unknown order status: {status!r}") from None


# ============ TOTALS ============

@dataclass
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    """Quantize a monetary value to cents."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_order_totals(
    session: Session,
    items: list[models.OrderItemInput],
) -> OrderTotals:
    """
    Totals for a new order built from its items.
    subtotal = sum(unit_price * quantity)
    tax = sum((after_tax_price - price) * quantity), per product
    total = subtotal + tax
    """
    subtotal = Decimal("0")
    tax = Decimal("0")
    for item in items:
        subtotal += Decimal(str(item.unit_price)) * item.quantity
        product = session.get(models.Product, item.product_id)
        if product and product.after_tax_price is not None:
            tax_delta = Decimal(str(product.after_tax_price)) - Decimal(str(product.price))
            tax += tax_delta * item.quantity

    subtotal = to_money(subtotal)
    tax = to_money(tax)
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        discount=Decimal("0.00"),
        total=subtotal + tax,
    )


def check_totals(
    subtotal: Decimal,
    tax: Decimal,
    discount: Decimal,
    total: Decimal,
    context: str,
    mode: TotalsValidation | None = None,
) -> bool:
    """
    Compare caller-supplied totals against subtotal + tax - discount.
    Returns True when they match. On mismatch, logs (warn) or raises
    TotalsMismatchError (reject) depending on the configured mode.
    """
    mode = mode or settings.totals_validation
    if mode == TotalsValidation.off:
        return True

    expected = to_money(subtotal) + to_money(tax) - to_money(discount)
    if abs(expected - to_money(total)) <= TOTALS_TOLERANCE:
        return True

    if mode == TotalsValidation.reject:
        raise TotalsMismatchError(context, expected, to_money(total))
    logger.warning(
        f"{context}: total {to_money(total)} does not match "
        f"subtotal + tax - discount = {expected}, saving as received"
    )
    return False


# ============ HELPERS ============

def generate_order_number(session: Session, prefix: str | None = None) -> str:
    """Generate unique order number: ORD-YYYYMMDD-XXXX"""
    today = utcnow().strftime("%Y%m%d")
    prefix = f"{prefix or settings.order_number_prefix}-{today}-"

    # Find highest sequence for today, ignoring split children like ORD-20250101-0003-S1
    numbers = session.exec(
        select(Order.order_number).where(Order.order_number.startswith(prefix))
    ).all()
    sequences = [
        int(number[len(prefix):]) for number in numbers if number[len(prefix):].isdigit()
    ]
    next_seq = max(sequences, default=0) + 1

    return f"{prefix}{next_seq:04d}"


def _order_number_exists(session: Session, order_number: str) -> bool:
    return session.exec(
        select(Order.id).where(Order.order_number == order_number)
    ).first() is not None


def _unique_order_number(session: Session, candidate: str, taken: set[str]) -> str:
    """Return candidate, or candidate-2, candidate-3, ... if already used in the store or this call."""
    number = candidate
    suffix = 1
    while number in taken or _order_number_exists(session, number):
        suffix += 1
        number = f"{candidate}-{suffix}"
    taken.add(number)
    return number


def _validate_items(items: list[models.OrderItemInput], context: str) -> None:
    for item in items:
        if item.quantity <= 0:
            raise OrderValidationError(
                f"{context}: quantity for product {item.product_id} must be greater than 0"
            )
        if item.unit_price < 0:
            raise OrderValidationError(
                f"{context}: unit price for product {item.product_id} must not be negative"
            )


def _build_item(order_id: int, item: models.OrderItemInput, keep_notes: bool = True) -> OrderItem:
    unit_price = to_money(item.unit_price)
    total = to_money(item.total) if item.total is not None else to_money(unit_price * item.quantity)
    return OrderItem(
        order_id=order_id,
        product_id=item.product_id,
        quantity=item.quantity,
        unit_price=unit_price,
        total=total,
        discount=to_money(item.discount),
        tax=to_money(item.tax),
        price_before_tax=to_money(item.price_before_tax),
        notes=item.notes if keep_notes else None,
    )


def get_order(session: Session, order_id: int, lock: bool = False) -> Order:
    statement = select(Order).where(Order.id == order_id)
    if lock:
        statement = statement.with_for_update()
    order = session.exec(statement).first()
    if not order:
        raise OrderNotFoundError(order_id)
    return order


def get_order_items(session: Session, order_id: int) -> list[OrderItem]:
    get_order(session, order_id)
    return list(session.exec(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    ).all())


def list_orders(
    session: Session,
    status: OrderStatus | None = None,
    table_id: int | None = None,
) -> list[Order]:
    statement = select(Order)
    if status is not None:
        statement = statement.where(Order.status == status)
    if table_id is not None:
        statement = statement.where(Order.table_id == table_id)
    return list(session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all())


def pending_order_snapshot(ref: PendingOrderRef, status: OrderStatus, **fields) -> Order:
    """Order-shaped response for an order the client has not saved yet. Never persisted."""
    now = utcnow()
    is_paid = status == OrderStatus.paid
    values = {
        "order_number": f"TEMP-{now:%Y%m%d%H%M%S}",
        "status": status,
        "payment_status": models.PaymentStatus.paid if is_paid else models.PaymentStatus.pending,
        "payment_method": "cash" if is_paid else None,
        "paid_at": now if is_paid else None,
        "sales_channel": models.SalesChannel.pos,
        "notes": f"Temporary order {ref.client_token}, not saved yet",
    }
    values.update({key: value for key, value in fields.items() if value is not None})
    return Order(**values)


def _order_event(event_type: str, order: Order, **extra) -> dict:
    return {
        "type": event_type,
        "order_id": order.id,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "status": order.status.value,
        **extra,
    }


# ============ CREATE / UPDATE ============

def create_order(session: Session, data: models.OrderCreate | None = None) -> Order:
    """
    Create an order with its items.
    Without a request body this creates an empty POS order.
    Totals are computed from the items unless the caller supplies them.
    """
    data = data or models.OrderCreate()
    _validate_items(data.items, "Order")

    table = None
    if data.table_id is not None:
        table = session.get(Table, data.table_id)
        if not table:
            raise TableNotFoundError(data.table_id)

    price_include_tax = data.price_include_tax
    if price_include_tax is None:
        store_settings = session.exec(select(models.StoreSettings)).first()
        if not store_settings:
            raise StoreSettingsNotFoundError()
        price_include_tax = store_settings.price_includes_tax

    if any(value is not None for value in (data.subtotal, data.tax, data.discount, data.total)):
        subtotal = to_money(data.subtotal)
        tax = to_money(data.tax)
        discount = to_money(data.discount)
        total = to_money(data.total) if data.total is not None else subtotal + tax - discount
        check_totals(subtotal, tax, discount, total, "Order")
        totals = OrderTotals(subtotal=subtotal, tax=tax, discount=discount, total=total)
    else:
        totals = compute_order_totals(session, data.items)

    if data.order_number:
        if _order_number_exists(session, data.order_number):
            raise OrderValidationError(f"Order number {data.order_number} already exists")
        order_number = data.order_number
    else:
        order_number = generate_order_number(session)

    sales_channel = data.sales_channel
    if sales_channel is None:
        sales_channel = models.SalesChannel.table if data.table_id else models.SalesChannel.pos

    order = Order(
        order_number=order_number,
        table_id=data.table_id,
        employee_id=data.employee_id,
        status=data.status,
        customer_name=data.customer_name,
        customer_phone=data.customer_phone,
        customer_count=data.customer_count or 1,
        subtotal=totals.subtotal,
        tax=totals.tax,
        discount=totals.discount,
        total=totals.total,
        price_include_tax=price_include_tax,
        sales_channel=sales_channel,
        notes=data.notes,
    )
    session.add(order)
    session.flush()  # Get order ID

    for item in data.items:
        session.add(_build_item(order.id, item))

    if table and sales_channel == models.SalesChannel.table:
        table.status = TableStatus.occupied
        session.add(table)

    session.commit()
    session.refresh(order)
    logger.info(
        f"Order #{order.id} ({order.order_number}) created: channel={order.sales_channel.value}, "
        f"items={len(data.items)}, total={order.total}"
    )

    publish_order_update(_order_event("new_order", order), table_id=order.table_id)
    return order


# Explicit nulls for these keep the stored value
NOT_NULL_UPDATE_FIELDS = ("subtotal", "tax", "discount", "total", "customer_count")


def update_order(session: Session, ref: OrderRef, data: models.OrderUpdate) -> Order:
    """
    Update order fields. Monetary totals are saved exactly as received,
    subject only to the configured totals validation.
    """
    changes = data.model_dump(exclude_unset=True)

    if isinstance(ref, PendingOrderRef):
        logger.info(f"Update for unsaved order {ref.client_token} acknowledged without persisting")
        return pending_order_snapshot(ref, OrderStatus.pending, **changes)

    order = get_order(session, ref.id)

    money_fields = ("subtotal", "tax", "discount", "total")
    if any(name in changes for name in money_fields):
        merged = {name: changes.get(name, getattr(order, name)) for name in money_fields}
        for name in money_fields:
            if merged[name] is None:
                merged[name] = getattr(order, name)
        check_totals(
            merged["subtotal"], merged["tax"], merged["discount"], merged["total"],
            f"Order #{order.id}",
        )

    if changes.get("table_id") is not None and not session.get(Table, changes["table_id"]):
        raise TableNotFoundError(changes["table_id"])

    for key, value in changes.items():
        if value is None and key in NOT_NULL_UPDATE_FIELDS:
            continue
        if key in money_fields:
            value = to_money(value)
        setattr(order, key, value)

    order.updated_at = utcnow()
    order.version += 1
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order #{order.id} updated with fields {sorted(changes)}")

    publish_order_update(_order_event("order_updated", order), table_id=order.table_id)
    return order


def add_order_items(
    session: Session,
    order_id: int,
    items: list[models.OrderItemInput],
) -> list[OrderItem]:
    """Append items to an open order. Order totals are left to the caller."""
    if not items:
        raise OrderValidationError("At least one item is required")
    _validate_items(items, f"Order #{order_id}")

    order = get_order(session, order_id, lock=True)
    if order.status in SETTLED_STATUSES:
        raise OrderValidationError(
            f"Cannot add items to order #{order.id} with status {order.status.value}"
        )

    new_items = [_build_item(order.id, item) for item in items]
    session.add_all(new_items)
    order.updated_at = utcnow()
    order.version += 1
    session.add(order)
    session.commit()
    for item in new_items:
        session.refresh(item)
    logger.info(f"Added {len(new_items)} items to order #{order.id}")

    publish_order_update(_order_event("items_added", order), table_id=order.table_id)
    return new_items


def delete_order(session: Session, order_id: int) -> None:
    order = get_order(session, order_id, lock=True)

    for item in session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all():
        session.delete(item)
    # Children of a split outlive their parent
    for child in session.exec(select(Order).where(Order.parent_order_id == order.id)).all():
        child.parent_order_id = None
        session.add(child)
    session.delete(order)
    session.commit()
    logger.info(f"Order #{order_id} deleted")


# ============ SPLIT ============

@dataclass
class SplitResult:
    created_orders: list[Order]
    original_order: Order
    original_cancelled: bool

    @property
    def original_order_id(self) -> int:
        return self.original_order.id


def split_order(session: Session, request: models.SplitOrderRequest) -> SplitResult:
    """
    Split an order's items into new child orders plus a remainder.

    Runs as one transaction with the original order row locked:
    1. Create one child order per non-empty group, with the group's totals
    2. Delete every item of the original order
    3. Re-create the remaining items on the original order
    4. Apply original_order_update if items remain, otherwise cancel the original
    Any failure rolls back all of it.
    """
    if request.original_order_id is None:
        raise OrderValidationError("original_order_id is required")
    if not request.split_items:
        raise OrderValidationError("split_items must contain at least one group")

    for index, group in enumerate(request.split_items, start=1):
        _validate_items(group.items, f"Split group {index}")
        if group.items:
            check_totals(group.subtotal, group.tax, group.discount, group.total, f"Split group {index}")
    _validate_items(request.remaining_items, "Remaining items")
    update = request.original_order_update
    if update is not None and request.remaining_items:
        check_totals(update.subtotal, update.tax, update.discount, update.total, "Original order update")

    created_orders: list[Order] = []
    try:
        original = get_order(session, request.original_order_id, lock=True)
        if request.expected_version is not None and request.expected_version != original.version:
            raise ConcurrentModificationError(original.id, request.expected_version, original.version)
        if original.status in SETTLED_STATUSES:
            raise OrderValidationError(
                f"Cannot split order #{original.id} with status {original.status.value}"
            )

        taken_numbers: set[str] = set()
        sequence = 0
        for group in request.split_items:
            if not group.items:
                continue
            sequence += 1

            if group.table_id is not None and group.table_id != original.table_id:
                moved_to = session.get(Table, group.table_id)
                if not moved_to:
                    raise TableNotFoundError(group.table_id)
                moved_to.status = TableStatus.occupied
                session.add(moved_to)

            candidate = (group.order_number or group.name or "").strip()
            if not candidate:
                candidate = f"{original.order_number}-S{sequence}"
            order_number = _unique_order_number(session, candidate, taken_numbers)

            child = Order(
                order_number=order_number,
                table_id=group.table_id if group.table_id is not None else original.table_id,
                parent_order_id=original.id,
                employee_id=original.employee_id,
                status=original.status,
                sales_channel=original.sales_channel,
                customer_name=group.customer_name or original.customer_name,
                customer_count=group.customer_count if group.customer_count is not None else original.customer_count,
                subtotal=to_money(group.subtotal),
                tax=to_money(group.tax),
                discount=to_money(group.discount),
                total=to_money(group.total),
                price_include_tax=original.price_include_tax,
                payment_status=models.PaymentStatus.pending,
                notes=f"Split from order {original.order_number}",
            )
            session.add(child)
            session.flush()  # Get child ID

            for item in group.items:
                session.add(_build_item(child.id, item))
            created_orders.append(child)

        # The original's items are always replaced, never merged
        existing_items = session.exec(
            select(OrderItem).where(OrderItem.order_id == original.id)
        ).all()
        for item in existing_items:
            session.delete(item)
        session.flush()

        for item in request.remaining_items:
            session.add(_build_item(original.id, item, keep_notes=False))

        original_cancelled = not (request.remaining_items and update is not None)
        if original_cancelled:
            original.status = OrderStatus.cancelled
        else:
            original.subtotal = to_money(update.subtotal)
            original.tax = to_money(update.tax)
            original.discount = to_money(update.discount)
            original.total = to_money(update.total)
        original.updated_at = utcnow()
        original.version += 1
        session.add(original)

        session.commit()
    except OrderLifecycleError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.error(f"Split of order #{request.original_order_id} failed, rolled back", exc_info=True)
        raise

    session.refresh(original)
    for child in created_orders:
        session.refresh(child)

    logger.info(
        f"Order #{original.id} split into {len(created_orders)} orders "
        f"{[child.order_number for child in created_orders]}, "
        f"{len(request.remaining_items)} items remain, "
        f"original {'cancelled' if original_cancelled else 'updated'}"
    )
    publish_order_update(
        _order_event(
            "order_split",
            original,
            created_order_ids=[child.id for child in created_orders],
        ),
        table_id=original.table_id,
    )
    return SplitResult(
        created_orders=created_orders,
        original_order=original,
        original_cancelled=original_cancelled,
    )


# ============ STATUS / PAYMENT ============

def release_table_if_free(
    session: Session,
    table_id: int,
    exclude_order_id: int | None = None,
) -> bool:
    """
    Mark the table available when no other order on it is still open.
    Returns True if the table is (now) available.
    """
    statement = select(Order.id).where(
        Order.table_id == table_id,
        Order.status.not_in(SETTLED_STATUSES),
    )
    if exclude_order_id is not None:
        statement = statement.where(Order.id != exclude_order_id)
    open_order_ids = session.exec(statement).all()

    if open_order_ids:
        logger.info(
            f"Table {table_id} remains occupied by {len(open_order_ids)} open orders: {list(open_order_ids)}"
        )
        return False

    table = session.get(Table, table_id)
    if not table:
        raise TableNotFoundError(table_id)

    if table.status != TableStatus.available:
        table.status = TableStatus.available
        session.add(table)
        session.commit()
        logger.info(f"Table {table_id} ({table.table_number}) released")
    return True


def _release_table_after_payment(session: Session, order: Order) -> None:
    """Table release is secondary to the payment, which stays committed if this fails."""
    order_id, table_id = order.id, order.table_id
    try:
        release_table_if_free(session, table_id, exclude_order_id=order_id)
    except Exception as e:
        session.rollback()
        logger.warning(
            f"Table {table_id} release failed after order #{order_id} was paid: {e}",
            exc_info=True,
        )


def update_order_status(
    session: Session,
    ref: OrderRef,
    new_status: OrderStatus | str,
) -> Order:
    """
    Change an order's status following ALLOWED_TRANSITIONS.
    Paying an order stamps paid_at and releases its table when nothing else is open on it.
    """
    new_status = _coerce_status(new_status)

    if isinstance(ref, PendingOrderRef):
        logger.info(f"Status {new_status.value} for unsaved order {ref.client_token} acknowledged")
        return pending_order_snapshot(ref, new_status)

    order = get_order(session, ref.id)
    previous_status = order.status
    check_transition(previous_status, new_status)

    now = utcnow()
    order.status = new_status
    order.updated_at = now
    if new_status == OrderStatus.paid:
        order.paid_at = now
    order.version += 1
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order #{order.id} status {previous_status.value} -> {new_status.value}")

    if new_status == OrderStatus.paid and order.table_id is not None:
        _release_table_after_payment(session, order)

    publish_order_update(
        _order_event("status_update", order, previous_status=previous_status.value),
        table_id=order.table_id,
    )
    return order


def complete_payment(
    session: Session,
    ref: OrderRef,
    payment_method: str,
    amount_received: Decimal | None = None,
    change: Decimal | None = None,
) -> Order:
    """Record a completed payment: status paid, paid_at now, payment fields stored."""
    if not payment_method:
        raise OrderValidationError("payment_method is required")

    if isinstance(ref, PendingOrderRef):
        logger.info(f"Payment for unsaved order {ref.client_token} acknowledged")
        return pending_order_snapshot(
            ref,
            OrderStatus.paid,
            payment_method=payment_method,
            amount_received=to_money(amount_received) if amount_received is not None else None,
            change_amount=to_money(change) if change is not None else None,
        )

    order = get_order(session, ref.id)
    if order.status == OrderStatus.paid:
        raise OrderValidationError(f"Order #{order.id} is already paid")
    check_transition(order.status, OrderStatus.paid)

    now = utcnow()
    order.status = OrderStatus.paid
    order.payment_status = models.PaymentStatus.paid
    order.payment_method = payment_method
    order.paid_at = now
    if amount_received is not None:
        order.amount_received = to_money(amount_received)
    if change is not None:
        order.change_amount = to_money(change)
    order.updated_at = now
    order.version += 1
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order #{order.id} paid by {payment_method}, total={order.total}")

    if order.table_id is not None:
        _release_table_after_payment(session, order)

    publish_order_update(
        _order_event("order_paid", order, payment_method=payment_method),
        table_id=order.table_id,
    )
    return order
