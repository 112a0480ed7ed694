from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import Numeric
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    paid = "paid"
    completed = "completed"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    refunded = "refunded"


class TableStatus(str, Enum):
    available = "available"
    occupied = "occupied"
    reserved = "reserved"
    maintenance = "maintenance"


class SalesChannel(str, Enum):
    pos = "pos"
    table = "table"
    online = "online"
    delivery = "delivery"


class StoreSettings(SQLModel, table=True):
    """Store-wide settings. A single row is expected."""
    __tablename__ = "store_settings"

    id: int | None = Field(default=None, primary_key=True)
    store_name: str = Field(default="POS Restaurant")
    price_includes_tax: bool = Field(default=False)  # Unit prices already embed tax
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Table(SQLModel, table=True):
    __tablename__ = "tables"

    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(index=True)  # e.g., "T5"
    capacity: int = Field(default=4)
    status: TableStatus = Field(default=TableStatus.available, index=True)
    floor: str = Field(default="1")
    created_at: datetime = Field(default_factory=utcnow)


class Product(SQLModel, table=True):
    __tablename__ = "products"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    sku: str = Field(unique=True, index=True)
    price: Decimal = Field(sa_type=Numeric(18, 2))  # Base price, before tax
    after_tax_price: Decimal | None = Field(default=None, sa_type=Numeric(18, 2))
    tax_rate: Decimal = Field(default=Decimal("0"), sa_type=Numeric(5, 2))  # Percent, e.g. 8.00
    is_active: bool = Field(default=True, index=True)


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(unique=True, index=True)
    table_id: int | None = Field(default=None, foreign_key="tables.id", index=True)
    parent_order_id: int | None = Field(default=None, foreign_key="orders.id", index=True)  # Set on orders produced by a split
    employee_id: int | None = None
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)

    customer_name: str | None = None
    customer_phone: str | None = None
    customer_count: int = Field(default=1)

    # Monetary totals, stored as submitted by the caller on updates
    subtotal: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    tax: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    discount: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    total: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    price_include_tax: bool = Field(default=False)  # Copied from store settings at creation

    # Payment tracking
    payment_method: str | None = None  # 'cash', 'card', 'mobile', etc.
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending)
    amount_received: Decimal | None = Field(default=None, sa_type=Numeric(10, 2))
    change_amount: Decimal | None = Field(default=None, sa_type=Numeric(10, 2))
    paid_at: datetime | None = None

    sales_channel: SalesChannel = Field(default=SalesChannel.pos)
    notes: str | None = None

    # Optimistic concurrency counter, bumped on every structural change
    version: int = Field(default=1)

    ordered_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: list["OrderItem"] = Relationship(back_populates="order")


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    product_id: int = Field(foreign_key="products.id")
    quantity: int
    unit_price: Decimal = Field(sa_type=Numeric(10, 2))  # Pre-tax by convention
    total: Decimal = Field(sa_type=Numeric(10, 2))
    discount: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    tax: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    price_before_tax: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    notes: str | None = None  # Item-specific notes (e.g., "no onions")

    order: Order = Relationship(back_populates="items")


# Request Models
class RequestModel(SQLModel):
    """Request bodies accept both snake_case and camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemInput(RequestModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    total: Decimal | None = None  # Defaults to unit_price * quantity
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    price_before_tax: Decimal | None = None
    notes: str | None = None


class OrderCreate(RequestModel):
    order_number: str | None = None
    table_id: int | None = None
    employee_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_count: int | None = None
    status: OrderStatus = OrderStatus.pending
    sales_channel: SalesChannel | None = None
    price_include_tax: bool | None = None
    notes: str | None = None
    # Explicit totals; computed from items when all are omitted
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    discount: Decimal | None = None
    total: Decimal | None = None
    items: list[OrderItemInput] = []


class OrderUpdate(RequestModel):
    table_id: int | None = None
    employee_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_count: int | None = None
    notes: str | None = None
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    discount: Decimal | None = None
    total: Decimal | None = None


class OrderItemsAdd(RequestModel):
    items: list[OrderItemInput]


class OrderTotalsInput(RequestModel):
    subtotal: Decimal
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal


class SplitGroupInput(RequestModel):
    name: str | None = None  # Target order number
    order_number: str | None = None
    table_id: int | None = None
    customer_name: str | None = None
    customer_count: int | None = None
    items: list[OrderItemInput] = []
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class SplitOrderRequest(RequestModel):
    original_order_id: int | None = None
    split_items: list[SplitGroupInput] = []
    remaining_items: list[OrderItemInput] = []
    original_order_update: OrderTotalsInput | None = None
    expected_version: int | None = None  # Rejects the split if the order changed since it was read


class OrderStatusUpdate(RequestModel):
    status: OrderStatus


class PaymentCompletion(RequestModel):
    payment_method: str = "cash"
    amount_received: Decimal | None = None
    change: Decimal | None = None


class TableCreate(RequestModel):
    table_number: str
    capacity: int = 4
    floor: str = "1"


class TableStatusUpdate(RequestModel):
    status: TableStatus


class ProductCreate(RequestModel):
    name: str
    sku: str
    price: Decimal
    after_tax_price: Decimal | None = None
    tax_rate: Decimal = Decimal("0")


class StoreSettingsUpdate(RequestModel):
    store_name: str | None = None
    price_includes_tax: bool | None = None
