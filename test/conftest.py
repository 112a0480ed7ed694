import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite://")

from posapi import events, models  # noqa: E402
from posapi.db import get_session  # noqa: E402
from posapi.main import app  # noqa: E402
from posapi.settings import TotalsValidation, settings  # noqa: E402


class FakeRedis:
    """Records published messages instead of talking to Redis."""

    def __init__(self):
        self.published: list[tuple[str, str]] = []

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(events, "get_redis", lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def _default_totals_validation(monkeypatch):
    monkeypatch.setattr(settings, "totals_validation", TotalsValidation.warn)


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine shared by the test and the app.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def client(engine):
    def _get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def store_settings(session) -> models.StoreSettings:
    store = models.StoreSettings(store_name="Test Bistro", price_includes_tax=False)
    session.add(store)
    session.commit()
    session.refresh(store)
    return store


@pytest.fixture()
def make_table(session):
    def _make_table(table_number: str = "T1", status: models.TableStatus = models.TableStatus.available):
        table = models.Table(table_number=table_number, status=status)
        session.add(table)
        session.commit()
        session.refresh(table)
        return table

    return _make_table


@pytest.fixture()
def products(session) -> dict[str, models.Product]:
    """A (10.00 base, 11.00 after tax) and B (10.00 base, no after-tax price)."""
    a = models.Product(name="Pho", sku="A", price=Decimal("10.00"), after_tax_price=Decimal("11.00"), tax_rate=Decimal("10"))
    b = models.Product(name="Spring rolls", sku="B", price=Decimal("10.00"))
    session.add(a)
    session.add(b)
    session.commit()
    session.refresh(a)
    session.refresh(b)
    return {"A": a, "B": b}


@pytest.fixture()
def make_order(session):
    """Insert an order with items directly, bypassing the service."""

    def _make_order(
        order_number: str = "O1",
        table_id: int | None = None,
        status: models.OrderStatus = models.OrderStatus.pending,
        items: list[tuple[int, int, str]] = (),  # (product_id, quantity, unit_price)
    ) -> models.Order:
        order = models.Order(
            order_number=order_number,
            table_id=table_id,
            status=status,
            customer_name="Walk-in",
            customer_count=3,
            employee_id=7,
            sales_channel=models.SalesChannel.table if table_id else models.SalesChannel.pos,
        )
        session.add(order)
        session.flush()
        subtotal = Decimal("0")
        for product_id, quantity, unit_price in items:
            price = Decimal(unit_price)
            session.add(models.OrderItem(
                order_id=order.id,
                product_id=product_id,
                quantity=quantity,
                unit_price=price,
                total=price * quantity,
                notes="original note",
            ))
            subtotal += price * quantity
        order.subtotal = subtotal
        order.total = subtotal
        session.add(order)
        session.commit()
        session.refresh(order)
        return order

    return _make_order
