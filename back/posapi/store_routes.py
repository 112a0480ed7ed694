"""Store settings, tables and products: the records orders refer to."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from . import models
from .db import get_session
from .models import utcnow


router = APIRouter()


# ============ STORE SETTINGS ============

def _settings_to_dict(store: models.StoreSettings) -> dict:
    return {
        "id": store.id,
        "store_name": store.store_name,
        "price_includes_tax": store.price_includes_tax,
        "updated_at": store.updated_at.isoformat(),
    }


@router.get("/store-settings")
def get_store_settings(session: Session = Depends(get_session)) -> dict:
    store = session.exec(select(models.StoreSettings)).first()
    if not store:
        raise HTTPException(status_code=404, detail="Store settings not found")
    return _settings_to_dict(store)


@router.put("/store-settings")
def update_store_settings(
    settings_update: models.StoreSettingsUpdate,
    session: Session = Depends(get_session),
) -> dict:
    """Update store settings, creating the row on first use."""
    store = session.exec(select(models.StoreSettings)).first()
    if not store:
        store = models.StoreSettings()

    for key, value in settings_update.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(store, key, value)
    store.updated_at = utcnow()

    session.add(store)
    session.commit()
    session.refresh(store)
    return _settings_to_dict(store)


# ============ TABLES ============

def _table_to_dict(table: models.Table) -> dict:
    return {
        "id": table.id,
        "table_number": table.table_number,
        "capacity": table.capacity,
        "status": table.status.value,
        "floor": table.floor,
    }


@router.get("/tables")
def list_tables(session: Session = Depends(get_session)) -> list[dict]:
    tables = session.exec(select(models.Table).order_by(models.Table.floor, models.Table.table_number)).all()
    return [_table_to_dict(table) for table in tables]


@router.post("/tables", status_code=201)
def create_table(
    table_data: models.TableCreate,
    session: Session = Depends(get_session),
) -> dict:
    table = models.Table(
        table_number=table_data.table_number,
        capacity=table_data.capacity,
        floor=table_data.floor,
    )
    session.add(table)
    session.commit()
    session.refresh(table)
    return _table_to_dict(table)


@router.put("/tables/{table_id}/status")
def update_table_status(
    table_id: int,
    status_update: models.TableStatusUpdate,
    session: Session = Depends(get_session),
) -> dict:
    table = session.get(models.Table, table_id)
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")

    table.status = status_update.status
    session.add(table)
    session.commit()
    session.refresh(table)
    return _table_to_dict(table)


# ============ PRODUCTS ============

def _product_to_dict(product: models.Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "sku": product.sku,
        "price": float(product.price),
        "after_tax_price": float(product.after_tax_price) if product.after_tax_price is not None else None,
        "tax_rate": float(product.tax_rate),
        "is_active": product.is_active,
    }


@router.get("/products")
def list_products(
    session: Session = Depends(get_session),
    active_only: bool = True,
) -> list[dict]:
    statement = select(models.Product)
    if active_only:
        statement = statement.where(models.Product.is_active == True)
    products = session.exec(statement.order_by(models.Product.name)).all()
    return [_product_to_dict(product) for product in products]


@router.post("/products", status_code=201)
def create_product(
    product_data: models.ProductCreate,
    session: Session = Depends(get_session),
) -> dict:
    existing = session.exec(select(models.Product).where(models.Product.sku == product_data.sku)).first()
    if existing:
        raise HTTPException(status_code=400, detail=f"SKU {product_data.sku} already exists")

    product = models.Product(**product_data.model_dump())
    session.add(product)
    session.commit()
    session.refresh(product)
    return _product_to_dict(product)
