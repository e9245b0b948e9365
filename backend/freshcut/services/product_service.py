# Overview: Service-layer operations for the product catalog lookup used by the ledger.

from __future__ import annotations

from decimal import Decimal

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Product
from ..numeric import quantize_money, to_decimal, to_money
from .concurrency import run_in_transaction


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    if require_active and not product.is_active:
        raise ValidationError(f"Product {product_id} is not active")
    return product


def effective_unit_price(product: Product) -> Decimal:
    """List price with the product discount applied, rounded to money precision."""
    if not product.discount_percent:
        return product.price
    return quantize_money(product.price * (Decimal(100) - product.discount_percent) / Decimal(100))


def create_product(
    *,
    sku: str,
    name: str,
    price,
    unit: str = "kg",
    cost_price=None,
    discount_percent=None,
    is_active: bool = True,
    with_stock: bool = True,
    commit: bool = True,
) -> Product:
    """
    Create a catalog product and, by default, its zero-quantity stock row.
    """
    sku = (sku or "").strip()
    name = (name or "").strip()
    if not sku:
        raise ValidationError("sku is required")
    if not name:
        raise ValidationError("name is required")

    price = to_money(price, field="price")
    cost_price = to_money(cost_price, field="cost_price") if cost_price is not None else None
    if discount_percent is not None:
        discount_percent = to_decimal(discount_percent, field="discount_percent")
        if discount_percent < 0 or discount_percent > 100:
            raise ValidationError("discount_percent must be between 0 and 100")

    def _op() -> Product:
        if db.session.query(Product).filter_by(sku=sku).first() is not None:
            raise ValidationError(f"sku {sku!r} already exists")
        product = Product(
            sku=sku,
            name=name,
            unit=unit,
            price=price,
            cost_price=cost_price,
            discount_percent=discount_percent,
            is_active=is_active,
        )
        db.session.add(product)
        db.session.flush()
        if with_stock:
            from .stock_service import create_stock_item
            create_stock_item(product.id, commit=False)
        return product

    return run_in_transaction(_op, commit=commit)
