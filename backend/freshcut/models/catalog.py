from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .types import FixedDecimal


class Product(db.Model):
    """
    Catalog product (lookup only for the ledger).

    The ledger reads name/sku/price from here to snapshot order lines and
    to phrase movement reasons; it never writes product rows.

    PRICING:
    - price is the list price per unit (per kg for weighed cuts)
    - discount_percent is applied at checkout: price * (1 - pct/100)
    - cost_price is the valuation fallback when no receipt carries a cost
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="kg")

    price = db.Column(FixedDecimal(2), nullable=False)
    cost_price = db.Column(FixedDecimal(2), nullable=True)
    discount_percent = db.Column(FixedDecimal(2), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "price": str(self.price),
            "cost_price": str(self.cost_price) if self.cost_price is not None else None,
            "discount_percent": str(self.discount_percent) if self.discount_percent is not None else None,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Supplier(db.Model):
    """Supplier master data for purchase orders."""
    __tablename__ = "suppliers"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    # net_7 | net_15 | net_30 | cod | prepaid
    payment_terms = db.Column(db.String(16), nullable=False, default="net_30")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "payment_terms": self.payment_terms,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
