from __future__ import annotations

from sqlalchemy import event

from ..errors import ImmutableRecordError
from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .types import FixedDecimal

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_RESERVED = "reserved"
MOVEMENT_RELEASED = "released"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT, MOVEMENT_RESERVED, MOVEMENT_RELEASED)

REFERENCE_TYPES = ("order", "purchase_order", "manual")


class StockItem(db.Model):
    """
    Pooled stock balance for one product.

    INVARIANTS (enforced by stock_service on every write):
    - 0 <= reserved_quantity <= quantity
    - available_quantity == quantity - reserved_quantity
    - every change has a StockMovement written in the same transaction

    CONCURRENCY:
    Writers lock the row (SELECT ... FOR UPDATE) and version_id turns any
    lost update into a StaleDataError that the retry wrapper handles.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_items_quantity_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_stock_items_reserved_nonneg"),
        db.CheckConstraint("reserved_quantity <= quantity", name="ck_stock_items_reserved_le_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, unique=True)

    quantity = db.Column(FixedDecimal(2), nullable=False, default=0)
    reserved_quantity = db.Column(FixedDecimal(2), nullable=False, default=0)
    available_quantity = db.Column(FixedDecimal(2), nullable=False, default=0)

    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5)
    reorder_point = db.Column(db.Integer, nullable=False, default=10)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=20)

    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_item", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def recompute_available(self) -> None:
        self.available_quantity = self.quantity - self.reserved_quantity

    @property
    def is_low(self) -> bool:
        return self.available_quantity <= self.low_stock_threshold

    @property
    def needs_reorder(self) -> bool:
        return self.available_quantity <= self.reorder_point

    def __repr__(self) -> str:
        return (
            f"<StockItem product_id={self.product_id} quantity={self.quantity} "
            f"reserved={self.reserved_quantity} available={self.available_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "reserved_quantity": str(self.reserved_quantity),
            "available_quantity": str(self.available_quantity),
            "low_stock_threshold": self.low_stock_threshold,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "batch_number": self.batch_number,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock audit trail.

    - quantity is always positive; type carries the direction
    - previous_quantity/new_quantity refer to StockItem.quantity (total),
      so reserved/released rows have previous == new
    - unit_cost is set on receipts only and feeds valuation
    - rows are never updated or deleted (guarded by mapper events below)
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_id_id", "product_id", "id"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(FixedDecimal(2), nullable=False)
    previous_quantity = db.Column(FixedDecimal(2), nullable=False)
    new_quantity = db.Column(FixedDecimal(2), nullable=False)
    unit_cost = db.Column(FixedDecimal(2), nullable=True)

    reason = db.Column(db.String(255), nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    performed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} type={self.type} "
            f"qty={self.quantity} {self.previous_quantity}->{self.new_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": str(self.quantity),
            "previous_quantity": str(self.previous_quantity),
            "new_quantity": str(self.new_quantity),
            "unit_cost": str(self.unit_cost) if self.unit_cost is not None else None,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "performed_by": self.performed_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def _block_movement_update(mapper, connection, target):
    raise ImmutableRecordError(f"StockMovement {target.id} is append-only")


@event.listens_for(StockMovement, "before_delete")
def _block_movement_delete(mapper, connection, target):
    raise ImmutableRecordError(f"StockMovement {target.id} is append-only")
