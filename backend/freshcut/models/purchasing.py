from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .types import FixedDecimal

PO_STATUSES = (
    "draft",
    "pending",
    "approved",
    "ordered",
    "partially_received",
    "received",
    "cancelled",
)
# Receipts are accepted only once the supplier has the order
RECEIVABLE_PO_STATUSES = ("approved", "ordered", "partially_received")


class PurchaseOrder(db.Model):
    """
    Supplier purchase order.

    MONEY:
    total = subtotal + tax_amount + shipping_cost - discount

    RECEIVING:
    status moves to partially_received / received only through
    purchase_service.receive_items, which also drives stock and finance.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="draft", index=True)

    subtotal = db.Column(FixedDecimal(2), nullable=False, default=0)
    tax_rate = db.Column(FixedDecimal(4), nullable=False, default=0)
    tax_amount = db.Column(FixedDecimal(2), nullable=False, default=0)
    shipping_cost = db.Column(FixedDecimal(2), nullable=False, default=0)
    discount = db.Column(FixedDecimal(2), nullable=False, default=0)
    total = db.Column(FixedDecimal(2), nullable=False, default=0)

    expected_delivery_date = db.Column(db.Date, nullable=True)
    actual_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy=True))
    items = db.relationship(
        "PurchaseOrderItem",
        backref="purchase_order",
        lazy=True,
        order_by="PurchaseOrderItem.id",
    )
    status_history = db.relationship(
        "PurchaseOrderStatusHistory",
        backref="purchase_order",
        lazy="dynamic",
        order_by="PurchaseOrderStatusHistory.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "subtotal": str(self.subtotal),
            "tax_rate": str(self.tax_rate),
            "tax_amount": str(self.tax_amount),
            "shipping_cost": str(self.shipping_cost),
            "discount": str(self.discount),
            "total": str(self.total),
            "expected_delivery_date": self.expected_delivery_date.isoformat() if self.expected_delivery_date else None,
            "actual_delivery_date": to_utc_z(self.actual_delivery_date),
            "notes": self.notes,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(db.Model):
    """PO line; received_quantity only grows and never exceeds quantity."""
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.CheckConstraint("received_quantity >= 0", name="ck_po_items_received_nonneg"),
        db.CheckConstraint("received_quantity <= quantity", name="ck_po_items_received_le_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(FixedDecimal(2), nullable=False)
    unit_cost = db.Column(FixedDecimal(2), nullable=False)
    total_cost = db.Column(FixedDecimal(2), nullable=False)
    received_quantity = db.Column(FixedDecimal(2), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def outstanding_quantity(self):
        return self.quantity - self.received_quantity

    @property
    def is_fully_received(self) -> bool:
        return self.received_quantity >= self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": str(self.quantity),
            "unit_cost": str(self.unit_cost),
            "total_cost": str(self.total_cost),
            "received_quantity": str(self.received_quantity),
        }


class PurchaseOrderStatusHistory(db.Model):
    __tablename__ = "purchase_order_status_history"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    changed_by = db.Column(db.String(64), nullable=False)
    notes = db.Column(db.String(500), nullable=True)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "changed_at": to_utc_z(self.changed_at),
            "changed_by": self.changed_by,
            "notes": self.notes,
        }


class PurchaseOrderReceipt(db.Model):
    """
    Applied receipt batches.

    WHY: a (line, batch_id) pair can be applied exactly once, so a retried
    or double-submitted delivery note never double-counts stock.
    """
    __tablename__ = "purchase_order_receipts"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_item_id", "batch_id", name="uq_po_receipts_item_batch"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    purchase_order_item_id = db.Column(db.Integer, db.ForeignKey("purchase_order_items.id"), nullable=False)
    batch_id = db.Column(db.String(64), nullable=False, index=True)
    quantity = db.Column(FixedDecimal(2), nullable=False)
    received_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "purchase_order_item_id": self.purchase_order_item_id,
            "batch_id": self.batch_id,
            "quantity": str(self.quantity),
            "received_by": self.received_by,
            "created_at": to_utc_z(self.created_at),
        }
