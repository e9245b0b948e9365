from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .types import FixedDecimal

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "ready_for_pickup",
    "out_for_delivery",
    "delivered",
    "cancelled",
    "refunded",
)
PAYMENT_STATUSES = ("pending", "authorized", "captured", "failed", "refunded", "partially_refunded")
PAYMENT_METHODS = ("card", "cod", "bank_transfer")
TRACKING_STATUSES = ("assigned", "picked_up", "in_transit", "nearby", "delivered", "failed")


class Order(db.Model):
    """
    Customer order created once per checkout.

    LIFECYCLE:
    Mutated only through order_service.set_status / set_payment_status;
    never deleted (cancellation is a status).

    MONEY:
    total == subtotal - discount + delivery_fee + vat_amount, checked when
    the order is created. vat_amount = (subtotal - discount) * vat_rate.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_mobile = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(32), nullable=False, default="pending")
    payment_method = db.Column(db.String(16), nullable=False)

    subtotal = db.Column(FixedDecimal(2), nullable=False)
    discount = db.Column(FixedDecimal(2), nullable=False, default=0)
    delivery_fee = db.Column(FixedDecimal(2), nullable=False, default=0)
    vat_rate = db.Column(FixedDecimal(4), nullable=False)
    vat_amount = db.Column(FixedDecimal(2), nullable=False)
    total = db.Column(FixedDecimal(2), nullable=False)

    delivery_notes = db.Column(db.Text, nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
    )
    status_history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        lazy="dynamic",
        order_by="OrderStatusHistory.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_mobile": self.customer_mobile,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "delivery_fee": str(self.delivery_fee),
            "vat_rate": str(self.vat_rate),
            "vat_amount": str(self.vat_amount),
            "total": str(self.total),
            "delivery_notes": self.delivery_notes,
            "delivered_at": to_utc_z(self.delivered_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Order line with product data snapshotted at checkout."""
    __tablename__ = "order_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)
    quantity = db.Column(FixedDecimal(2), nullable=False)
    unit_price = db.Column(FixedDecimal(2), nullable=False)
    total_price = db.Column(FixedDecimal(2), nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "notes": self.notes,
        }


class OrderStatusHistory(db.Model):
    """Append-only status trail; one row per set_status call."""
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_id_id", "order_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
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


class Payment(db.Model):
    """
    Payment record, one per order.

    Bookkeeping only: capture does not recognise revenue, delivery does.
    """
    __tablename__ = "payments"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    method = db.Column(db.String(16), nullable=False)
    amount = db.Column(FixedDecimal(2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="AED")
    status = db.Column(db.String(32), nullable=False)
    reference = db.Column(db.String(128), nullable=True)
    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("payment", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "reference": self.reference,
            "captured_at": to_utc_z(self.captured_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DeliveryTracking(db.Model):
    """Driver-side tracking state for an order (separate status machine)."""
    __tablename__ = "delivery_tracking"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default="assigned")
    driver_name = db.Column(db.String(255), nullable=True)
    driver_mobile = db.Column(db.String(64), nullable=True)
    estimated_arrival = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("delivery_tracking", uselist=False, lazy=True))
    events = db.relationship(
        "DeliveryTrackingEvent",
        backref="tracking",
        lazy=True,
        order_by="DeliveryTrackingEvent.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "driver_name": self.driver_name,
            "driver_mobile": self.driver_mobile,
            "estimated_arrival": to_utc_z(self.estimated_arrival),
            "delivered_at": to_utc_z(self.delivered_at),
            "timeline": [e.to_dict() for e in self.events],
        }


class DeliveryTrackingEvent(db.Model):
    __tablename__ = "delivery_tracking_events"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    tracking_id = db.Column(db.Integer, db.ForeignKey("delivery_tracking.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.String(500), nullable=True)
    recorded_by = db.Column(db.String(64), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "notes": self.notes,
            "recorded_by": self.recorded_by,
            "occurred_at": to_utc_z(self.occurred_at),
        }
