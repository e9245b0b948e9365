# Overview: Service-layer operations for purchase orders and receiving; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from flask import current_app

from ..errors import ConflictError, DuplicateReceiptError, InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    PurchaseOrder,
    PurchaseOrderItem,
    PurchaseOrderReceipt,
    PurchaseOrderStatusHistory,
    Supplier,
)
from ..models.purchasing import PO_STATUSES, RECEIVABLE_PO_STATUSES
from ..numeric import ZERO, ensure_storable, quantize_money, to_money, to_quantity, to_rate
from ..time_utils import utcnow
from . import finance_service, stock_service
from .concurrency import lock_for_update, run_in_transaction
from .document_service import PURCHASE_ORDER_DOCUMENT, next_document_number
from .product_service import get_product
"""
Purchase-Order Receiving Invariants (authoritative)

- received_quantity per line only grows and never exceeds quantity.
- A receipt batch (batch_id) applies to a line at most once; re-submitting
  a batch is rejected as a whole, so stock is never double-counted.
- Status after a receipt: received when every line is full,
  partially_received when anything has arrived.
- Stock `in` movements, the status change and (on full receipt) the
  `purchase` finance posting commit together or not at all.
"""

# Manual status moves; receiving statuses are driven by receive_items
MANUAL_TRANSITIONS = {
    "draft": ("pending", "cancelled"),
    "pending": ("approved", "cancelled"),
    "approved": ("ordered", "cancelled"),
    "ordered": ("cancelled",),
    "partially_received": (),
    "received": (),
    "cancelled": (),
}

PURCHASE_ORDER_REFERENCE = "purchase_order"


@dataclass
class ReceiptOutcome:
    purchase_order: PurchaseOrder
    total_value: Decimal
    movements: list = field(default_factory=list)
    finance_transaction: object | None = None


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFoundError("PurchaseOrder", po_id)
    return po


def _lock_po(po_id: int) -> PurchaseOrder:
    po = lock_for_update(db.session.query(PurchaseOrder).filter_by(id=po_id)).first()
    if po is None:
        raise NotFoundError("PurchaseOrder", po_id)
    return po


def _append_history(po: PurchaseOrder, status: str, actor: str | None, notes: str | None = None) -> None:
    db.session.add(
        PurchaseOrderStatusHistory(
            purchase_order_id=po.id,
            status=status,
            changed_by=actor or "system",
            notes=notes,
        )
    )


def create_supplier(
    *,
    code: str,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    payment_terms: str = "net_30",
    commit: bool = True,
) -> Supplier:
    code = (code or "").strip().upper()
    name = (name or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required")

    def _op() -> Supplier:
        if db.session.query(Supplier).filter_by(code=code).first() is not None:
            raise ConflictError(f"supplier {code!r} already exists")
        supplier = Supplier(code=code, name=name, email=email, phone=phone, payment_terms=payment_terms)
        db.session.add(supplier)
        db.session.flush()
        return supplier

    return run_in_transaction(_op, commit=commit)


def create_purchase_order(
    *,
    supplier_id: int,
    items,
    shipping_cost="0",
    discount="0",
    tax_rate=None,
    expected_delivery_date: date | None = None,
    notes: str | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> PurchaseOrder:
    """
    Create a draft purchase order.

    Items are dicts with product_id, quantity and unit_cost.
    total = subtotal + tax + shipping - discount, tax = subtotal * tax_rate.
    """
    if not items:
        raise ValidationError("at least one line is required")
    shipping_cost = to_money(shipping_cost, field="shipping_cost")
    discount = to_money(discount, field="discount")
    rate = to_rate(
        tax_rate if tax_rate is not None else current_app.config.get("PURCHASE_TAX_RATE", "0.05"),
        field="tax_rate",
    )

    parsed = []
    for raw in items:
        product_id = raw.get("product_id")
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError(f"product_id must be an integer, got {product_id!r}")
        parsed.append(
            (
                product_id,
                to_quantity(raw.get("quantity")),
                to_money(raw.get("unit_cost"), field="unit_cost"),
            )
        )

    def _op() -> PurchaseOrder:
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFoundError("Supplier", supplier_id)
        if not supplier.is_active:
            raise ValidationError(f"supplier {supplier.code} is inactive")

        lines = []
        subtotal = ZERO
        for product_id, quantity, unit_cost in parsed:
            product = get_product(product_id)
            total_cost = quantize_money(quantity * unit_cost)
            subtotal += total_cost
            lines.append(
                PurchaseOrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=quantity,
                    unit_cost=unit_cost,
                    total_cost=total_cost,
                    received_quantity=ZERO,
                )
            )

        tax_amount = quantize_money(subtotal * rate)
        total = ensure_storable(subtotal + tax_amount + shipping_cost - discount, field="total")
        if total <= 0:
            raise ValidationError("purchase order total must be positive")

        po = PurchaseOrder(
            order_number=next_document_number(document_type=PURCHASE_ORDER_DOCUMENT, prefix="PO-"),
            supplier_id=supplier.id,
            status="draft",
            subtotal=subtotal,
            tax_rate=rate,
            tax_amount=tax_amount,
            shipping_cost=shipping_cost,
            discount=discount,
            total=total,
            expected_delivery_date=expected_delivery_date,
            notes=notes,
            created_by=created_by,
        )
        db.session.add(po)
        db.session.flush()
        for line in lines:
            line.purchase_order_id = po.id
            db.session.add(line)
        _append_history(po, "draft", created_by, "Purchase order created")
        db.session.flush()
        return po

    return run_in_transaction(_op, commit=commit)


def set_purchase_order_status(
    po_id: int,
    new_status: str,
    *,
    actor: str | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> PurchaseOrder:
    """
    Manual status moves: draft -> pending -> approved -> ordered, or cancel
    before anything is received. Receiving statuses come from receive_items.
    """
    if new_status not in PO_STATUSES:
        raise ValidationError(f"status must be one of {PO_STATUSES}")

    def _op() -> PurchaseOrder:
        po = _lock_po(po_id)
        if new_status not in MANUAL_TRANSITIONS[po.status]:
            raise InvalidTransitionError("PurchaseOrder", po.status, new_status)
        po.status = new_status
        if new_status == "approved":
            po.approved_by = actor
            po.approved_at = utcnow()
        _append_history(po, new_status, actor, notes)
        db.session.flush()
        return po

    return run_in_transaction(_op, commit=commit)


def receive_items(
    po_id: int,
    receipts,
    *,
    batch_id: str,
    performed_by: str | None = None,
    commit: bool = True,
) -> ReceiptOutcome:
    """
    Apply a delivery batch to a purchase order.

    Args:
        receipts: (line_id, quantity) pairs or dicts with item_id/quantity
        batch_id: delivery-note identifier; a (line, batch_id) pair is
            applied once, a repeat raises DuplicateReceiptError

    Raises:
        InvalidTransitionError: PO is not approved/ordered/partially received
        ValidationError: quantity <= 0, unknown line, or over-receipt
    """
    batch_id = (batch_id or "").strip()
    if not batch_id:
        raise ValidationError("batch_id is required")

    parsed: dict[int, Decimal] = {}
    for raw in receipts:
        if isinstance(raw, dict):
            line_id, quantity = raw.get("item_id"), raw.get("quantity")
        else:
            line_id, quantity = raw
        if not isinstance(line_id, int) or isinstance(line_id, bool):
            raise ValidationError(f"item_id must be an integer, got {line_id!r}")
        if line_id in parsed:
            raise ValidationError(f"line {line_id} appears twice in batch {batch_id}")
        parsed[line_id] = to_quantity(quantity)
    if not parsed:
        raise ValidationError("at least one receipt line is required")

    def _op() -> ReceiptOutcome:
        po = _lock_po(po_id)
        if po.status not in RECEIVABLE_PO_STATUSES:
            raise InvalidTransitionError("PurchaseOrder", po.status, "received")

        lines = {line.id: line for line in po.items}
        applied = {
            r.purchase_order_item_id
            for r in db.session.query(PurchaseOrderReceipt)
            .filter_by(purchase_order_id=po.id, batch_id=batch_id)
            .all()
        }

        stock_lines = []
        for line_id, quantity in sorted(parsed.items()):
            line = lines.get(line_id)
            if line is None:
                raise NotFoundError("PurchaseOrderItem", line_id)
            if line_id in applied:
                current_app.logger.warning(
                    "Receipt batch %s already applied to %s line %s", batch_id, po.order_number, line_id
                )
                raise DuplicateReceiptError(
                    f"batch {batch_id} already applied to line {line_id}",
                    batch_id=batch_id,
                    item_id=line_id,
                )
            if line.received_quantity + quantity > line.quantity:
                raise ValidationError(
                    f"line {line_id} would receive {line.received_quantity + quantity} of {line.quantity}",
                    item_id=line_id,
                )

            line.received_quantity = line.received_quantity + quantity
            db.session.add(
                PurchaseOrderReceipt(
                    purchase_order_id=po.id,
                    purchase_order_item_id=line.id,
                    batch_id=batch_id,
                    quantity=quantity,
                    received_by=performed_by,
                )
            )
            stock_lines.append((line.product_id, quantity, line.unit_cost))

        previous = po.status
        if all(line.is_fully_received for line in po.items):
            po.status = "received"
            po.actual_delivery_date = utcnow()
        elif any(line.received_quantity > 0 for line in po.items):
            po.status = "partially_received"
        if po.status != previous:
            _append_history(po, po.status, performed_by, f"Receipt batch {batch_id}")
        db.session.flush()

        result = stock_service.receive(
            po.id, po.order_number, stock_lines, performed_by=performed_by, commit=False
        )
        outcome = ReceiptOutcome(purchase_order=po, total_value=result.total_value, movements=result.movements)

        if po.status == "received":
            outcome.finance_transaction = finance_service.post(
                "purchase",
                po.total,
                finance_service.BANK_ACCOUNT,
                reference_type=PURCHASE_ORDER_REFERENCE,
                reference_id=po.id,
                metadata={"order_number": po.order_number, "supplier_id": po.supplier_id},
                status="completed",
                description=f"Purchase order {po.order_number} received",
                created_by=performed_by,
                commit=False,
            )
        return outcome

    return run_in_transaction(_op, commit=commit)
