# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..config import MISSING_STOCK_SKIP
from ..errors import InsufficientStockError, NotFoundError, Shortage, ValidationError
from ..extensions import db
from ..models import Order, StockItem, StockMovement
from ..models.stock import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RELEASED,
    MOVEMENT_RESERVED,
    MOVEMENT_TYPES,
)
from ..numeric import QUANTITY_PLACES, ZERO, ensure_storable, quantize_money, to_money, to_quantity
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction
from .product_service import get_product
"""
Stock Ledger Invariants (authoritative)

Balances:
- One StockItem per product; quantity is the total owned, reserved is held
  for open orders, available = quantity - reserved.
- 0 <= reserved <= quantity after every write.

Movements:
- Every balance change writes exactly one StockMovement in the same
  transaction; the log is append-only and replays to the current balance.
- quantity on a movement is always positive; type carries the meaning:
    in        quantity grows (PO receipt, manual add)
    out       quantity shrinks (delivery, manual subtract)
    adjustment quantity set to an absolute value (manual set)
    reserved  reserved grows, quantity unchanged (prev == new)
    released  reserved shrinks, quantity unchanged (prev == new)

Concurrency:
- Writers lock the StockItem row before read-compute-write.
- Multi-product operations lock in ascending product_id order.
- A failure on any line rolls back every line of the operation.
"""

ORDER_REFERENCE = "order"
PURCHASE_ORDER_REFERENCE = "purchase_order"
MANUAL_REFERENCE = "manual"

ADJUST_MODES = ("add", "subtract", "set")


@dataclass(frozen=True)
class ReceiptLine:
    product_id: int
    quantity: Decimal
    unit_cost: Decimal


@dataclass
class ReceiveResult:
    total_value: Decimal
    movements: list = field(default_factory=list)


def combine_lines(items: Iterable) -> "OrderedDict[int, Decimal]":
    """
    Normalize (product_id, quantity) pairs, summing duplicate products.

    Accepts tuples, dicts with product_id/quantity, or objects exposing
    those attributes (e.g. OrderItem), or an already-combined mapping.
    Result is sorted by product_id so callers lock rows in a stable order.
    """
    if isinstance(items, dict):
        items = list(items.items())
    combined: dict[int, Decimal] = {}
    for item in items:
        if isinstance(item, dict):
            product_id, quantity = item.get("product_id"), item.get("quantity")
        elif isinstance(item, (tuple, list)):
            product_id, quantity = item[0], item[1]
        else:
            product_id, quantity = item.product_id, item.quantity
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError(f"product_id must be an integer, got {product_id!r}")
        qty = to_quantity(quantity)
        combined[product_id] = combined.get(product_id, ZERO) + qty
    if not combined:
        raise ValidationError("at least one line is required")
    return OrderedDict(sorted(combined.items()))


def _lock_stock(product_id: int) -> StockItem | None:
    return lock_for_update(
        db.session.query(StockItem).filter_by(product_id=product_id)
    ).first()


def _append_movement(
    *,
    stock: StockItem,
    movement_type: str,
    quantity: Decimal,
    previous_quantity: Decimal,
    reason: str,
    reference_type: str | None,
    reference_id: int | None,
    performed_by: str | None,
    unit_cost: Decimal | None = None,
) -> StockMovement:
    """
    Append one movement row. No commit; the caller's transaction decides.
    """
    movement = StockMovement(
        product_id=stock.product_id,
        type=movement_type,
        quantity=quantity,
        previous_quantity=previous_quantity,
        new_quantity=stock.quantity,
        unit_cost=unit_cost,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _check_low_stock(stock: StockItem) -> None:
    if stock.is_low:
        current_app.logger.warning(
            "Low stock alert: product_id=%s available=%s threshold=%s",
            stock.product_id,
            stock.available_quantity,
            stock.low_stock_threshold,
        )


def _order_or_404(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


# =============================================================================
# Read-only
# =============================================================================


def get_stock_item(product_id: int) -> StockItem:
    stock = db.session.query(StockItem).filter_by(product_id=product_id).first()
    if stock is None:
        raise NotFoundError("StockItem", product_id)
    return stock


def find_shortages(items) -> list[Shortage]:
    """
    Lines that available stock cannot cover. A missing stock row counts as
    available 0 (fails closed).
    """
    lines = combine_lines(items)
    rows = {
        s.product_id: s
        for s in db.session.query(StockItem).filter(StockItem.product_id.in_(list(lines))).all()
    }
    shortages = []
    for product_id, requested in lines.items():
        stock = rows.get(product_id)
        available = stock.available_quantity if stock is not None else ZERO
        if available < requested:
            shortages.append(Shortage(product_id, available, requested))
    return shortages


def check_availability(items) -> None:
    """
    Raise InsufficientStockError listing every under-available line.

    Read-only; takes no locks. Use reserve_if_available to check and
    reserve atomically.
    """
    shortages = find_shortages(items)
    if shortages:
        raise InsufficientStockError(shortages)


def list_movements(
    *,
    product_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    movement_type: str | None = None,
    limit: int | None = 200,
) -> list[StockMovement]:
    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if reference_type is not None:
        q = q.filter(StockMovement.reference_type == reference_type)
    if reference_id is not None:
        q = q.filter(StockMovement.reference_id == reference_id)
    if movement_type is not None:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"unknown movement type {movement_type!r}")
        q = q.filter(StockMovement.type == movement_type)
    q = q.order_by(StockMovement.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def _order_movement_totals(order_id: int) -> dict[tuple[int, str], Decimal]:
    rows = (
        db.session.query(StockMovement.product_id, StockMovement.type, StockMovement.quantity)
        .filter(
            StockMovement.reference_type == ORDER_REFERENCE,
            StockMovement.reference_id == order_id,
        )
        .all()
    )
    totals: dict[tuple[int, str], Decimal] = {}
    for product_id, movement_type, quantity in rows:
        key = (product_id, movement_type)
        totals[key] = totals.get(key, ZERO) + quantity
    return totals


def _held_quantity(totals: dict, product_id: int) -> Decimal:
    held = (
        totals.get((product_id, MOVEMENT_RESERVED), ZERO)
        - totals.get((product_id, MOVEMENT_RELEASED), ZERO)
        - totals.get((product_id, MOVEMENT_OUT), ZERO)
    )
    return max(ZERO, held)


def outstanding_reservation(order_id: int, product_id: int) -> Decimal:
    """Reserved for this order and product, minus what was released or shipped."""
    return _held_quantity(_order_movement_totals(order_id), product_id)


# =============================================================================
# Stock rows
# =============================================================================


def create_stock_item(
    product_id: int,
    *,
    low_stock_threshold: int = 5,
    reorder_point: int = 10,
    reorder_quantity: int = 20,
    commit: bool = True,
) -> StockItem:
    """
    Create the zero-quantity stock row for a product.

    Idempotent: an existing row is returned unchanged.
    """
    def _op() -> StockItem:
        get_product(product_id)
        existing = db.session.query(StockItem).filter_by(product_id=product_id).first()
        if existing is not None:
            return existing
        stock = StockItem(
            product_id=product_id,
            quantity=ZERO,
            reserved_quantity=ZERO,
            available_quantity=ZERO,
            low_stock_threshold=low_stock_threshold,
            reorder_point=reorder_point,
            reorder_quantity=reorder_quantity,
        )
        db.session.add(stock)
        db.session.flush()
        return stock

    return run_in_transaction(_op, commit=commit)


def update_thresholds(
    product_id: int,
    *,
    low_stock_threshold: int | None = None,
    reorder_point: int | None = None,
    reorder_quantity: int | None = None,
    commit: bool = True,
) -> StockItem:
    """Change alert/reorder thresholds. Balances are untouched, so no movement."""
    for name, value in (
        ("low_stock_threshold", low_stock_threshold),
        ("reorder_point", reorder_point),
        ("reorder_quantity", reorder_quantity),
    ):
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ValidationError(f"{name} must be a non-negative integer")

    def _op() -> StockItem:
        stock = _lock_stock(product_id)
        if stock is None:
            raise NotFoundError("StockItem", product_id)
        if low_stock_threshold is not None:
            stock.low_stock_threshold = low_stock_threshold
        if reorder_point is not None:
            stock.reorder_point = reorder_point
        if reorder_quantity is not None:
            stock.reorder_quantity = reorder_quantity
        return stock

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Reservations
# =============================================================================


def _reserve_locked(
    stock: StockItem,
    quantity: Decimal,
    *,
    order_id: int,
    order_number: str,
    performed_by: str | None,
) -> StockMovement:
    if stock.reserved_quantity + quantity > stock.quantity:
        raise InsufficientStockError([Shortage(stock.product_id, stock.available_quantity, quantity)])

    stock.reserved_quantity = stock.reserved_quantity + quantity
    stock.recompute_available()
    return _append_movement(
        stock=stock,
        movement_type=MOVEMENT_RESERVED,
        quantity=quantity,
        previous_quantity=stock.quantity,
        reason=f"Reserved for order {order_number}",
        reference_type=ORDER_REFERENCE,
        reference_id=order_id,
        performed_by=performed_by,
    )


def reserve(
    order_id: int,
    order_number: str,
    items,
    *,
    performed_by: str | None = "system",
    commit: bool = True,
) -> list[StockMovement]:
    """
    Hold stock for an order: reserved += qty per line.

    MISSING STOCK ROW:
    RESERVE_MISSING_STOCK=reject (default) raises NotFoundError;
    RESERVE_MISSING_STOCK=skip logs a warning and leaves the line unreserved.

    Reserved can never exceed quantity; a line that would push it over
    raises InsufficientStockError and the whole call rolls back.
    """
    lines = combine_lines(items)
    skip_missing = current_app.config.get("RESERVE_MISSING_STOCK") == MISSING_STOCK_SKIP

    def _op() -> list[StockMovement]:
        movements = []
        for product_id, quantity in lines.items():
            stock = _lock_stock(product_id)
            if stock is None:
                if skip_missing:
                    current_app.logger.warning(
                        "No stock row for product_id=%s; reservation for %s skipped",
                        product_id,
                        order_number,
                    )
                    continue
                raise NotFoundError("StockItem", product_id)
            movements.append(
                _reserve_locked(
                    stock,
                    quantity,
                    order_id=order_id,
                    order_number=order_number,
                    performed_by=performed_by,
                )
            )
        return movements

    return run_in_transaction(_op, commit=commit)


def reserve_if_available(
    order_id: int,
    order_number: str,
    items,
    *,
    performed_by: str | None = "system",
    commit: bool = True,
) -> list[StockMovement]:
    """
    Check availability and reserve as one unit of work.

    All rows are locked first (ascending product_id), availability is
    re-validated under the locks, and only then is anything reserved.
    Every shortage is reported at once. Missing rows count as available 0.
    """
    lines = combine_lines(items)

    def _op() -> list[StockMovement]:
        locked = {product_id: _lock_stock(product_id) for product_id in lines}

        shortages = []
        for product_id, requested in lines.items():
            stock = locked[product_id]
            available = stock.available_quantity if stock is not None else ZERO
            if available < requested:
                shortages.append(Shortage(product_id, available, requested))
        if shortages:
            raise InsufficientStockError(shortages)

        return [
            _reserve_locked(
                locked[product_id],
                quantity,
                order_id=order_id,
                order_number=order_number,
                performed_by=performed_by,
            )
            for product_id, quantity in lines.items()
        ]

    return run_in_transaction(_op, commit=commit)


def release(
    order_id: int,
    order_number: str | None = None,
    *,
    performed_by: str | None = "system",
    commit: bool = True,
) -> list[StockMovement]:
    """
    Give back an order's held stock: reserved -= held, quantity unchanged.

    Only what this order still holds is released (reserved minus earlier
    releases and shipments), so repeated calls are no-ops and lines that
    were never reserved are skipped.
    """
    def _op() -> list[StockMovement]:
        order = _order_or_404(order_id)
        number = order_number or order.order_number
        lines = combine_lines(order.items)
        totals = _order_movement_totals(order_id)

        movements = []
        for product_id in lines:
            held = _held_quantity(totals, product_id)
            if held <= 0:
                continue
            stock = _lock_stock(product_id)
            if stock is None:
                raise NotFoundError("StockItem", product_id)

            stock.reserved_quantity = max(ZERO, stock.reserved_quantity - held)
            stock.recompute_available()
            movements.append(
                _append_movement(
                    stock=stock,
                    movement_type=MOVEMENT_RELEASED,
                    quantity=held,
                    previous_quantity=stock.quantity,
                    reason=f"Released from order {number}",
                    reference_type=ORDER_REFERENCE,
                    reference_id=order_id,
                    performed_by=performed_by,
                )
            )
        return movements

    return run_in_transaction(_op, commit=commit)


def confirm_depletion(
    order_id: int,
    *,
    performed_by: str | None = "system",
    commit: bool = True,
) -> list[StockMovement]:
    """
    Turn an order's reservation into a permanent depletion on delivery.

    Per line: quantity -= qty, reserved = max(0, reserved - qty), one `out`
    movement, low-stock warning when available <= threshold.

    Idempotent: if the order already has `out` movements, the existing ones
    are returned and nothing is written.
    """
    skip_missing = current_app.config.get("RESERVE_MISSING_STOCK") == MISSING_STOCK_SKIP

    def _op() -> list[StockMovement]:
        existing = list_movements(
            reference_type=ORDER_REFERENCE,
            reference_id=order_id,
            movement_type=MOVEMENT_OUT,
            limit=None,
        )
        if existing:
            return existing

        order = _order_or_404(order_id)
        lines = combine_lines(order.items)

        movements = []
        for product_id, quantity in lines.items():
            stock = _lock_stock(product_id)
            if stock is None:
                if skip_missing:
                    current_app.logger.warning(
                        "No stock row for product_id=%s; depletion for %s skipped",
                        product_id,
                        order.order_number,
                    )
                    continue
                raise NotFoundError("StockItem", product_id)

            new_quantity = stock.quantity - quantity
            new_reserved = max(ZERO, stock.reserved_quantity - quantity)
            if new_quantity < 0 or new_reserved > new_quantity:
                raise InsufficientStockError(
                    [Shortage(product_id, stock.quantity - new_reserved, quantity)]
                )

            previous = stock.quantity
            stock.quantity = new_quantity
            stock.reserved_quantity = new_reserved
            stock.recompute_available()
            movements.append(
                _append_movement(
                    stock=stock,
                    movement_type=MOVEMENT_OUT,
                    quantity=quantity,
                    previous_quantity=previous,
                    reason=f"Delivered on order {order.order_number}",
                    reference_type=ORDER_REFERENCE,
                    reference_id=order_id,
                    performed_by=performed_by,
                )
            )
            _check_low_stock(stock)
        return movements

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Receipts and manual corrections
# =============================================================================


def receive(
    po_id: int,
    po_number: str,
    items,
    *,
    performed_by: str | None = None,
    commit: bool = True,
) -> ReceiveResult:
    """
    Add received goods to stock.

    Items are (product_id, quantity, unit_cost). A product without a stock
    row gets one. Each line writes an `in` movement carrying unit_cost for
    valuation. Returns total_value = sum(quantity * unit_cost).
    """
    lines = []
    for item in items:
        if isinstance(item, ReceiptLine):
            product_id, quantity, unit_cost = item.product_id, item.quantity, item.unit_cost
        elif isinstance(item, dict):
            product_id, quantity, unit_cost = item.get("product_id"), item.get("quantity"), item.get("unit_cost")
        else:
            product_id, quantity, unit_cost = item
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError(f"product_id must be an integer, got {product_id!r}")
        lines.append(
            ReceiptLine(
                product_id=product_id,
                quantity=to_quantity(quantity),
                unit_cost=to_money(unit_cost, field="unit_cost"),
            )
        )
    if not lines:
        raise ValidationError("at least one line is required")
    lines.sort(key=lambda line: line.product_id)

    def _op() -> ReceiveResult:
        now = utcnow()
        result = ReceiveResult(total_value=ZERO)
        for line in lines:
            stock = _lock_stock(line.product_id)
            if stock is None:
                get_product(line.product_id)
                stock = StockItem(
                    product_id=line.product_id,
                    quantity=ZERO,
                    reserved_quantity=ZERO,
                    available_quantity=ZERO,
                )
                db.session.add(stock)

            previous = stock.quantity
            stock.quantity = ensure_storable(previous + line.quantity, QUANTITY_PLACES, field="quantity")
            stock.recompute_available()
            stock.last_restocked_at = now

            result.movements.append(
                _append_movement(
                    stock=stock,
                    movement_type=MOVEMENT_IN,
                    quantity=line.quantity,
                    previous_quantity=previous,
                    unit_cost=line.unit_cost,
                    reason=f"Received on purchase order {po_number}",
                    reference_type=PURCHASE_ORDER_REFERENCE,
                    reference_id=po_id,
                    performed_by=performed_by,
                )
            )
            result.total_value += line.quantity * line.unit_cost

        result.total_value = quantize_money(result.total_value)
        return result

    return run_in_transaction(_op, commit=commit)


def _parse_adjustment(delta, mode: str, reason: str) -> tuple[Decimal, str]:
    if mode not in ADJUST_MODES:
        raise ValidationError(f"mode must be one of {ADJUST_MODES}")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    return to_quantity(delta, field="delta", allow_zero=(mode == "set")), reason


def _adjust_locked(
    product_id: int,
    amount: Decimal,
    mode: str,
    reason: str,
    performed_by: str | None,
) -> StockItem:
    stock = _lock_stock(product_id)
    if stock is None:
        raise NotFoundError("StockItem", product_id)

    previous = stock.quantity
    if mode == "add":
        new_quantity = ensure_storable(previous + amount, QUANTITY_PLACES, field="quantity")
        movement_type, magnitude = MOVEMENT_IN, amount
    elif mode == "subtract":
        new_quantity = previous - amount
        movement_type, magnitude = MOVEMENT_OUT, amount
    else:
        new_quantity = amount
        movement_type, magnitude = MOVEMENT_ADJUSTMENT, abs(amount - previous)

    if new_quantity < stock.reserved_quantity:
        raise InsufficientStockError(
            [Shortage(product_id, stock.available_quantity, previous - new_quantity)]
        )
    if magnitude == 0:
        return stock

    stock.quantity = new_quantity
    stock.recompute_available()
    _append_movement(
        stock=stock,
        movement_type=movement_type,
        quantity=magnitude,
        previous_quantity=previous,
        reason=reason,
        reference_type=MANUAL_REFERENCE,
        reference_id=None,
        performed_by=performed_by,
    )
    _check_low_stock(stock)
    return stock


def manual_adjust(
    product_id: int,
    delta,
    mode: str,
    reason: str,
    *,
    performed_by: str | None = None,
    commit: bool = True,
) -> StockItem:
    """
    Manual stock correction.

    MODES (movement type written):
    - add: quantity += delta (`in`)
    - subtract: quantity -= delta (`out`)
    - set: quantity = delta (`adjustment`, magnitude |new - old|)

    Reserved is left alone, so the result may never drop below it.
    Setting to the current value writes nothing.
    """
    amount, reason = _parse_adjustment(delta, mode, reason)

    def _op() -> StockItem:
        return _adjust_locked(product_id, amount, mode, reason, performed_by)

    return run_in_transaction(_op, commit=commit)


def bulk_adjust(lines, *, performed_by: str | None = None, commit: bool = True) -> list[StockItem]:
    """
    Apply several manual corrections as one unit of work.

    Each line is a dict with product_id, quantity, mode and reason (the
    manual_adjust arguments). Every line is validated before anything is
    locked; rows are then locked in ascending product_id order, lines for
    the same product keep their given order. Any failing line rolls back
    the whole batch.

    Returns the touched StockItems in application order.
    """
    parsed = []
    for line in lines or []:
        if not isinstance(line, dict):
            raise ValidationError("each bulk line must be a mapping")
        product_id = line.get("product_id")
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError(f"product_id must be an integer, got {product_id!r}")
        mode = line.get("mode", "add")
        amount, reason = _parse_adjustment(line.get("quantity"), mode, line.get("reason"))
        parsed.append((product_id, amount, mode, reason))
    if not parsed:
        raise ValidationError("at least one line is required")
    parsed.sort(key=lambda p: p[0])

    def _op() -> list[StockItem]:
        return [
            _adjust_locked(product_id, amount, mode, reason, performed_by)
            for product_id, amount, mode, reason in parsed
        ]

    items = run_in_transaction(_op, commit=commit)
    current_app.logger.info("Bulk stock update applied %d line(s)", len(parsed))
    return items


def _to_expiry(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"expiry_date is not an ISO date: {value!r}") from exc
    raise ValidationError(f"expiry_date has unsupported type {type(value).__name__}")


def restock(
    product_id: int,
    quantity,
    *,
    batch_number: str | None = None,
    expiry_date=None,
    performed_by: str | None = None,
    commit: bool = True,
) -> StockItem:
    """
    Manual restock of a batch without a purchase order.

    quantity += qty with one `in` movement (reference_type "manual").
    batch_number and expiry_date overwrite the row's values only when
    given; last_restocked_at is always stamped.
    """
    amount = to_quantity(quantity)
    expiry = _to_expiry(expiry_date)
    batch = (batch_number or "").strip() or None

    def _op() -> StockItem:
        stock = _lock_stock(product_id)
        if stock is None:
            raise NotFoundError("StockItem", product_id)

        previous = stock.quantity
        stock.quantity = ensure_storable(previous + amount, QUANTITY_PLACES, field="quantity")
        stock.recompute_available()
        stock.last_restocked_at = utcnow()
        if batch:
            stock.batch_number = batch
        if expiry is not None:
            stock.expiry_date = expiry

        _append_movement(
            stock=stock,
            movement_type=MOVEMENT_IN,
            quantity=amount,
            previous_quantity=previous,
            reason=f"Restock - Batch: {batch or 'N/A'}",
            reference_type=MANUAL_REFERENCE,
            reference_id=None,
            performed_by=performed_by,
        )
        return stock

    return run_in_transaction(_op, commit=commit)
