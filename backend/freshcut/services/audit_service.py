# Overview: Read-only stock replay, valuation and cross-entity reconciliation checks.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from ..errors import NotFoundError
from ..extensions import db
from ..models import Order, Product, StockItem, StockMovement
from ..models.stock import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RELEASED,
    MOVEMENT_RESERVED,
)
from ..numeric import ZERO, quantize_money
from . import finance_service, stock_service
"""
Audit Semantics (authoritative)

- Replay starts from zero and walks movements in id order.
- quantity: in adds, out subtracts, adjustment lands on new_quantity.
- reserved: reserved adds; released and order `out` subtract, never
  below zero. Manual `out` leaves reserved alone.
- A chain break is a movement whose previous_quantity is not the running
  quantity; it means a balance was changed without a matching movement.
- As-of filtering is inclusive: created_at <= as_of.
- Weighted average cost comes from `in` movements with a unit_cost only:
    sum(qty * unit_cost) / sum(qty), half-up to 0.01
"""


@dataclass
class ReplayResult:
    product_id: int
    quantity: Decimal
    reserved: Decimal
    movement_count: int
    breaks: list = field(default_factory=list)


@dataclass
class StockAudit:
    product_id: int
    stored_quantity: Decimal
    stored_reserved: Decimal
    stored_available: Decimal
    replay: ReplayResult
    problems: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "stored_quantity": str(self.stored_quantity),
            "stored_reserved": str(self.stored_reserved),
            "stored_available": str(self.stored_available),
            "replayed_quantity": str(self.replay.quantity),
            "replayed_reserved": str(self.replay.reserved),
            "movement_count": self.replay.movement_count,
            "problems": list(self.problems),
        }


def _movements(product_id: int, as_of: datetime | None = None):
    q = db.session.query(StockMovement).filter(StockMovement.product_id == product_id)
    if as_of is not None:
        q = q.filter(StockMovement.created_at <= as_of)
    return q.order_by(StockMovement.id.asc())


def _walk(product_id: int, as_of: datetime | None = None):
    """Yield (movement, running_quantity, running_reserved) after each movement."""
    quantity = ZERO
    reserved = ZERO

    for m in _movements(product_id, as_of):
        from_order = m.reference_type == stock_service.ORDER_REFERENCE
        if m.type == MOVEMENT_IN:
            quantity += m.quantity
        elif m.type == MOVEMENT_OUT:
            quantity -= m.quantity
            if from_order:
                reserved = max(ZERO, reserved - m.quantity)
        elif m.type == MOVEMENT_ADJUSTMENT:
            quantity = m.new_quantity if m.new_quantity is not None else quantity
        elif m.type == MOVEMENT_RESERVED:
            reserved += m.quantity
        elif m.type == MOVEMENT_RELEASED:
            reserved = max(ZERO, reserved - m.quantity)
        yield m, quantity, reserved


def replay_movements(product_id: int, as_of: datetime | None = None) -> ReplayResult:
    """
    Rebuild quantity and reserved for a product from its movement log.
    """
    result = ReplayResult(product_id=product_id, quantity=ZERO, reserved=ZERO, movement_count=0)
    previous_running = ZERO
    for m, quantity, reserved in _walk(product_id, as_of):
        if m.previous_quantity != previous_running:
            result.breaks.append(
                {
                    "movement_id": m.id,
                    "expected_previous": str(previous_running),
                    "recorded_previous": str(m.previous_quantity),
                }
            )
        if m.new_quantity != quantity:
            result.breaks.append(
                {
                    "movement_id": m.id,
                    "expected_new": str(quantity),
                    "recorded_new": str(m.new_quantity),
                }
            )
        previous_running = quantity
        result.quantity = quantity
        result.reserved = reserved
        result.movement_count += 1
    return result


def running_balances(product_id: int, as_of: datetime | None = None) -> list[dict]:
    """One row per movement with the running quantity and reserved after it."""
    return [
        {
            "movement_id": m.id,
            "type": m.type,
            "quantity": str(m.quantity),
            "running_quantity": str(quantity),
            "running_reserved": str(reserved),
            "reference_type": m.reference_type,
            "reference_id": m.reference_id,
            "created_at": m.created_at,
        }
        for m, quantity, reserved in _walk(product_id, as_of)
    ]


def verify_stock_item(product_id: int) -> StockAudit:
    """
    Compare a stored StockItem with its replayed movement log.

    Problems reported:
    - available != quantity - reserved
    - reserved outside [0, quantity]
    - replayed quantity or reserved differs from stored
    - chain breaks in previous/new quantities
    """
    stock = db.session.query(StockItem).filter_by(product_id=product_id).first()
    if stock is None:
        raise NotFoundError("StockItem", product_id)

    replay = replay_movements(product_id)
    audit = StockAudit(
        product_id=product_id,
        stored_quantity=stock.quantity,
        stored_reserved=stock.reserved_quantity,
        stored_available=stock.available_quantity,
        replay=replay,
    )
    if stock.available_quantity != stock.quantity - stock.reserved_quantity:
        audit.problems.append("available_quantity != quantity - reserved_quantity")
    if stock.reserved_quantity < 0 or stock.reserved_quantity > stock.quantity:
        audit.problems.append("reserved_quantity outside [0, quantity]")
    if replay.quantity != stock.quantity:
        audit.problems.append(f"replayed quantity {replay.quantity} != stored {stock.quantity}")
    if replay.reserved != stock.reserved_quantity:
        audit.problems.append(f"replayed reserved {replay.reserved} != stored {stock.reserved_quantity}")
    for brk in replay.breaks:
        audit.problems.append(f"movement chain break at movement {brk['movement_id']}")
    return audit


def audit_all_stock() -> list[StockAudit]:
    product_ids = [
        pid for (pid,) in db.session.query(StockItem.product_id).order_by(StockItem.product_id.asc()).all()
    ]
    return [verify_stock_item(pid) for pid in product_ids]


# =============================================================================
# Valuation
# =============================================================================


def weighted_average_cost(product_id: int, as_of: datetime | None = None) -> Decimal | None:
    """
    WAC from receipts (`in` movements carrying a unit_cost), optionally as-of.

    Returns None when nothing with a cost has been received.
    """
    q = db.session.query(StockMovement.quantity, StockMovement.unit_cost).filter(
        StockMovement.product_id == product_id,
        StockMovement.type == MOVEMENT_IN,
        StockMovement.unit_cost.isnot(None),
    )
    if as_of is not None:
        q = q.filter(StockMovement.created_at <= as_of)

    units = ZERO
    cost = ZERO
    for quantity, unit_cost in q.all():
        units += quantity
        cost += quantity * unit_cost
    if units <= 0:
        return None
    return quantize_money(cost / units)


def stock_valuation(as_of: datetime | None = None) -> dict:
    """
    Value on-hand stock per product at WAC (product cost_price when no
    receipt carries a cost). With as_of, quantities come from replay.
    """
    rows = []
    total_value = ZERO
    total_quantity = ZERO

    stocks = db.session.query(StockItem).order_by(StockItem.product_id.asc()).all()
    for stock in stocks:
        product = db.session.get(Product, stock.product_id)
        quantity = stock.quantity if as_of is None else replay_movements(stock.product_id, as_of).quantity

        unit_cost = weighted_average_cost(stock.product_id, as_of)
        cost_source = "wac"
        if unit_cost is None:
            unit_cost = product.cost_price if product and product.cost_price is not None else ZERO
            cost_source = "cost_price" if product and product.cost_price is not None else "none"

        value = quantize_money(quantity * unit_cost)
        total_value += value
        total_quantity += quantity
        rows.append(
            {
                "product_id": stock.product_id,
                "sku": product.sku if product else None,
                "name": product.name if product else None,
                "quantity": str(quantity),
                "unit_cost": str(unit_cost),
                "cost_source": cost_source,
                "value": str(value),
            }
        )

    return {
        "as_of": as_of,
        "items": rows,
        "total_quantity": str(total_quantity),
        "total_value": str(total_value),
    }


def low_stock_report() -> list[dict]:
    """Items at or below their low-stock threshold or reorder point."""
    rows = []
    stocks = db.session.query(StockItem).order_by(StockItem.product_id.asc()).all()
    for stock in stocks:
        if not (stock.is_low or stock.needs_reorder):
            continue
        product = db.session.get(Product, stock.product_id)
        rows.append(
            {
                "product_id": stock.product_id,
                "sku": product.sku if product else None,
                "name": product.name if product else None,
                "available_quantity": str(stock.available_quantity),
                "low_stock_threshold": stock.low_stock_threshold,
                "reorder_point": stock.reorder_point,
                "is_low": stock.is_low,
                "needs_reorder": stock.needs_reorder,
                "suggested_reorder_quantity": stock.reorder_quantity if stock.needs_reorder else 0,
            }
        )
    return rows


# =============================================================================
# Cross-entity reconciliation
# =============================================================================


def verify_order_postings(order_id: int) -> list[str]:
    """
    Check an order against the stock and finance ledgers.

    - reached delivered: exactly one sale posting; `out` per product equals
      the ordered quantity
    - cancelled/refunded before delivery: released per product equals
      reserved per product
    - refunded (before or after delivery): exactly one refund posting
    Returns a list of problems (empty when consistent).
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)

    problems = []
    ordered = stock_service.combine_lines(order.items)
    movements = stock_service.list_movements(
        reference_type=stock_service.ORDER_REFERENCE, reference_id=order.id, limit=None
    )
    totals: dict[tuple[int, str], Decimal] = {}
    for m in movements:
        key = (m.product_id, m.type)
        totals[key] = totals.get(key, ZERO) + m.quantity

    history = {h.status for h in order.status_history}
    reached_delivered = order.status == "delivered" or "delivered" in history

    if reached_delivered:
        sales = finance_service.transactions_for(finance_service.ORDER_REFERENCE, order.id, "sale")
        if len(sales) != 1:
            problems.append(f"expected exactly one sale posting, found {len(sales)}")
        elif sales[0].amount != order.total:
            problems.append(f"sale amount {sales[0].amount} != order total {order.total}")
        for product_id, quantity in ordered.items():
            shipped = totals.get((product_id, MOVEMENT_OUT), ZERO)
            if shipped != quantity:
                problems.append(f"product {product_id}: out {shipped} != ordered {quantity}")
    elif order.status in ("cancelled", "refunded"):
        for product_id in ordered:
            reserved = totals.get((product_id, MOVEMENT_RESERVED), ZERO)
            released = totals.get((product_id, MOVEMENT_RELEASED), ZERO)
            if reserved != released:
                problems.append(f"product {product_id}: released {released} != reserved {reserved}")
    if order.status == "refunded":
        refunds = finance_service.transactions_for(finance_service.ORDER_REFERENCE, order.id, "refund")
        if len(refunds) != 1:
            problems.append(f"expected exactly one refund posting, found {len(refunds)}")
    return problems
