# Overview: Service-layer operations for the order state machine; encapsulates business logic and database work.

from __future__ import annotations

from flask import current_app

from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    DeliveryTracking,
    DeliveryTrackingEvent,
    Order,
    OrderItem,
    OrderStatusHistory,
    Payment,
)
from ..models.orders import ORDER_STATUSES, PAYMENT_METHODS, PAYMENT_STATUSES, TRACKING_STATUSES
from ..numeric import ZERO, ensure_storable, quantize_money, to_money, to_rate
from ..time_utils import utcnow
from . import finance_service, stock_service
from .concurrency import lock_for_update, run_in_transaction
from .document_service import ORDER_DOCUMENT, next_document_number
from .product_service import effective_unit_price, get_product
"""
Order Lifecycle Invariants (authoritative)

States:
- Happy path: pending -> confirmed -> processing -> ready_for_pickup
  -> out_for_delivery -> delivered. Forward jumps are allowed, backward
  moves are not.
- cancelled and refunded are reachable from any non-terminal state.
- delivered, cancelled and refunded are terminal, except that a delivered
  order may still be refunded.

Transitions:
- Every set_status call appends a history row, including re-entry of the
  current status.
- Side effects run only when the status actually changes, in the same
  transaction as the status write:
    -> delivered  confirm_depletion + sale posting
    -> cancelled  release
    -> refunded   refund posting (+ release when not yet delivered)
    -> confirmed  invoice notification only
- Any failure in a side effect rolls the whole transition back.

Payment status is independent and never touches stock or finance.
"""

HAPPY_PATH = (
    "pending",
    "confirmed",
    "processing",
    "ready_for_pickup",
    "out_for_delivery",
    "delivered",
)
TERMINAL_STATUSES = ("delivered", "cancelled", "refunded")
EXIT_STATUSES = ("cancelled", "refunded")

TRACKING_FLOW = ("assigned", "picked_up", "in_transit", "nearby", "delivered")
TRACKING_TO_ORDER_STATUS = {
    "assigned": "ready_for_pickup",
    "picked_up": "ready_for_pickup",
    "in_transit": "out_for_delivery",
    "nearby": "out_for_delivery",
    "delivered": "delivered",
}


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if current == "delivered":
        return new == "refunded"
    if current in TERMINAL_STATUSES:
        return False
    if new in EXIT_STATUSES:
        return True
    if new in HAPPY_PATH:
        return HAPPY_PATH.index(new) > HAPPY_PATH.index(current)
    return False


def invoice_number(order: Order) -> str:
    """INV-YYYYMM-<order digits>"""
    stamp = (order.created_at or utcnow()).strftime("%Y%m")
    return f"INV-{stamp}-{order.order_number.replace('ORD-', '')}"


def _check_totals(order: Order) -> None:
    expected = order.subtotal - order.discount + order.delivery_fee + order.vat_amount
    if order.total != expected:
        raise ValidationError(
            f"order total {order.total} does not equal subtotal - discount + delivery_fee + vat ({expected})"
        )


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def get_order_by_number(order_number: str) -> Order:
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        raise NotFoundError("Order", order_number)
    return order


def list_status_history(order_id: int) -> list[OrderStatusHistory]:
    get_order(order_id)
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id.asc())
        .all()
    )


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


# =============================================================================
# Checkout
# =============================================================================


def create_order(
    *,
    items,
    payment_method: str,
    customer_name: str | None = None,
    customer_email: str | None = None,
    customer_mobile: str | None = None,
    discount="0",
    delivery_fee="0",
    delivery_notes: str | None = None,
    actor: str = "system",
    commit: bool = True,
) -> Order:
    """
    Create an order and reserve its stock in one transaction.

    WHY one transaction:
    The availability check and the reservation happen under the same row
    locks (reserve_if_available). If any line is short, InsufficientStockError
    lists every shortage and no order row survives.

    PRICING:
    - unit price = product price less product discount_percent
    - vat_amount = (subtotal - discount) * VAT_RATE, half-up to 0.01
    - total = subtotal - discount + delivery_fee + vat_amount
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {PAYMENT_METHODS}")
    lines = stock_service.combine_lines(items)
    discount = to_money(discount, field="discount")
    delivery_fee = to_money(delivery_fee, field="delivery_fee")
    vat_rate = to_rate(current_app.config.get("VAT_RATE", "0.05"), field="VAT_RATE")

    def _op() -> Order:
        order_items = []
        subtotal = ZERO
        for product_id, quantity in lines.items():
            product = get_product(product_id, require_active=True)
            unit_price = effective_unit_price(product)
            total_price = quantize_money(quantity * unit_price)
            subtotal += total_price
            order_items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    sku=product.sku,
                    quantity=quantity,
                    unit_price=unit_price,
                    total_price=total_price,
                )
            )

        if discount > subtotal:
            raise ValidationError("discount cannot exceed subtotal")
        vat_amount = quantize_money((subtotal - discount) * vat_rate)
        total = ensure_storable(subtotal - discount + delivery_fee + vat_amount, field="total")
        if total <= 0:
            raise ValidationError("order total must be positive")

        order = Order(
            order_number=next_document_number(document_type=ORDER_DOCUMENT, prefix="ORD-"),
            customer_name=customer_name,
            customer_email=customer_email,
            customer_mobile=customer_mobile,
            status="pending",
            payment_status="pending",
            payment_method=payment_method,
            subtotal=subtotal,
            discount=discount,
            delivery_fee=delivery_fee,
            vat_rate=vat_rate,
            vat_amount=vat_amount,
            total=total,
            delivery_notes=delivery_notes,
        )
        _check_totals(order)
        db.session.add(order)
        db.session.flush()

        for item in order_items:
            item.order_id = order.id
            db.session.add(item)
        db.session.add(
            OrderStatusHistory(order_id=order.id, status="pending", changed_by=actor, notes="Order placed")
        )
        db.session.flush()

        stock_service.reserve_if_available(
            order.id, order.order_number, lines, performed_by=actor, commit=False
        )
        return order

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Status transitions
# =============================================================================


def _apply_side_effects(order: Order, previous: str, new_status: str, actor: str) -> None:
    if new_status == "delivered":
        stock_service.confirm_depletion(order.id, performed_by=actor, commit=False)
        finance_service.post_order_sale(order, created_by=actor, commit=False)
        order.delivered_at = utcnow()
    elif new_status == "cancelled":
        stock_service.release(order.id, order.order_number, performed_by=actor, commit=False)
    elif new_status == "refunded":
        finance_service.post_order_refund(order, created_by=actor, commit=False)
        if previous != "delivered":
            stock_service.release(order.id, order.order_number, performed_by=actor, commit=False)
    elif new_status == "confirmed":
        current_app.logger.info(
            "Invoice %s ready for order %s", invoice_number(order), order.order_number
        )


def set_status(
    order_id: int,
    new_status: str,
    *,
    actor: str = "system",
    notes: str | None = None,
    commit: bool = True,
) -> Order:
    """
    Move an order to new_status.

    Raises:
        ValidationError: unknown status
        InvalidTransitionError: move not allowed; nothing is written
        InsufficientStockError / NotFoundError: from the stock ledger; the
            status change and history row are rolled back with it
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {ORDER_STATUSES}")

    def _op() -> Order:
        order = _lock_order(order_id)
        previous = order.status
        if not can_transition(previous, new_status):
            raise InvalidTransitionError("Order", previous, new_status)

        db.session.add(
            OrderStatusHistory(order_id=order.id, status=new_status, changed_by=actor, notes=notes)
        )
        if previous != new_status:
            order.status = new_status
            _apply_side_effects(order, previous, new_status, actor)
        db.session.flush()
        return order

    return run_in_transaction(_op, commit=commit)


def set_payment_status(
    order_id: int,
    status: str,
    *,
    actor: str = "system",
    reference: str | None = None,
    commit: bool = True,
) -> Order:
    """
    Record payment progress. Bookkeeping only.

    captured upserts the order's Payment row; other statuses are mirrored
    onto an existing Payment. Revenue is recognised on delivery, not here.
    """
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment status must be one of {PAYMENT_STATUSES}")

    def _op() -> Order:
        order = _lock_order(order_id)
        order.payment_status = status

        payment = db.session.query(Payment).filter_by(order_id=order.id).first()
        if status == "captured":
            if payment is None:
                payment = Payment(
                    order_id=order.id,
                    method=order.payment_method,
                    amount=order.total,
                    currency=current_app.config.get("CURRENCY", "AED"),
                    status="captured",
                )
                db.session.add(payment)
            payment.status = "captured"
            payment.captured_at = utcnow()
            payment.updated_by = actor
            if reference:
                payment.reference = reference
        elif payment is not None:
            payment.status = status
            payment.updated_by = actor
            if reference:
                payment.reference = reference
        db.session.flush()
        return order

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Delivery tracking
# =============================================================================


def _can_track(current: str | None, new: str) -> bool:
    if current is None or current == new:
        return True
    if current == "delivered":
        return False
    if new == "failed":
        return True
    if current == "failed":
        # Reassignment after a failed attempt
        return new == "assigned"
    return TRACKING_FLOW.index(new) > TRACKING_FLOW.index(current)


def update_delivery_tracking(
    order_id: int,
    status: str,
    *,
    actor: str = "system",
    driver_name: str | None = None,
    driver_mobile: str | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> DeliveryTracking:
    """
    Advance the driver-side tracking state and mirror it onto the order.

    MAPPING:
    assigned/picked_up -> ready_for_pickup, in_transit/nearby ->
    out_for_delivery, delivered -> delivered; failed leaves the order as is.
    The mapped order status is applied through set_status only when it is a
    forward move, so ledger side effects follow the usual rules.

    A tracking `delivered` also marks the payment captured (the driver
    collected or confirmed it). Cancelled and refunded orders take no
    tracking updates.
    """
    if status not in TRACKING_STATUSES:
        raise ValidationError(f"tracking status must be one of {TRACKING_STATUSES}")

    def _op() -> DeliveryTracking:
        order = _lock_order(order_id)
        if order.status in EXIT_STATUSES:
            raise InvalidTransitionError("Order", order.status, TRACKING_TO_ORDER_STATUS.get(status) or status)
        tracking = db.session.query(DeliveryTracking).filter_by(order_id=order.id).first()
        current = tracking.status if tracking is not None else None
        if not _can_track(current, status):
            raise InvalidTransitionError("DeliveryTracking", current, status)

        if tracking is None:
            tracking = DeliveryTracking(order_id=order.id, status=status)
            db.session.add(tracking)
        tracking.status = status
        if driver_name:
            tracking.driver_name = driver_name
        if driver_mobile:
            tracking.driver_mobile = driver_mobile
        if status == "delivered":
            tracking.delivered_at = utcnow()
        db.session.flush()
        db.session.add(
            DeliveryTrackingEvent(tracking_id=tracking.id, status=status, notes=notes, recorded_by=actor)
        )

        mapped = TRACKING_TO_ORDER_STATUS.get(status)
        if mapped and mapped != order.status and can_transition(order.status, mapped):
            set_status(
                order.id,
                mapped,
                actor=actor,
                notes=f"Delivery tracking: {status}",
                commit=False,
            )
        if status == "delivered" and order.payment_status != "captured":
            set_payment_status(order.id, "captured", actor=actor, commit=False)
        db.session.flush()
        return tracking

    return run_in_transaction(_op, commit=commit)
