# Overview: Pytest coverage for checkout and the order state machine.

"""
Order Lifecycle Tests

Covers:
- checkout pricing, snapshots and atomic reservation
- transition rules (forward jumps, exits, terminal states)
- stock and finance side effects on delivered / cancelled / refunded
- rollback when a side effect fails
- payment status bookkeeping and delivery tracking
"""

from decimal import Decimal

import pytest

from freshcut.errors import InsufficientStockError, InvalidTransitionError, NotFoundError, ValidationError
from freshcut.models import FinanceTransaction, Order, OrderStatusHistory, Payment, StockItem
from freshcut.services import finance_service, order_service, stock_service


def _sales(order):
    return finance_service.transactions_for("order", order.id, "sale")


class TestCheckout:
    def test_totals_and_snapshot(self, db_session, make_product, place_order):
        product = make_product("20", price="12.50")

        order = place_order(
            [(product.id, "2")],
            discount="5.00",
            delivery_fee="7.00",
            customer_name="Aisha",
        )

        assert order.order_number == "ORD-000001"
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.subtotal == Decimal("25.00")
        assert order.vat_rate == Decimal("0.0500")
        assert order.vat_amount == Decimal("1.00")
        assert order.total == Decimal("28.00")
        item = order.items[0]
        assert (item.sku, item.unit_price, item.total_price) == (product.sku, Decimal("12.50"), Decimal("25.00"))

    def test_product_discount_applied_to_unit_price(self, db_session, make_product, place_order):
        product = make_product("20", price="10.00", discount_percent="10")
        order = place_order([(product.id, "3")])
        assert order.items[0].unit_price == Decimal("9.00")
        assert order.subtotal == Decimal("27.00")

    def test_checkout_reserves_stock(self, db_session, make_product, place_order):
        product = make_product("100")
        order = place_order([(product.id, "10")])

        stock = stock_service.get_stock_item(product.id)
        assert stock.reserved_quantity == Decimal("10")
        assert stock.available_quantity == Decimal("90")
        reserved = stock_service.list_movements(reference_type="order", reference_id=order.id)
        assert [m.type for m in reserved] == ["reserved"]

    def test_duplicate_lines_become_one_item(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2"), (product.id, "3")])
        assert len(order.items) == 1
        assert order.items[0].quantity == Decimal("5")

    def test_shortage_leaves_no_order(self, db_session, make_product, place_order):
        a = make_product("1")
        b = make_product("1")

        with pytest.raises(InsufficientStockError) as exc:
            place_order([(a.id, "2"), (b.id, "3")])

        assert len(exc.value.shortages) == 2
        assert db_session.query(Order).count() == 0
        assert stock_service.list_movements(movement_type="reserved") == []

    def test_inactive_product_rejected(self, db_session, make_product, place_order):
        product = make_product("5", is_active=False)
        with pytest.raises(ValidationError):
            place_order([(product.id, "1")])

    def test_unknown_payment_method(self, db_session, make_product, place_order):
        product = make_product("5")
        with pytest.raises(ValidationError):
            place_order([(product.id, "1")], payment_method="crypto")

    def test_order_numbers_are_sequential(self, db_session, make_product, place_order):
        product = make_product("10")
        numbers = [place_order([(product.id, "1")]).order_number for _ in range(3)]
        assert numbers == ["ORD-000001", "ORD-000002", "ORD-000003"]

    def test_history_starts_with_pending(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        history = order_service.list_status_history(order.id)
        assert [(h.status, h.notes) for h in history] == [("pending", "Order placed")]


class TestTransitionRules:
    @pytest.mark.parametrize("current, new, allowed", [
        ("pending", "confirmed", True),
        ("pending", "out_for_delivery", True),
        ("processing", "confirmed", False),
        ("processing", "cancelled", True),
        ("delivered", "refunded", True),
        ("delivered", "cancelled", False),
        ("cancelled", "delivered", False),
        ("refunded", "pending", False),
        ("confirmed", "confirmed", True),
    ])
    def test_can_transition(self, current, new, allowed):
        assert order_service.can_transition(current, new) is allowed

    def test_invalid_transition_writes_nothing(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        order_service.set_status(order.id, "cancelled")

        with pytest.raises(InvalidTransitionError):
            order_service.set_status(order.id, "delivered")

        assert order_service.get_order(order.id).status == "cancelled"
        assert len(order_service.list_status_history(order.id)) == 2
        assert stock_service.list_movements(movement_type="out") == []

    def test_unknown_status(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        with pytest.raises(ValidationError):
            order_service.set_status(order.id, "shipped")

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            order_service.set_status(404, "confirmed")

    def test_same_status_appends_history_only(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])

        order_service.set_status(order.id, "pending", notes="Customer called")

        history = order_service.list_status_history(order.id)
        assert [h.status for h in history] == ["pending", "pending"]
        assert len(stock_service.list_movements(reference_type="order", reference_id=order.id)) == 1


class TestSideEffects:
    def test_delivery_depletes_and_posts_sale(self, db_session, make_product, place_order):
        """Delivered: out movement 100 -> 90 and one completed card sale."""
        p1 = make_product("100")
        order = place_order([(p1.id, "10")])

        order_service.set_status(order.id, "delivered", actor="driver-7")

        stock = stock_service.get_stock_item(p1.id)
        assert (stock.quantity, stock.reserved_quantity, stock.available_quantity) == (
            Decimal("90"), Decimal("0"), Decimal("90"),
        )
        out = stock_service.list_movements(product_id=p1.id, movement_type="out")
        assert [(m.quantity, m.previous_quantity, m.new_quantity) for m in out] == [
            (Decimal("10"), Decimal("100"), Decimal("90")),
        ]
        sales = _sales(order)
        assert len(sales) == 1
        assert sales[0].amount == order.total
        assert sales[0].status == "completed"
        assert sales[0].account_name == "Card Payments"
        assert order_service.get_order(order.id).delivered_at is not None

    def test_cod_sale_stays_pending(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")], payment_method="cod")

        order_service.set_status(order.id, "delivered")

        sale = _sales(order)[0]
        assert sale.status == "pending"
        assert sale.account_name == "COD Collections"

    def test_delivered_twice_is_idempotent(self, db_session, make_product, place_order):
        product = make_product("100")
        order = place_order([(product.id, "10")])

        order_service.set_status(order.id, "delivered")
        order_service.set_status(order.id, "delivered")

        assert len(stock_service.list_movements(movement_type="out")) == 1
        assert len(_sales(order)) == 1
        assert stock_service.get_stock_item(product.id).quantity == Decimal("90")

    def test_refund_after_delivery_keeps_stock_out(self, db_session, make_product, place_order):
        product = make_product("100")
        order = place_order([(product.id, "10")])
        order_service.set_status(order.id, "delivered")

        order_service.set_status(order.id, "refunded")

        refunds = finance_service.transactions_for("order", order.id, "refund")
        assert len(refunds) == 1
        assert refunds[0].amount == order.total
        assert stock_service.list_movements(movement_type="released") == []
        assert stock_service.get_stock_item(product.id).quantity == Decimal("90")

    def test_refund_before_delivery_releases(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "4")])
        order_service.set_status(order.id, "confirmed")

        order_service.set_status(order.id, "refunded")

        stock = stock_service.get_stock_item(product.id)
        assert stock.reserved_quantity == Decimal("0")
        assert len(finance_service.transactions_for("order", order.id, "refund")) == 1

    def test_failed_side_effect_rolls_back_transition(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        db_session.execute(StockItem.__table__.delete().where(StockItem.product_id == product.id))
        db_session.commit()

        with pytest.raises(NotFoundError):
            order_service.set_status(order.id, "delivered")

        assert order_service.get_order(order.id).status == "pending"
        assert len(order_service.list_status_history(order.id)) == 1
        assert db_session.query(FinanceTransaction).count() == 0

    def test_cancelled_is_terminal(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        order_service.set_status(order.id, "cancelled")
        with pytest.raises(InvalidTransitionError):
            order_service.set_status(order.id, "refunded")


class TestPaymentStatus:
    def test_captured_records_payment_without_postings(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])

        order_service.set_payment_status(order.id, "captured", reference="ch_123")

        payment = db_session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "captured"
        assert payment.amount == order.total
        assert payment.reference == "ch_123"
        assert payment.captured_at is not None
        assert order_service.get_order(order.id).payment_status == "captured"
        assert db_session.query(FinanceTransaction).count() == 0
        assert stock_service.get_stock_item(product.id).reserved_quantity == Decimal("2")

    def test_later_status_mirrored_onto_payment(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        order_service.set_payment_status(order.id, "captured")

        order_service.set_payment_status(order.id, "refunded")

        assert db_session.query(Payment).filter_by(order_id=order.id).one().status == "refunded"
        assert order_service.get_order(order.id).status == "pending"

    def test_unknown_payment_status(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        with pytest.raises(ValidationError):
            order_service.set_payment_status(order.id, "settled")


class TestDeliveryTracking:
    def test_tracking_drives_order_status(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])

        order_service.update_delivery_tracking(order.id, "assigned", driver_name="Omar")
        assert order_service.get_order(order.id).status == "ready_for_pickup"

        order_service.update_delivery_tracking(order.id, "in_transit")
        assert order_service.get_order(order.id).status == "out_for_delivery"

        tracking = order_service.update_delivery_tracking(order.id, "delivered")
        assert tracking.driver_name == "Omar"
        assert tracking.delivered_at is not None
        assert [e.status for e in tracking.events] == ["assigned", "in_transit", "delivered"]
        assert order_service.get_order(order.id).status == "delivered"
        assert len(_sales(order)) == 1
        assert stock_service.get_stock_item(product.id).quantity == Decimal("8")

    def test_failed_attempt_leaves_order_and_allows_reassignment(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        order_service.update_delivery_tracking(order.id, "in_transit")

        order_service.update_delivery_tracking(order.id, "failed", notes="No answer")
        assert order_service.get_order(order.id).status == "out_for_delivery"

        with pytest.raises(InvalidTransitionError):
            order_service.update_delivery_tracking(order.id, "picked_up")
        order_service.update_delivery_tracking(order.id, "assigned")
        # Order does not move backwards
        assert order_service.get_order(order.id).status == "out_for_delivery"

    def test_tracking_cannot_go_backwards(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        order_service.update_delivery_tracking(order.id, "nearby")
        with pytest.raises(InvalidTransitionError):
            order_service.update_delivery_tracking(order.id, "picked_up")

    def test_tracking_history_rows(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        order_service.update_delivery_tracking(order.id, "picked_up", actor="driver-1")

        history = db_session.query(OrderStatusHistory).filter_by(order_id=order.id).order_by(
            OrderStatusHistory.id
        ).all()
        assert [(h.status, h.changed_by, h.notes) for h in history][-1] == (
            "ready_for_pickup", "driver-1", "Delivery tracking: picked_up",
        )

    def test_tracking_rejected_on_cancelled_order(self, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "2")])
        order_service.set_status(order.id, "cancelled")

        with pytest.raises(InvalidTransitionError):
            order_service.update_delivery_tracking(order.id, "delivered")

        assert order_service.get_order(order.id).status == "cancelled"
        assert order_service.get_order(order.id).delivery_tracking is None
        assert stock_service.get_stock_item(product.id).available_quantity == Decimal("10")

    def test_tracking_delivered_captures_payment(self, db_session, make_product, place_order):
        product = make_product("10", price="20.00")
        order = place_order([(product.id, "1")], payment_method="cod")

        order_service.update_delivery_tracking(order.id, "delivered", actor="driver-7")

        delivered = order_service.get_order(order.id)
        assert delivered.payment_status == "captured"
        payment = db_session.query(Payment).filter_by(order_id=order.id).one()
        assert (payment.status, payment.amount, payment.updated_by) == ("captured", Decimal("21.00"), "driver-7")
        # Bookkeeping only: the sale posting is still the single pending COD one
        assert [(t.status, t.amount) for t in _sales(order)] == [("pending", Decimal("21.00"))]
        assert db_session.query(FinanceTransaction).count() == 1
