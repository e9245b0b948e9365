# Overview: Pytest coverage for purchase orders and receiving.

"""
Purchase-Order Receiving Tests

Covers:
- PO totals and numbering
- manual status flow (draft -> pending -> approved -> ordered, cancel)
- partial / full receipts feeding the stock ledger
- receipt batch dedup and over-receipt rejection
- purchase posting on full receipt
"""

from decimal import Decimal

import pytest

from freshcut.errors import ConflictError, DuplicateReceiptError, InvalidTransitionError, ValidationError
from freshcut.models import FinanceTransaction, PurchaseOrderReceipt
from freshcut.services import finance_service, purchase_service, stock_service


@pytest.fixture
def open_po(db_session, supplier, make_product):
    """Ordered PO: 10 x 4.00 of one cut and 5 x 2.00 of another."""
    beef = make_product(with_stock=False)
    lamb = make_product()
    po = purchase_service.create_purchase_order(
        supplier_id=supplier.id,
        items=[
            {"product_id": beef.id, "quantity": "10", "unit_cost": "4.00"},
            {"product_id": lamb.id, "quantity": "5", "unit_cost": "2.00"},
        ],
        shipping_cost="5",
        discount="1",
        created_by="buyer",
    )
    for status in ("pending", "approved", "ordered"):
        purchase_service.set_purchase_order_status(po.id, status, actor="manager")
    return purchase_service.get_purchase_order(po.id)


class TestPurchaseOrders:
    def test_totals_and_number(self, db_session, supplier, make_product):
        product = make_product()
        po = purchase_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": "10", "unit_cost": "4.00"}],
        )

        assert po.order_number == "PO-000001"
        assert po.status == "draft"
        assert po.subtotal == Decimal("40.00")
        assert po.tax_amount == Decimal("2.00")
        assert po.total == Decimal("42.00")
        assert po.items[0].total_cost == Decimal("40.00")
        assert po.items[0].received_quantity == Decimal("0")

    def test_supplier_code_normalised_and_unique(self, db_session, supplier):
        assert supplier.code == "GULF"
        with pytest.raises(ConflictError):
            purchase_service.create_supplier(code="Gulf", name="Duplicate")

    def test_status_flow_records_approval(self, db_session, open_po):
        assert open_po.status == "ordered"
        assert open_po.approved_by == "manager"
        assert open_po.approved_at is not None
        assert [h.status for h in open_po.status_history] == ["draft", "pending", "approved", "ordered"]

    def test_skipping_approval_is_rejected(self, db_session, supplier, make_product):
        product = make_product()
        po = purchase_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": "1", "unit_cost": "1"}],
        )
        with pytest.raises(InvalidTransitionError):
            purchase_service.set_purchase_order_status(po.id, "ordered")

    def test_draft_cannot_be_received(self, db_session, supplier, make_product):
        product = make_product()
        po = purchase_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": "1", "unit_cost": "1"}],
        )
        with pytest.raises(InvalidTransitionError):
            purchase_service.receive_items(po.id, [(po.items[0].id, "1")], batch_id="DN-1")


class TestReceiving:
    def test_partial_then_full_receipt(self, db_session, open_po):
        beef_line, lamb_line = open_po.items

        outcome = purchase_service.receive_items(
            open_po.id, [(beef_line.id, "6")], batch_id="DN-1", performed_by="store"
        )
        assert outcome.purchase_order.status == "partially_received"
        assert outcome.total_value == Decimal("24.00")
        assert outcome.finance_transaction is None
        assert stock_service.get_stock_item(beef_line.product_id).quantity == Decimal("6")

        outcome = purchase_service.receive_items(
            open_po.id,
            [{"item_id": beef_line.id, "quantity": "4"}, {"item_id": lamb_line.id, "quantity": "5"}],
            batch_id="DN-2",
        )
        po = outcome.purchase_order
        assert po.status == "received"
        assert po.actual_delivery_date is not None
        assert stock_service.get_stock_item(beef_line.product_id).quantity == Decimal("10")
        assert stock_service.get_stock_item(lamb_line.product_id).quantity == Decimal("5")

        posting = outcome.finance_transaction
        assert posting.type == "purchase"
        assert posting.amount == po.total == Decimal("56.50")
        assert posting.account_name == "Bank Account"
        assert finance_service.resolve_account("Bank Account").balance == Decimal("-56.50")

    def test_in_movements_carry_unit_cost(self, db_session, open_po):
        beef_line = open_po.items[0]
        purchase_service.receive_items(open_po.id, [(beef_line.id, "3")], batch_id="DN-1")

        movements = stock_service.list_movements(reference_type="purchase_order", reference_id=open_po.id)
        assert [(m.type, m.quantity, m.unit_cost) for m in movements] == [
            ("in", Decimal("3"), Decimal("4.00")),
        ]

    def test_duplicate_batch_rejected(self, db_session, open_po):
        beef_line = open_po.items[0]
        purchase_service.receive_items(open_po.id, [(beef_line.id, "2")], batch_id="DN-1")

        with pytest.raises(DuplicateReceiptError):
            purchase_service.receive_items(open_po.id, [(beef_line.id, "2")], batch_id="DN-1")

        assert stock_service.get_stock_item(beef_line.product_id).quantity == Decimal("2")
        assert purchase_service.get_purchase_order(open_po.id).items[0].received_quantity == Decimal("2")
        assert db_session.query(PurchaseOrderReceipt).count() == 1

    def test_over_receipt_rejected(self, db_session, open_po):
        lamb_line = open_po.items[1]

        with pytest.raises(ValidationError):
            purchase_service.receive_items(open_po.id, [(lamb_line.id, "6")], batch_id="DN-1")

        assert purchase_service.get_purchase_order(open_po.id).status == "ordered"
        assert stock_service.get_stock_item(lamb_line.product_id).quantity == Decimal("0")

    def test_line_twice_in_one_batch(self, db_session, open_po):
        beef_line = open_po.items[0]
        with pytest.raises(ValidationError):
            purchase_service.receive_items(
                open_po.id, [(beef_line.id, "1"), (beef_line.id, "1")], batch_id="DN-1"
            )

    def test_batch_id_required(self, db_session, open_po):
        with pytest.raises(ValidationError):
            purchase_service.receive_items(open_po.id, [(open_po.items[0].id, "1")], batch_id=" ")

    def test_received_po_is_closed(self, db_session, open_po):
        beef_line, lamb_line = open_po.items
        purchase_service.receive_items(
            open_po.id, [(beef_line.id, "10"), (lamb_line.id, "5")], batch_id="DN-1"
        )

        with pytest.raises(InvalidTransitionError):
            purchase_service.receive_items(open_po.id, [(beef_line.id, "1")], batch_id="DN-2")
        with pytest.raises(InvalidTransitionError):
            purchase_service.set_purchase_order_status(open_po.id, "cancelled")
        assert db_session.query(FinanceTransaction).filter_by(type="purchase").count() == 1
