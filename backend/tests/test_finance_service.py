# Overview: Pytest coverage for finance postings, reversals and journal entries.

"""
Finance Posting Tests

Covers:
- post() append semantics and informational balances
- pending -> completed / cancelled / failed settlement
- completed rows frozen; corrections by reversal
- journal entries balanced at creation and per-year numbering
"""

from datetime import date
from decimal import Decimal

import pytest

from freshcut.errors import (
    ConflictError,
    ImmutableRecordError,
    InvalidTransitionError,
    NotFoundError,
    UnbalancedEntryError,
    ValidationError,
)
from freshcut.models import FinanceAccount
from freshcut.services import finance_service, order_service


def _balance(name):
    return finance_service.resolve_account(name).balance


class TestAccounts:
    def test_default_accounts_idempotent(self, db_session):
        first = finance_service.ensure_default_accounts()
        second = finance_service.ensure_default_accounts()

        assert [a.name for a in first] == ["Cash", "Bank Account", "Card Payments", "COD Collections"]
        assert [a.id for a in first] == [a.id for a in second]
        assert all(a.currency == "AED" for a in first)

    def test_unknown_account_name(self, db_session):
        with pytest.raises(NotFoundError):
            finance_service.post("expense", "10", "Petty Cash Tin")

    def test_custom_account(self, db_session):
        account = finance_service.create_account(name="Petty Cash", account_type="petty_cash")
        tx = finance_service.post("expense", "12.40", "Petty Cash", description="Ice")
        assert tx.account_id == account.id
        assert _balance("Petty Cash") == Decimal("-12.40")

    def test_duplicate_account(self, db_session):
        finance_service.create_account(name="Petty Cash", account_type="petty_cash")
        with pytest.raises(ConflictError):
            finance_service.create_account(name="Petty Cash", account_type="petty_cash")

    def test_payment_method_routing(self):
        assert finance_service.account_for_payment_method("cod") == "COD Collections"
        assert finance_service.account_for_payment_method("card") == "Card Payments"
        assert finance_service.account_for_payment_method("bank_transfer") == "Bank Account"


class TestPosting:
    def test_completed_posting_moves_balance(self, db_session):
        tx = finance_service.post(
            "sale", "105.00", "Card Payments", reference_type="order", reference_id=7, metadata={"k": "v"}
        )

        assert tx.status == "completed"
        assert tx.completed_at is not None
        assert tx.details == {"k": "v"}
        assert _balance("Card Payments") == Decimal("105.00")
        assert finance_service.transactions_for("order", 7) == [tx]

    def test_pending_posting_moves_balance_on_completion(self, db_session):
        tx = finance_service.post("sale", "50", "COD Collections", status="pending")
        assert _balance("COD Collections") == Decimal("0")

        finance_service.complete_transaction(tx.id)

        assert finance_service.get_transaction(tx.id).status == "completed"
        assert _balance("COD Collections") == Decimal("50.00")

    def test_cancel_and_fail_only_from_pending(self, db_session):
        pending = finance_service.post("sale", "5", "Cash", status="pending")
        done = finance_service.post("sale", "5", "Cash")

        assert finance_service.cancel_transaction(pending.id).status == "cancelled"
        with pytest.raises(InvalidTransitionError):
            finance_service.fail_transaction(done.id)
        with pytest.raises(InvalidTransitionError):
            finance_service.complete_transaction(pending.id)

    @pytest.mark.parametrize("amount", ["0", "-3", 4.5])
    def test_invalid_amount(self, db_session, amount):
        with pytest.raises(ValidationError):
            finance_service.post("sale", amount, "Cash")

    def test_invalid_type_and_status(self, db_session):
        with pytest.raises(ValidationError):
            finance_service.post("gift", "1", "Cash")
        with pytest.raises(ValidationError):
            finance_service.post("sale", "1", "Cash", status="failed")

    def test_completed_row_is_frozen(self, db_session):
        tx = finance_service.post("sale", "10", "Cash")

        tx.amount = Decimal("11.00")
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()

    def test_transaction_delete_blocked(self, db_session):
        tx = finance_service.post("sale", "10", "Cash", status="pending")

        db_session.delete(tx)
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()


class TestReversal:
    def test_reversal_offsets_balance(self, db_session):
        sale = finance_service.post("sale", "80", "Bank Account")

        reversal = finance_service.reverse_transaction(sale.id, reason="Duplicate charge")

        assert reversal.type == "adjustment"
        assert reversal.amount == Decimal("80.00")
        assert reversal.details == {"reverses": sale.id, "direction": -1}
        assert reversal.reference_type == "finance_transaction"
        assert reversal.reference_id == sale.id
        assert _balance("Bank Account") == Decimal("0")
        assert finance_service.get_transaction(sale.id).status == "completed"

    def test_reversing_an_outflow_adds_back(self, db_session):
        expense = finance_service.post("expense", "30", "Cash")
        finance_service.reverse_transaction(expense.id)
        assert _balance("Cash") == Decimal("0")

    def test_reverse_once(self, db_session):
        sale = finance_service.post("sale", "80", "Bank Account")
        finance_service.reverse_transaction(sale.id)
        with pytest.raises(ConflictError):
            finance_service.reverse_transaction(sale.id)

    def test_pending_cannot_be_reversed(self, db_session):
        tx = finance_service.post("sale", "80", "Bank Account", status="pending")
        with pytest.raises(InvalidTransitionError):
            finance_service.reverse_transaction(tx.id)


class TestJournalEntries:
    def test_balanced_entry(self, db_session):
        entry = finance_service.create_journal_entry(
            lines=[
                {"account_code": "1110", "debit": "105.00"},
                {"account_code": "4100", "credit": "100.00"},
                {"account_code": "2200", "credit": "5.00"},
            ],
            description="Counter sale",
            entry_date=date(2026, 3, 1),
        )

        assert entry.entry_number == "JE-2026-000001"
        assert entry.status == "draft"
        assert entry.total_debit == entry.total_credit == Decimal("105.00")
        assert [line.account_name for line in entry.lines] == ["Cash in Hand", "Sales Revenue", "VAT Payable"]

    def test_numbering_restarts_per_year(self, db_session):
        lines = [{"account_code": "1110", "debit": "1"}, {"account_code": "4100", "credit": "1"}]
        a = finance_service.create_journal_entry(lines=lines, description="a", entry_date=date(2025, 12, 31))
        b = finance_service.create_journal_entry(lines=lines, description="b", entry_date=date(2026, 1, 1))
        c = finance_service.create_journal_entry(lines=lines, description="c", entry_date=date(2026, 1, 2))
        assert [a.entry_number, b.entry_number, c.entry_number] == [
            "JE-2025-000001", "JE-2026-000001", "JE-2026-000002",
        ]

    def test_unbalanced_entry_rejected(self, db_session):
        with pytest.raises(UnbalancedEntryError) as exc:
            finance_service.create_journal_entry(
                lines=[{"account_code": "1110", "debit": "10"}, {"account_code": "4100", "credit": "9.99"}],
                description="Bad",
            )
        assert exc.value.details == {"total_debit": "10.00", "total_credit": "9.99"}

    def test_single_line_rejected(self, db_session):
        with pytest.raises(UnbalancedEntryError):
            finance_service.create_journal_entry(lines=[{"account_code": "1110", "debit": "1"}], description="x")

    def test_line_with_both_sides_rejected(self, db_session):
        with pytest.raises(ValidationError):
            finance_service.create_journal_entry(
                lines=[
                    {"account_code": "1110", "debit": "1", "credit": "1"},
                    {"account_code": "4100", "credit": "1"},
                ],
                description="x",
            )

    def test_post_once(self, db_session):
        entry = finance_service.create_journal_entry(
            lines=[{"account_code": "1110", "debit": "1"}, {"account_code": "4100", "credit": "1"}],
            description="x",
        )
        posted = finance_service.post_journal_entry(entry.id, posted_by="accountant")
        assert posted.status == "posted"
        assert posted.posted_at is not None
        with pytest.raises(InvalidTransitionError):
            finance_service.post_journal_entry(entry.id)

    def test_sale_entry_for_delivered_order(self, db_session, make_product, place_order):
        product = make_product("10", price="20.00")
        order = place_order([(product.id, "1")])

        with pytest.raises(ValidationError):
            finance_service.build_sale_journal_entry(order.id)

        order_service.set_status(order.id, "delivered")
        entry = finance_service.build_sale_journal_entry(order.id)
        again = finance_service.build_sale_journal_entry(order.id)

        assert again.id == entry.id
        assert [(line.account_code, line.debit, line.credit) for line in entry.lines] == [
            ("1130", Decimal("21.00"), Decimal("0")),
            ("4100", Decimal("0"), Decimal("20.00")),
            ("2200", Decimal("0"), Decimal("1.00")),
        ]
        assert entry.reference == order.order_number

    def test_accounts_not_touched_by_journal(self, db_session):
        finance_service.create_journal_entry(
            lines=[{"account_code": "1110", "debit": "1"}, {"account_code": "4100", "credit": "1"}],
            description="x",
        )
        assert db_session.query(FinanceAccount).count() == 0


class TestOrderRefundPosting:
    def test_refund_of_uncollected_cod_sale(self, db_session, make_product, place_order):
        product = make_product("10", price="20.00")
        order = place_order([(product.id, "1")], payment_method="cod")
        order_service.set_status(order.id, "delivered")

        order_service.set_status(order.id, "refunded")

        postings = finance_service.transactions_for("order", order.id)
        assert [(t.type, t.status, t.amount) for t in postings] == [
            ("sale", "cancelled", Decimal("21.00")),
            ("refund", "cancelled", Decimal("21.00")),
        ]
        assert _balance("COD Collections") == Decimal("0")
        with pytest.raises(InvalidTransitionError):
            finance_service.complete_transaction(postings[0].id)

    def test_refund_of_collected_cod_sale(self, db_session, make_product, place_order):
        product = make_product("10", price="20.00")
        order = place_order([(product.id, "1")], payment_method="cod")
        order_service.set_status(order.id, "delivered")
        sale = finance_service.transactions_for("order", order.id, "sale")[0]
        finance_service.complete_transaction(sale.id)

        order_service.set_status(order.id, "refunded")

        refund = finance_service.transactions_for("order", order.id, "refund")[0]
        assert refund.status == "completed"
        assert _balance("COD Collections") == Decimal("0")
