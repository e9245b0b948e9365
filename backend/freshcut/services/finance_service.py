# Overview: Service-layer operations for finance postings and journal entries.

from __future__ import annotations

from datetime import date
from decimal import Decimal

from flask import current_app

from ..errors import ConflictError, InvalidTransitionError, NotFoundError, UnbalancedEntryError, ValidationError
from ..extensions import db
from ..models import FinanceAccount, FinanceTransaction, JournalEntry, JournalEntryLine, Order
from ..models.finance import ACCOUNT_TYPES, BALANCE_DIRECTION, TRANSACTION_STATUSES, TRANSACTION_TYPES
from ..numeric import ZERO, to_money
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction
from .document_service import JOURNAL_ENTRY_DOCUMENT, next_document_number
"""
Finance Posting Invariants (authoritative)

- post() is a pure append: one FinanceTransaction row per call.
- A completed transaction is never edited; corrections are new
  `adjustment` rows referencing the original.
- Account balances are informational. They move when a posting completes
  (sale/adjustment add, refund/expense/purchase/payout subtract).
- Double-entry balance is enforced only for journal entries, at creation:
  sum(debit) == sum(credit) exactly.
"""

CASH_ACCOUNT = "Cash"
BANK_ACCOUNT = "Bank Account"
CARD_ACCOUNT = "Card Payments"
COD_ACCOUNT = "COD Collections"

DEFAULT_ACCOUNTS = {
    CASH_ACCOUNT: "cash",
    BANK_ACCOUNT: "bank",
    CARD_ACCOUNT: "card_payments",
    COD_ACCOUNT: "cod_collections",
}

# Chart of accounts used for generated journal entries
CHART_OF_ACCOUNTS = {
    "1110": "Cash in Hand",
    "1120": "Bank Account",
    "1130": "Card Settlements Receivable",
    "1140": "COD Receivable",
    "2200": "VAT Payable",
    "4100": "Sales Revenue",
}
PAYMENT_METHOD_LEDGER_CODE = {
    "cod": "1140",
    "card": "1130",
    "bank_transfer": "1120",
}

ORDER_REFERENCE = "order"
TRANSACTION_REFERENCE = "finance_transaction"


def account_for_payment_method(method: str) -> str:
    """cod -> COD Collections, card -> Card Payments, anything else -> Bank Account."""
    if method == "cod":
        return COD_ACCOUNT
    if method == "card":
        return CARD_ACCOUNT
    return BANK_ACCOUNT


def ensure_default_accounts(*, currency: str | None = None, commit: bool = True) -> list[FinanceAccount]:
    """
    Create the default money accounts if missing.

    Safe to call repeatedly (idempotent).
    """
    currency = currency or current_app.config.get("CURRENCY", "AED")

    def _op() -> list[FinanceAccount]:
        accounts = []
        for name, account_type in DEFAULT_ACCOUNTS.items():
            account = db.session.query(FinanceAccount).filter_by(name=name).first()
            if account is None:
                account = FinanceAccount(name=name, type=account_type, balance=ZERO, currency=currency)
                db.session.add(account)
                db.session.flush()
            accounts.append(account)
        return accounts

    return run_in_transaction(_op, commit=commit)


def create_account(*, name: str, account_type: str, currency: str | None = None, commit: bool = True) -> FinanceAccount:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"account_type must be one of {ACCOUNT_TYPES}")

    def _op() -> FinanceAccount:
        if db.session.query(FinanceAccount).filter_by(name=name).first() is not None:
            raise ConflictError(f"account {name!r} already exists")
        account = FinanceAccount(
            name=name,
            type=account_type,
            balance=ZERO,
            currency=currency or current_app.config.get("CURRENCY", "AED"),
        )
        db.session.add(account)
        db.session.flush()
        return account

    return run_in_transaction(_op, commit=commit)


def resolve_account(account_ref, *, lock: bool = False) -> FinanceAccount:
    """
    Look an account up by id, name or instance.

    A default account name that does not exist yet is created on first use.
    """
    if isinstance(account_ref, FinanceAccount):
        account_ref = account_ref.id

    q = db.session.query(FinanceAccount)
    if isinstance(account_ref, int) and not isinstance(account_ref, bool):
        q = q.filter_by(id=account_ref)
    elif isinstance(account_ref, str) and account_ref.strip():
        q = q.filter_by(name=account_ref.strip())
    else:
        raise ValidationError("account must be an id or a name")
    if lock:
        q = lock_for_update(q)

    account = q.first()
    if account is None:
        if isinstance(account_ref, str) and account_ref.strip() in DEFAULT_ACCOUNTS:
            name = account_ref.strip()
            account = FinanceAccount(
                name=name,
                type=DEFAULT_ACCOUNTS[name],
                balance=ZERO,
                currency=current_app.config.get("CURRENCY", "AED"),
            )
            db.session.add(account)
            db.session.flush()
            return account
        raise NotFoundError("FinanceAccount", account_ref)
    if not account.is_active:
        raise ValidationError(f"account {account.name!r} is inactive")
    return account


def _balance_delta(tx: FinanceTransaction) -> Decimal:
    direction = BALANCE_DIRECTION[tx.type]
    if tx.type == "adjustment" and tx.details:
        direction = int(tx.details.get("direction", 1))
    return tx.amount * direction


def _apply_to_balance(tx: FinanceTransaction) -> None:
    account = resolve_account(tx.account_id, lock=True)
    account.balance = account.balance + _balance_delta(tx)


def post(
    tx_type: str,
    amount,
    account,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    metadata: dict | None = None,
    status: str = "completed",
    description: str | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> FinanceTransaction:
    """
    Append one finance transaction.

    Args:
        tx_type: sale | refund | expense | purchase | adjustment | payout
        amount: positive decimal (str/int/Decimal)
        account: account id or name (default accounts auto-created)
        status: pending | completed; completed postings move the balance

    Returns:
        The new FinanceTransaction (flushed, id assigned).
    """
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of {TRANSACTION_TYPES}")
    if status not in ("pending", "completed"):
        raise ValidationError("new transactions must be pending or completed")
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("amount must be positive")

    def _op() -> FinanceTransaction:
        acct = resolve_account(account)
        now = utcnow()
        tx = FinanceTransaction(
            type=tx_type,
            status=status,
            amount=amount,
            currency=acct.currency,
            description=description,
            account_id=acct.id,
            account_name=acct.name,
            reference_type=reference_type,
            reference_id=reference_id,
            details=metadata,
            created_by=created_by,
            created_at=now,
            completed_at=now if status == "completed" else None,
        )
        db.session.add(tx)
        db.session.flush()
        if status == "completed":
            _apply_to_balance(tx)

        current_app.logger.info(
            "Posted %s %s %s to %s (%s %s)",
            tx_type, amount, acct.currency, acct.name, reference_type, reference_id,
        )
        return tx

    return run_in_transaction(_op, commit=commit)


def get_transaction(tx_id: int) -> FinanceTransaction:
    tx = db.session.get(FinanceTransaction, tx_id)
    if tx is None:
        raise NotFoundError("FinanceTransaction", tx_id)
    return tx


def transactions_for(reference_type: str, reference_id: int, tx_type: str | None = None) -> list[FinanceTransaction]:
    q = db.session.query(FinanceTransaction).filter_by(
        reference_type=reference_type, reference_id=reference_id
    )
    if tx_type is not None:
        q = q.filter_by(type=tx_type)
    return q.order_by(FinanceTransaction.id.asc()).all()


def _settle(tx_id: int, new_status: str, commit: bool) -> FinanceTransaction:
    if new_status not in TRANSACTION_STATUSES:
        raise ValidationError(f"status must be one of {TRANSACTION_STATUSES}")

    def _op() -> FinanceTransaction:
        tx = lock_for_update(db.session.query(FinanceTransaction).filter_by(id=tx_id)).first()
        if tx is None:
            raise NotFoundError("FinanceTransaction", tx_id)
        if tx.status != "pending":
            raise InvalidTransitionError("FinanceTransaction", tx.status, new_status)
        tx.status = new_status
        if new_status == "completed":
            tx.completed_at = utcnow()
            _apply_to_balance(tx)
        return tx

    return run_in_transaction(_op, commit=commit)


def complete_transaction(tx_id: int, *, commit: bool = True) -> FinanceTransaction:
    """pending -> completed (e.g. COD cash handed in by the driver)."""
    return _settle(tx_id, "completed", commit)


def cancel_transaction(tx_id: int, *, commit: bool = True) -> FinanceTransaction:
    return _settle(tx_id, "cancelled", commit)


def fail_transaction(tx_id: int, *, commit: bool = True) -> FinanceTransaction:
    return _settle(tx_id, "failed", commit)


def reverse_transaction(
    tx_id: int,
    *,
    reason: str | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> FinanceTransaction:
    """
    Reverse a completed transaction with a new opposite `adjustment`.

    The original row is untouched. A transaction can be reversed once.
    """
    def _op() -> FinanceTransaction:
        original = get_transaction(tx_id)
        if original.status != "completed":
            raise InvalidTransitionError("FinanceTransaction", original.status, "reversed")
        if transactions_for(TRANSACTION_REFERENCE, original.id, "adjustment"):
            raise ConflictError(f"FinanceTransaction {tx_id} is already reversed")

        return post(
            "adjustment",
            original.amount,
            original.account_id,
            reference_type=TRANSACTION_REFERENCE,
            reference_id=original.id,
            metadata={"reverses": original.id, "direction": -1 if _balance_delta(original) > 0 else 1},
            status="completed",
            description=reason or f"Reversal of transaction {original.id}",
            created_by=created_by,
            commit=False,
        )

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Order postings
# =============================================================================


def post_order_sale(order: Order, *, created_by: str | None = None, commit: bool = True) -> FinanceTransaction:
    """
    Recognise revenue for a delivered order.

    Account follows payment method; COD stays pending until the cash is
    collected, other methods complete immediately. Idempotent per order.
    """
    def _op() -> FinanceTransaction:
        existing = transactions_for(ORDER_REFERENCE, order.id, "sale")
        if existing:
            return existing[0]
        return post(
            "sale",
            order.total,
            account_for_payment_method(order.payment_method),
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
            metadata={"order_number": order.order_number, "payment_method": order.payment_method},
            status="pending" if order.payment_method == "cod" else "completed",
            description=f"Sale for order {order.order_number}",
            created_by=created_by,
            commit=False,
        )

    return run_in_transaction(_op, commit=commit)


def post_order_refund(order: Order, *, created_by: str | None = None, commit: bool = True) -> FinanceTransaction:
    """
    Refund posting for order.total. Idempotent per order.

    A sale still pending (COD never collected) is cancelled in the same
    unit of work, and the refund is recorded as cancelled: no cash came in,
    so none goes out.
    """
    def _op() -> FinanceTransaction:
        existing = transactions_for(ORDER_REFERENCE, order.id, "refund")
        if existing:
            return existing[0]
        uncollected = [s for s in transactions_for(ORDER_REFERENCE, order.id, "sale") if s.status == "pending"]
        for sale in uncollected:
            _settle(sale.id, "cancelled", commit=False)
        refund = post(
            "refund",
            order.total,
            account_for_payment_method(order.payment_method),
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
            metadata={"order_number": order.order_number, "payment_method": order.payment_method},
            status="pending" if uncollected else "completed",
            description=f"Refund for order {order.order_number}",
            created_by=created_by,
            commit=False,
        )
        if uncollected:
            _settle(refund.id, "cancelled", commit=False)
        return refund

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# Journal entries
# =============================================================================


def _normalize_journal_line(raw: dict) -> dict:
    code = str(raw.get("account_code") or "").strip()
    if not code:
        raise ValidationError("account_code is required on every line")
    name = (raw.get("account_name") or CHART_OF_ACCOUNTS.get(code) or "").strip()
    if not name:
        raise ValidationError(f"account_name is required for account {code}")
    debit = to_money(raw.get("debit", 0), field="debit")
    credit = to_money(raw.get("credit", 0), field="credit")
    if (debit > 0) == (credit > 0):
        raise ValidationError(f"line for {code} must have exactly one of debit or credit")
    return {
        "account_code": code,
        "account_name": name,
        "debit": debit,
        "credit": credit,
        "description": raw.get("description"),
    }


def create_journal_entry(
    *,
    lines: list[dict],
    description: str,
    entry_date: date | None = None,
    reference: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> JournalEntry:
    """
    Create a draft journal entry.

    Raises:
        UnbalancedEntryError: fewer than two lines, or debits != credits.
    """
    description = (description or "").strip()
    if not description:
        raise ValidationError("description is required")
    if not lines or len(lines) < 2:
        raise UnbalancedEntryError("journal entry needs at least two lines")

    normalized = [_normalize_journal_line(line) for line in lines]
    total_debit = sum((line["debit"] for line in normalized), ZERO)
    total_credit = sum((line["credit"] for line in normalized), ZERO)
    if total_debit != total_credit:
        raise UnbalancedEntryError(
            f"debits ({total_debit}) do not equal credits ({total_credit})",
            total_debit=str(total_debit),
            total_credit=str(total_credit),
        )

    def _op() -> JournalEntry:
        entry_day = entry_date or utcnow().date()
        number = next_document_number(
            document_type=f"{JOURNAL_ENTRY_DOCUMENT}:{entry_day.year}",
            prefix=f"JE-{entry_day.year}-",
        )
        entry = JournalEntry(
            entry_number=number,
            entry_date=entry_day,
            description=description,
            reference=reference,
            reference_type=reference_type,
            reference_id=reference_id,
            status="draft",
            total_debit=total_debit,
            total_credit=total_credit,
            created_by=created_by,
        )
        db.session.add(entry)
        db.session.flush()
        for line in normalized:
            db.session.add(JournalEntryLine(entry_id=entry.id, **line))
        db.session.flush()
        return entry

    return run_in_transaction(_op, commit=commit)


def post_journal_entry(entry_id: int, *, posted_by: str | None = None, commit: bool = True) -> JournalEntry:
    def _op() -> JournalEntry:
        entry = lock_for_update(db.session.query(JournalEntry).filter_by(id=entry_id)).first()
        if entry is None:
            raise NotFoundError("JournalEntry", entry_id)
        if entry.status != "draft":
            raise InvalidTransitionError("JournalEntry", entry.status, "posted")
        entry.status = "posted"
        entry.posted_by = posted_by
        entry.posted_at = utcnow()
        return entry

    return run_in_transaction(_op, commit=commit)


def build_sale_journal_entry(order_id: int, *, created_by: str | None = None, commit: bool = True) -> JournalEntry:
    """
    Journal entry for a delivered order.

    Debit the receivable for the payment method with the total; credit sales
    revenue with total - VAT and VAT payable with the VAT. Idempotent per order.
    """
    def _op() -> JournalEntry:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.status != "delivered":
            raise ValidationError(f"order {order.order_number} is not delivered")
        existing = (
            db.session.query(JournalEntry)
            .filter_by(reference_type=ORDER_REFERENCE, reference_id=order.id)
            .first()
        )
        if existing is not None:
            return existing

        debit_code = PAYMENT_METHOD_LEDGER_CODE.get(order.payment_method, "1110")
        lines = [
            {"account_code": debit_code, "debit": order.total, "description": f"Order {order.order_number}"},
            {"account_code": "4100", "credit": order.total - order.vat_amount},
        ]
        if order.vat_amount > 0:
            lines.append({"account_code": "2200", "credit": order.vat_amount})
        return create_journal_entry(
            lines=lines,
            description=f"Sale - order {order.order_number}",
            reference=order.order_number,
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
            created_by=created_by,
            commit=False,
        )

    return run_in_transaction(_op, commit=commit)
