from __future__ import annotations

from sqlalchemy import event, inspect
from sqlalchemy.orm import object_session

from ..errors import ImmutableRecordError
from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .types import FixedDecimal

TRANSACTION_TYPES = ("sale", "refund", "expense", "purchase", "adjustment", "payout")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "cancelled")
ACCOUNT_TYPES = ("cash", "bank", "card_payments", "cod_collections", "petty_cash")

# Sign applied to an account's informational balance when a posting completes
BALANCE_DIRECTION = {
    "sale": 1,
    "adjustment": 1,
    "refund": -1,
    "expense": -1,
    "purchase": -1,
    "payout": -1,
}


class FinanceAccount(db.Model):
    """
    Money account (cash drawer, bank, card settlements, COD collections).

    balance is informational: it follows completed postings but is not
    the source of truth, the transaction rows are.
    """
    __tablename__ = "finance_accounts"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    type = db.Column(db.String(32), nullable=False)
    balance = db.Column(FixedDecimal(2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="AED")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    bank_name = db.Column(db.String(128), nullable=True)
    account_number = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<FinanceAccount id={self.id} name={self.name!r} balance={self.balance}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "balance": str(self.balance),
            "currency": self.currency,
            "is_active": self.is_active,
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class FinanceTransaction(db.Model):
    """
    Finance posting row.

    IMMUTABILITY:
    Once status is completed the row is frozen; a correction is a new
    adjustment transaction (finance_service.reverse_transaction).
    """
    __tablename__ = "finance_transactions"
    __table_args__ = (
        db.Index("ix_finance_tx_reference", "reference_type", "reference_id"),
        db.Index("ix_finance_tx_type_status", "type", "status"),
        db.CheckConstraint("amount > 0", name="ck_finance_tx_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    amount = db.Column(FixedDecimal(2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="AED")
    description = db.Column(db.String(500), nullable=True)

    account_id = db.Column(db.Integer, db.ForeignKey("finance_accounts.id"), nullable=False, index=True)
    account_name = db.Column(db.String(128), nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    details = db.Column("metadata", db.JSON, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    account = db.relationship("FinanceAccount", backref=db.backref("transactions", lazy="dynamic"))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<FinanceTransaction id={self.id} type={self.type} status={self.status} amount={self.amount}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "metadata": self.details,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }


@event.listens_for(FinanceTransaction, "before_update")
def _block_completed_transaction_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous == "completed":
        raise ImmutableRecordError(f"FinanceTransaction {target.id} is completed and cannot change")


@event.listens_for(FinanceTransaction, "before_delete")
def _block_transaction_delete(mapper, connection, target):
    raise ImmutableRecordError(f"FinanceTransaction {target.id} cannot be deleted")


class JournalEntry(db.Model):
    """
    Double-entry journal entry.

    Balanced at creation: sum(debit) == sum(credit), at least two lines.
    """
    __tablename__ = "journal_entries"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    entry_number = db.Column(db.String(32), nullable=False, unique=True)
    entry_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(500), nullable=False)
    reference = db.Column(db.String(64), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    # draft | posted
    status = db.Column(db.String(16), nullable=False, default="draft")
    total_debit = db.Column(FixedDecimal(2), nullable=False)
    total_credit = db.Column(FixedDecimal(2), nullable=False)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    posted_by = db.Column(db.String(64), nullable=True)
    posted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship(
        "JournalEntryLine",
        backref="entry",
        lazy=True,
        order_by="JournalEntryLine.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_number": self.entry_number,
            "entry_date": self.entry_date.isoformat(),
            "description": self.description,
            "reference": self.reference,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "status": self.status,
            "total_debit": str(self.total_debit),
            "total_credit": str(self.total_credit),
            "posted_at": to_utc_z(self.posted_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class JournalEntryLine(db.Model):
    __tablename__ = "journal_entry_lines"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=False, index=True)
    account_code = db.Column(db.String(16), nullable=False)
    account_name = db.Column(db.String(128), nullable=False)
    debit = db.Column(FixedDecimal(2), nullable=False, default=0)
    credit = db.Column(FixedDecimal(2), nullable=False, default=0)
    description = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "account_code": self.account_code,
            "account_name": self.account_name,
            "debit": str(self.debit),
            "credit": str(self.credit),
            "description": self.description,
        }
