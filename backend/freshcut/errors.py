# Overview: Error taxonomy shared by the stock, order, purchasing and finance services.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


class LedgerError(Exception):
    """Base for every domain failure. status_code mirrors the HTTP class."""

    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": type(self).__name__, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError, ValueError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(LedgerError, LookupError):
    """404-level missing product, stock row, order, PO, account or line."""

    status_code = 404

    def __init__(self, entity: str, key):
        super().__init__(f"{entity} {key} not found", entity=entity, key=key)
        self.entity = entity
        self.key = key


@dataclass(frozen=True)
class Shortage:
    product_id: int
    available: Decimal
    requested: Decimal

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "available": str(self.available),
            "requested": str(self.requested),
        }


class InsufficientStockError(LedgerError):
    """One or more lines cannot be covered by available stock."""

    status_code = 409

    def __init__(self, shortages: list[Shortage]):
        summary = ", ".join(
            f"product {s.product_id}: available={s.available}, requested={s.requested}"
            for s in shortages
        )
        super().__init__(
            f"Insufficient stock ({summary})",
            shortages=[s.to_dict() for s in shortages],
        )
        self.shortages = list(shortages)


class InvalidTransitionError(LedgerError):
    """409-level status change the state machine does not allow."""

    status_code = 409

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            f"{entity} cannot move from {current} to {requested}",
            entity=entity,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class ConflictError(LedgerError):
    """409-level business rule conflict (duplicate, already reversed, ...)."""

    status_code = 409


class DuplicateReceiptError(ConflictError):
    """Receipt batch already applied to a purchase-order line."""


class UnbalancedEntryError(ValidationError):
    """Journal entry whose debits do not equal its credits."""


class ImmutableRecordError(LedgerError):
    """409-level attempt to edit an append-only or completed record."""

    status_code = 409


class PersistenceError(LedgerError):
    """503-level store unavailable or concurrency retries exhausted."""

    status_code = 503
