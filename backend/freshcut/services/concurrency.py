# Overview: Service-layer operations for concurrency; row locks, retries and unit-of-work wrapping.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    version_id columns still catch lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates unchanged. When the last attempt still fails the
    error surfaces as PersistenceError.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise PersistenceError(
                    f"database operation failed after {attempts} attempts: {exc}"
                ) from exc
            current_app.logger.warning(
                "Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise


def run_in_transaction(op, *, commit: bool = True):
    """
    Run op() as one unit of work.

    commit=True: op runs under run_with_retry and the session is committed
    on success; nothing op wrote survives a failure.
    commit=False: the caller owns the transaction (e.g. an order transition
    calling the stock ledger), so op runs as-is and only flushes.
    """
    if not commit:
        result = op()
        db.session.flush()
        return result

    def _op():
        result = op()
        db.session.commit()
        return result

    return run_with_retry(_op)
