# Overview: Pytest coverage for the retry and unit-of-work helpers.

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from freshcut.errors import PersistenceError, ValidationError
from freshcut.models import Product
from freshcut.services import concurrency


def _locked():
    return OperationalError("UPDATE stock", {}, Exception("database is locked"))


class TestRunWithRetry:
    def test_gives_up_after_configured_attempts(self, db_session):
        calls = []

        def always_locked():
            calls.append(1)
            raise _locked()

        with pytest.raises(PersistenceError) as exc:
            concurrency.run_with_retry(always_locked, attempts=4, backoff_base=0)

        assert len(calls) == 4
        assert isinstance(exc.value.__cause__, OperationalError)
        assert "after 4 attempts" in str(exc.value)

    def test_default_attempts_come_from_config(self, app, db_session):
        calls = []

        def always_locked():
            calls.append(1)
            raise _locked()

        with pytest.raises(PersistenceError):
            concurrency.run_with_retry(always_locked, backoff_base=0)

        assert len(calls) == app.config.get("LEDGER_RETRY_ATTEMPTS", 3)

    def test_recovers_on_a_later_attempt(self, db_session):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise _locked()
            return "ok"

        assert concurrency.run_with_retry(flaky, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    def test_exhausted_retries_roll_back(self, db_session):
        def write_then_fail():
            db_session.add(Product(sku="ROLLBACK-1", name="Brisket", unit="kg", price=Decimal("1.00")))
            db_session.flush()
            raise _locked()

        with pytest.raises(PersistenceError):
            concurrency.run_with_retry(write_then_fail, attempts=2, backoff_base=0)

        assert db_session.query(Product).filter_by(sku="ROLLBACK-1").count() == 0

    def test_domain_errors_are_not_retried(self, db_session):
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationError("bad line")

        with pytest.raises(ValidationError):
            concurrency.run_with_retry(invalid, attempts=5, backoff_base=0)

        assert len(calls) == 1
