# Overview: Pytest coverage for the flask CLI command groups.

from freshcut.extensions import db
from freshcut.models import FinanceAccount, StockItem
from freshcut.services import order_service


class TestSystemCommands:
    def test_init_creates_default_accounts(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["system", "init"])

        assert result.exit_code == 0, result.output
        assert "PASS Account: Cash (cash, AED)" in result.output
        assert db_session.query(FinanceAccount).count() == 4

    def test_reset_requires_confirmation(self, app, db_session, make_product):
        make_product("5")
        result = app.test_cli_runner().invoke(args=["system", "reset-db"], input="n\n")
        assert result.exit_code != 0
        assert db_session.query(StockItem).count() == 1


class TestStockCommands:
    def test_audit_passes_on_clean_ledger(self, app, db_session, make_product):
        make_product("5")
        result = app.test_cli_runner().invoke(args=["stock", "audit"])
        assert result.exit_code == 0, result.output
        assert "1 stock item(s) audited, 0 with problems" in result.output

    def test_audit_missing_stock_row(self, app, db_session, make_product):
        product = make_product("5")
        db_session.execute(
            StockItem.__table__.delete().where(StockItem.product_id == product.id)
        )
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["stock", "audit", "--product-id", str(product.id)])

        assert result.exit_code != 0
        assert "not found" in result.output

    def test_valuation_rejects_bad_date(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["stock", "valuation", "--as-of", "last tuesday"])
        assert result.exit_code == 2

    def test_valuation_prints_total(self, app, db_session, make_product):
        make_product("4", cost_price="2.50", sku="RIBEYE")
        result = app.test_cli_runner().invoke(args=["stock", "valuation", "--as-of", "2999-12-31"])
        assert result.exit_code == 0, result.output
        assert "RIBEYE" in result.output
        assert "10.00" in result.output

    def test_low_stock_listing(self, app, db_session, make_product):
        make_product("2", sku="LAMB-CHOP")
        result = app.test_cli_runner().invoke(args=["stock", "low"])
        assert "WARN LAMB-CHOP" in result.output
        assert "REORDER 20" in result.output


class TestOrderCommands:
    def test_verify_by_number(self, app, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        order_service.set_status(order.id, "delivered")

        result = app.test_cli_runner().invoke(args=["orders", "verify", order.order_number])

        assert result.exit_code == 0, result.output
        assert "PASS ORD-000001 (delivered) is consistent" in result.output

    def test_verify_unknown_order(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["orders", "verify", "ORD-999999"])
        assert result.exit_code == 1
        assert "Order ORD-999999 not found" in result.output

    def test_verify_reports_problems(self, app, db_session, make_product, place_order):
        product = make_product("10")
        order = place_order([(product.id, "1")])
        db_session.execute(
            db.metadata.tables["orders"].update().values(status="delivered")
        )
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["orders", "verify", str(order.id)])

        assert result.exit_code == 1
        assert "FAIL" in result.output
