# Overview: Flask CLI command groups for bootstrap, stock inspection, and reconciliation.

# backend/freshcut/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to freshcut (PowerShell: $env:FLASK_APP="freshcut").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create tables (if missing) and the default finance accounts.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock inspection:
# - python -m flask stock audit [--product-id 1]
#   Replay movements and compare with stored balances. Exit code 1 on drift.
# - python -m flask stock valuation [--as-of 2026-03-31]
#   Weighted-average-cost valuation of on-hand stock.
# - python -m flask stock low
#   Items at/below their low-stock threshold or reorder point.
#
# Reconciliation:
# - python -m flask orders verify ORD-000001
#   Check an order against its stock movements and finance postings.

import click
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .services import audit_service, finance_service, order_service
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Create missing tables and the default finance accounts.

    Safe to re-run.
    """
    click.echo("START Initializing freshcut ledger...")
    db.create_all()
    accounts = finance_service.ensure_default_accounts()
    for account in accounts:
        click.echo(f"PASS Account: {account.name} ({account.type}, {account.currency})")
    click.echo("DONE Ledger initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('audit')
@click.option('--product-id', type=int, help='Audit a single product')
@with_appcontext
def audit_stock(product_id):
    """Replay movements and report drift from stored balances."""
    try:
        audits = [audit_service.verify_stock_item(product_id)] if product_id else audit_service.audit_all_stock()
    except LedgerError as exc:
        raise click.ClickException(exc.message)

    failures = 0
    for audit in audits:
        if audit.ok:
            click.echo(
                f"PASS product {audit.product_id}: quantity={audit.stored_quantity} "
                f"reserved={audit.stored_reserved} ({audit.replay.movement_count} movements)"
            )
            continue
        failures += 1
        click.echo(f"FAIL product {audit.product_id}:")
        for problem in audit.problems:
            click.echo(f"   - {problem}")

    click.echo(f"\n{len(audits)} stock item(s) audited, {failures} with problems")
    if failures:
        raise SystemExit(1)


@stock_group.command('valuation')
@click.option('--as-of', 'as_of', help='ISO date/datetime (inclusive)')
@with_appcontext
def valuation(as_of):
    """Print on-hand stock valuation at weighted average cost."""
    try:
        as_of_dt = parse_iso_datetime(as_of)
    except ValueError:
        raise click.BadParameter(f"not an ISO date: {as_of}", param_hint="--as-of")

    report = audit_service.stock_valuation(as_of_dt)
    click.echo(f"{'SKU':<16} {'Name':<32} {'Qty':>10} {'Unit cost':>10} {'Value':>12}")
    click.echo("-" * 84)
    for row in report["items"]:
        click.echo(
            f"{(row['sku'] or '-'):<16} {(row['name'] or '-')[:32]:<32} "
            f"{row['quantity']:>10} {row['unit_cost']:>10} {row['value']:>12}"
        )
    click.echo("-" * 84)
    click.echo(f"{'TOTAL':<49} {report['total_quantity']:>10} {'':>10} {report['total_value']:>12}")


@stock_group.command('low')
@with_appcontext
def low_stock():
    """List items at/below their low-stock threshold or reorder point."""
    rows = audit_service.low_stock_report()
    if not rows:
        click.echo("PASS No items below threshold")
        return
    for row in rows:
        flags = []
        if row["is_low"]:
            flags.append("LOW")
        if row["needs_reorder"]:
            flags.append(f"REORDER {row['suggested_reorder_quantity']}")
        click.echo(
            f"WARN {row['sku']} {row['name']}: available={row['available_quantity']} "
            f"threshold={row['low_stock_threshold']} reorder_point={row['reorder_point']} [{', '.join(flags)}]"
        )


@click.group('orders')
def orders_group():
    """Order reconciliation commands."""


@orders_group.command('verify')
@click.argument('order_ref')
@with_appcontext
def verify_order(order_ref):
    """Check an order (id or number) against stock movements and finance postings."""
    try:
        order = (
            order_service.get_order(int(order_ref))
            if order_ref.isdigit()
            else order_service.get_order_by_number(order_ref)
        )
        problems = audit_service.verify_order_postings(order.id)
    except LedgerError as exc:
        raise click.ClickException(exc.message)

    if not problems:
        click.echo(f"PASS {order.order_number} ({order.status}) is consistent")
        return
    click.echo(f"FAIL {order.order_number} ({order.status}):")
    for problem in problems:
        click.echo(f"   - {problem}")
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
