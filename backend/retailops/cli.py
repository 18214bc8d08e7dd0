# Overview: Flask CLI command groups for bootstrap, stock, orders and inventory transactions.

# backend/retailops/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to retailops (PowerShell: $env:FLASK_APP="retailops").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock:
# - python -m flask stock check 3:2 7:1
#   Read-only availability check for variant:quantity pairs.
# - python -m flask stock adjust 3 damage 2 --reason "Water damage"
#   Manual correction (inward, outward, damage, adjustment).
# - python -m flask stock movements 3 --limit 20
#   Recent stock movements for a variant.
#
# Orders:
# - python -m flask orders transition 12 assigned --set assigned_rider_id=4
#   Move an order to a new status (prerequisite fields via --set).
# - python -m flask orders related 12
#   Parent/child exchange summary for an order.
#
# Inventory transactions (maker-checker):
# - python -m flask inventory pending
#   List transactions waiting for approval.
# - python -m flask inventory approve 5 --by manager
#   Approve a pending transaction and apply its stock effect.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import exchange_service, order_service, status_display, stock_service, transaction_service
from .services.stock_service import InsufficientStockError
from .validation import ConflictError, NotFoundError, ValidationError


def _parse_pairs(pairs) -> list[dict]:
    items = []
    for pair in pairs:
        variant_id, _, quantity = pair.partition(":")
        if not quantity:
            raise click.BadParameter(f"'{pair}' must look like VARIANT_ID:QTY")
        items.append({"variant_id": variant_id, "quantity": quantity})
    return items


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# =============================================================================
# system
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready")


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
    click.echo("PASS Database reset complete")


# =============================================================================
# stock
# =============================================================================

@click.group('stock')
def stock_group():
    """Variant stock inspection and manual correction."""


@stock_group.command('check')
@click.argument('pairs', nargs=-1, required=True)
@with_appcontext
def stock_check(pairs):
    """Check availability for VARIANT_ID:QTY pairs (read-only)."""
    try:
        result = stock_service.check_stock(_parse_pairs(pairs))
    except ValidationError as e:
        raise click.ClickException(str(e))
    _echo_json(result)
    if not result["is_available"]:
        raise click.exceptions.Exit(1)


@stock_group.command('adjust')
@click.argument('variant_id', type=int)
@click.argument('movement_type', type=click.Choice(sorted(stock_service.ADJUSTMENT_DIRECTIONS)))
@click.argument('quantity', type=int)
@click.option('--reason', default=None, help='Why the stock changed')
@with_appcontext
def stock_adjust(variant_id, movement_type, quantity, reason):
    """Apply a manual stock correction."""
    try:
        result = stock_service.adjust_stock(variant_id, movement_type, quantity, reason)
    except (ValidationError, NotFoundError, InsufficientStockError) as e:
        raise click.ClickException(str(e))
    click.echo(
        f"PASS {result['sku']}: stock {result['stock_before']} -> {result['stock_after']} "
        f"(available {result['available_stock']})"
    )


@stock_group.command('movements')
@click.argument('variant_id', type=int)
@click.option('--limit', default=20, show_default=True, type=int)
@with_appcontext
def stock_movements(variant_id, limit):
    """Show recent stock movements for a variant."""
    movements = stock_service.get_stock_movements(variant_id, limit=limit)
    if not movements:
        click.echo("No movements found.")
        return
    for m in movements:
        click.echo(
            f"{m.id:>6}  {m.movement_type:<16} {m.quantity:>6}  "
            f"stock {m.stock_before}->{m.stock_after}  reserved {m.reserved_before}->{m.reserved_after}  "
            f"order={m.order_id or '-'}  {m.reason or ''}"
        )


# =============================================================================
# orders
# =============================================================================

@click.group('orders')
def orders_group():
    """Order status transitions and exchange inspection."""


@orders_group.command('transition')
@click.argument('order_id', type=int)
@click.argument('new_status')
@click.option('--set', 'fields', multiple=True, help='FIELD=VALUE written with the transition')
@click.option('--actor', default=None, help='Name recorded on the timeline')
@with_appcontext
def orders_transition(order_id, new_status, fields, actor):
    """Move ORDER_ID to NEW_STATUS."""
    update_data = {}
    for item in fields:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"'{item}' must look like FIELD=VALUE")
        update_data[key.strip()] = value
    try:
        result = order_service.transition_order_status(order_id, new_status, update_data, actor_name=actor)
    except (ValidationError, NotFoundError, ConflictError, InsufficientStockError) as e:
        raise click.ClickException(str(e))
    label = status_display.get_status_display(result.new_status)["label"]
    click.echo(
        f"PASS {result.order.order_number}: {result.old_status} -> {result.new_status} "
        f"[{label}] (stock: {result.stock_action})"
    )
    for outcome in result.hook_outcomes:
        flag = "PASS" if outcome.success else "WARN"
        click.echo(f"  {flag} hook {outcome.hook}{'' if outcome.success else ': ' + str(outcome.error)}")
    buttons = status_display.get_action_buttons(result.new_status, result.order.fulfillment_type)
    if not buttons:
        click.echo("  next: (terminal)")
    for button in buttons:
        marker = " *" if button["requires_modal"] else ""
        click.echo(f"  next: {button['status']:<20} {button['label']}{marker}")


@orders_group.command('related')
@click.argument('order_id', type=int)
@with_appcontext
def orders_related(order_id):
    """Show parent/child orders and the exchange summary."""
    try:
        _echo_json(exchange_service.get_related_orders(order_id))
    except NotFoundError as e:
        raise click.ClickException(str(e))


# =============================================================================
# inventory
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory transactions (purchase, returns, damage, adjustments)."""


@inventory_group.command('pending')
@click.option('--type', 'transaction_type', default=None,
              type=click.Choice(sorted(transaction_service.TRANSACTION_TYPES)))
@with_appcontext
def inventory_pending(transaction_type):
    """List transactions waiting for a checker."""
    pending = transaction_service.list_pending_approvals(transaction_type=transaction_type)
    if not pending:
        click.echo("No pending transactions.")
        return
    for tx in pending:
        click.echo(
            f"{tx.id:>6}  {tx.invoice_no:<12} {tx.transaction_type:<16} qty={tx.total_quantity:<6} "
            f"by={tx.performed_by or '-'}"
        )


@inventory_group.command('approve')
@click.argument('transaction_id', type=int)
@click.option('--by', 'approved_by', required=True, help='Checker name')
@with_appcontext
def inventory_approve(transaction_id, approved_by):
    """Approve a pending transaction and apply its stock effect."""
    try:
        tx = transaction_service.approve_transaction(transaction_id, approved_by=approved_by)
    except (ValidationError, NotFoundError, InsufficientStockError, transaction_service.TransactionError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Approved {tx.invoice_no} ({tx.transaction_type})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(inventory_group)
