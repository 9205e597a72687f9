# Overview: Flask CLI command groups for inspection and maintenance of stock, queue, groups and orders.

# backend/boutique/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py.
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Batches:
# - python -m flask batches list
# - python -m flask batches show batch_1
# - python -m flask batches load products.json [--capacity 250] [--prefix batch_]
#   Load a JSON list of products, split into batches of at most --capacity.
#
# Checkout queue:
# - python -m flask queue drain [--limit 100]
# - python -m flask queue stats
# - python -m flask queue retry 42
# - python -m flask queue recover
#   Resolve items stuck in processing after a worker crash.
#
# Payment groups:
# - python -m flask groups expire [--now 2026-10-20T09:00:00Z]
# - python -m flask groups match 150047 [--apply]
#
# Orders:
# - python -m flask orders check-expiry [--user-id u-42] [--now 2026-10-20T09:00:00Z]
# - python -m flask orders watch-expiry [--interval 30] [--max-polls 10]

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import batch_store, payment_groups, payment_reconciliation
from .services.checkout_queue import QueueError, get_checkout_queue
from .services.expiry_monitor import OrderExpiryMonitor
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System repair commands."""


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
# BATCHES
# =============================================================================

@click.group('batches')
def batches_group():
    """Product batch inspection and loading."""


@batches_group.command('list')
@with_appcontext
def list_batches_cli():
    """List batches with product counts and versions."""
    batches = batch_store.list_batches()
    if not batches:
        click.echo("No batches found.")
        return

    click.echo(f"{'ID':<20} {'Products':<10} {'Version':<8} Updated")
    click.echo("-" * 60)
    for batch in batches:
        info = batch.to_dict(include_products=False)
        click.echo(f"{batch.id:<20} {info['product_count']:<10} {batch.version_id:<8} {info['updated_at']}")


@batches_group.command('show')
@click.argument('batch_id')
@with_appcontext
def show_batch_cli(batch_id):
    """Show stock of every product in a batch."""
    try:
        snapshot = batch_store.read_batch(batch_id)
    except batch_store.BatchNotFoundError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"Batch {snapshot.batch_id} (version {snapshot.version_id})")
    for product in snapshot.products:
        name = product.extra.get("name", "")
        click.echo(f"  {product.id:<20} stock={product.stock:<6} {name}")
        if product.has_variants:
            for size, colors in sorted(product.variants.cells.items()):
                cells = ", ".join(f"{color}={units}" for color, units in sorted(colors.items()))
                click.echo(f"      {size}: {cells}")


@batches_group.command('load')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--capacity', type=int, default=None, help='Products per batch (default BATCH_SOFT_CAPACITY)')
@click.option('--prefix', default='batch_', help='Batch id prefix')
@with_appcontext
def load_batches_cli(path, capacity, prefix):
    """Load a JSON list of products into new batches."""
    with open(path, encoding="utf-8") as fh:
        products = json.load(fh)
    if not isinstance(products, list):
        click.echo("FAIL Expected a JSON list of products")
        return

    start = len(batch_store.list_batches()) + 1
    chunks = batch_store.plan_batches(products, capacity)
    for offset, chunk in enumerate(chunks):
        batch_id = f"{prefix}{start + offset}"
        try:
            batch_store.create_batch(batch_id, chunk)
        except (ValueError, TypeError) as e:
            click.echo(f"FAIL {batch_id}: {e}")
            return
        click.echo(f"PASS Created {batch_id} with {len(chunk)} products")


# =============================================================================
# CHECKOUT QUEUE
# =============================================================================

@click.group('queue')
def queue_group():
    """Checkout queue processing."""


@queue_group.command('drain')
@click.option('--limit', type=int, default=None, help='Process at most this many items')
@with_appcontext
def drain_queue_cli(limit):
    """Process pending checkout items once."""
    report = get_checkout_queue().drain(limit=limit)
    if not report.started:
        click.echo("WARN A drain pass is already running")
        return

    click.echo(f"PASS Processed {report.processed} items: {len(report.completed)} completed, {len(report.failed)} failed")
    for item_id, error in report.failed.items():
        click.echo(f"   item {item_id}: {error}")
    for item_id, error in report.errors.items():
        click.echo(f"FAIL item {item_id} not processed: {error}")


@queue_group.command('stats')
@with_appcontext
def queue_stats_cli():
    """Item counts per status."""
    for status, count in get_checkout_queue().stats().items():
        click.echo(f"{status:<12} {count}")


@queue_group.command('retry')
@click.argument('item_id', type=int)
@with_appcontext
def retry_item_cli(item_id):
    """Move a failed item back to pending."""
    try:
        item = get_checkout_queue().retry_item(item_id)
    except QueueError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Item {item.id} re-queued (retry_count={item.retry_count})")


@queue_group.command('recover')
@with_appcontext
def recover_queue_cli():
    """Resolve items stuck in processing."""
    resolved = get_checkout_queue().recover_stale_items()
    if not resolved:
        click.echo("No stale items.")
        return
    for item_id, status in resolved.items():
        click.echo(f"PASS item {item_id} -> {status}")


# =============================================================================
# PAYMENT GROUPS
# =============================================================================

@click.group('groups')
def groups_group():
    """Payment group maintenance."""


@groups_group.command('expire')
@click.option('--now', 'now_iso', default=None, help='Evaluate deadlines at this ISO-8601 time (UTC)')
@with_appcontext
def expire_groups_cli(now_iso):
    """Expire open groups past their deadline."""
    try:
        now = parse_iso_datetime(now_iso)
    except ValueError:
        click.echo(f"FAIL Invalid --now value: {now_iso}")
        return
    expired = payment_reconciliation.expire_and_release(now=now)
    click.echo(f"PASS Expired {len(expired)} payment groups")
    for group_id in expired:
        click.echo(f"   {group_id}")


@groups_group.command('match')
@click.argument('amount', type=int)
@click.option('--apply', 'apply_payment', is_flag=True, help='Mark the matched group and its orders paid')
@click.option('--sender', default=None, help='Sender name on the transfer, checked against the group owner')
@with_appcontext
def match_amount_cli(amount, apply_payment, sender):
    """Find the pending auto-verified group for a transfer amount."""
    if apply_payment:
        result = payment_reconciliation.apply_transfer(amount, sender_name=sender)
        if result is None:
            click.echo(f"FAIL No pending payment group for {amount}")
            return
        if not result.settled:
            click.echo(f"WARN Group {result.group.id} left for review (confidence {result.confidence}): {result.reason}")
            return
        click.echo(f"PASS Group {result.group.id} paid; orders: {', '.join(result.paid_order_ids) or '-'}")
        if result.skipped_order_ids:
            click.echo(f"WARN Not payable: {', '.join(result.skipped_order_ids)}")
        return

    group = payment_groups.match_by_amount(amount)
    if group is None:
        click.echo(f"FAIL No pending payment group for {amount}")
        return
    click.echo(f"PASS {group.id} user={group.user_id} orders={', '.join(group.order_ids)}")


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order expiry."""


def _echo_expiry(report):
    click.echo(
        f"Checked {report.checked}: {len(report.cancelled)} cancelled, {len(report.warned)} warned"
    )
    for order_id in report.cancelled:
        click.echo(f"   cancelled {order_id}")
    for order_id in report.warned:
        click.echo(f"   warned {order_id}")


@orders_group.command('check-expiry')
@click.option('--user-id', default=None, help='Only this user\'s orders')
@click.option('--now', 'now_iso', default=None, help='Evaluate deadlines at this ISO-8601 time (UTC)')
@with_appcontext
def check_expiry_cli(user_id, now_iso):
    """Cancel overdue unpaid orders and warn about ones close to their deadline."""
    try:
        now = parse_iso_datetime(now_iso)
    except ValueError:
        click.echo(f"FAIL Invalid --now value: {now_iso}")
        return
    _echo_expiry(OrderExpiryMonitor(user_id=user_id).check_once(now=now))


@orders_group.command('watch-expiry')
@click.option('--interval', type=float, default=None, help='Seconds between polls (default ORDER_EXPIRY_POLL_SECONDS)')
@click.option('--max-polls', type=int, default=None, help='Stop after this many polls')
@with_appcontext
def watch_expiry_cli(interval, max_polls):
    """Poll for expiring orders until interrupted."""
    monitor = OrderExpiryMonitor(notifier=lambda order, remaining: click.echo(
        f"WARN order {order.id} expires in {int(remaining.total_seconds() // 60)} minutes"
    ))
    try:
        polls = monitor.run(interval_seconds=interval, max_polls=max_polls)
    except KeyboardInterrupt:
        click.echo("Stopped.")
        return
    click.echo(f"PASS Finished after {polls} polls")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(batches_group)
    app.cli.add_command(queue_group)
    app.cli.add_command(groups_group)
    app.cli.add_command(orders_group)
