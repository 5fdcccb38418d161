# Overview: Flask CLI command groups for bootstrap and repair of the stock/sale/refund core.

# backend/storeledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create every table on every bind (catalog, stock, sales, refunds).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Idempotent demo catalog: two stores, three products, opening stock.
#
# Refund repair:
# - python -m flask refunds replay-restorations --limit 100
#   Retry stock restorations queued by refunds whose restore failed.
# - python -m flask refunds resync-status --sale-id 12
#   Recompute a sale's status from its refunds and apply it.
#
# Stock inspection:
# - python -m flask stock low --store-id 1 --threshold 5
#   List low-stock items (all stores when --store-id is omitted).

import click
from flask.cli import with_appcontext

from .core import get_core
from .errors import CoreError
from .extensions import db
from .models import Product, Store


DEMO_STORES = [
    ("Main Street", "MAIN"),
    ("Harbor Mall", "HARBOR"),
]

DEMO_PRODUCTS = [
    ("SKU-0001", "Espresso Beans 1kg", 2499),
    ("SKU-0002", "Ceramic Mug", 1299),
    ("SKU-0003", "Pour-over Kettle", 5999),
]

DEMO_OPENING_STOCK = 25


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables on every bind."""
    db.create_all()
    click.echo("PASS Tables created on catalog, stock, sales and refunds stores.")


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

    get_core().cache.clear()
    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for demo data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo stores, products and opening stock (idempotent)."""
    core = get_core()

    stores = []
    for name, code in DEMO_STORES:
        store = db.session.query(Store).filter_by(code=code).first()
        if store is None:
            store = Store(name=name, code=code)
            db.session.add(store)
            click.echo(f"  + store {code}")
        stores.append(store)

    products = []
    for sku, name, price_cents in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(sku=sku).first()
        if product is None:
            product = Product(sku=sku, name=name, price_cents=price_cents)
            db.session.add(product)
            click.echo(f"  + product {sku}")
        products.append(product)

    db.session.commit()

    for store in stores:
        for product in products:
            # reference_id makes re-running the seed a no-op for stock
            core.ledger.adjust(
                store.id,
                product.id,
                DEMO_OPENING_STOCK,
                "add",
                reason="Demo opening stock",
                reference_id=f"seed-demo:{store.id}:{product.id}",
            )

    click.echo(
        f"PASS Demo data ready: {len(stores)} stores, {len(products)} products, "
        f"{DEMO_OPENING_STOCK} units each."
    )


@click.group('refunds')
def refunds_group():
    """Refund repair commands."""


@refunds_group.command('replay-restorations')
@click.option('--limit', default=100, show_default=True, type=int, help='Maximum rows to replay')
@with_appcontext
def replay_restorations(limit):
    """Retry queued stock restorations (idempotent by reference id)."""
    result = get_core().refunds.replay_pending_restorations(limit=limit)
    click.echo(
        f"Attempted {result['attempted']}: {result['resolved']} resolved, "
        f"{result['failed']} still failing."
    )
    if result["failed"]:
        raise SystemExit(1)


@refunds_group.command('resync-status')
@click.option('--sale-id', required=True, type=int, help='Sale to resync')
@with_appcontext
def resync_status(sale_id):
    """Recompute a sale's status from its refund history."""
    try:
        result = get_core().refunds.resync_sale_status(sale_id)
    except CoreError as e:
        raise click.ClickException(e.message)
    click.echo(
        f"Sale {result['sale_id']}: status={result['status']} "
        f"refunded_cents={result['refunded_cents']}"
    )


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('low')
@click.option('--store-id', default=None, type=int, help='Limit to one store')
@click.option('--threshold', default=None, type=int, help='Override LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock(store_id, threshold):
    """List items below the low-stock threshold."""
    summary = get_core().ledger.stock_summary(store_id, threshold=threshold)
    items = summary["low_stock_items"]
    if not items:
        click.echo(f"No items below {summary['threshold']}.")
        return

    click.echo(f"{'STORE':>6}  {'PRODUCT':>8}  {'QTY':>5}")
    for item in items:
        click.echo(f"{item['store_id']:>6}  {item['product_id']:>8}  {item['quantity']:>5}")
    click.echo(f"{len(items)} item(s) below {summary['threshold']}.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(refunds_group)
    app.cli.add_command(stock_group)
