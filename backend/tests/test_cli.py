"""
CLI command tests (flask system / refunds / stock groups).
"""

from storeledger.extensions import db
from storeledger.models import Product, Stock, StockMovement, Store


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "seed-demo"])
    assert first.exit_code == 0, first.output
    assert "+ store MAIN" in first.output

    second = runner.invoke(args=["system", "seed-demo"])
    assert second.exit_code == 0, second.output
    assert "+ store" not in second.output

    assert db.session.query(Store).count() == 2
    assert db.session.query(Product).count() == 3
    assert {row.quantity for row in db.session.query(Stock).all()} == {25}
    assert db.session.query(StockMovement).count() == 6


def test_low_stock_lists_items(app, seeded):
    result = app.test_cli_runner().invoke(args=["stock", "low", "--store-id", str(seeded.store_a)])
    assert result.exit_code == 0, result.output
    assert "2 item(s) below 10." in result.output


def test_low_stock_nothing_below_threshold(app, seeded):
    result = app.test_cli_runner().invoke(args=["stock", "low", "--threshold", "1"])
    assert result.exit_code == 0, result.output
    assert "No items below 1." in result.output


def test_replay_with_empty_queue(app, db_session):
    result = app.test_cli_runner().invoke(args=["refunds", "replay-restorations"])
    assert result.exit_code == 0, result.output
    assert "Attempted 0" in result.output


def test_resync_missing_sale(app, db_session):
    result = app.test_cli_runner().invoke(args=["refunds", "resync-status", "--sale-id", "999"])
    assert result.exit_code != 0
