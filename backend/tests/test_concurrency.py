# Overview: Threaded concurrency tests for the stock ledger and refund balance on file-backed SQLite.

"""
Concurrency tests.

Each test runs real threads against file-backed SQLite stores (one file per
bind) so writers genuinely contend for locks.
"""

import os
import tempfile
import threading
import unittest

from storeledger import create_app
from storeledger.core import get_core
from storeledger.errors import AlreadyRefunded, InsufficientStock, RefundAmountExceeded
from storeledger.extensions import db
from storeledger.models import Product, Refund, Sale, Stock, Store


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

        def url(name):
            return f"sqlite:///{os.path.join(self.tmpdir.name, name)}.db"

        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": url("catalog"),
            "SQLALCHEMY_BINDS": {
                "stock": url("stock"),
                "sales": url("sales"),
                "refunds": url("refunds"),
            },
            "STORAGE_TIMEOUT_SECONDS": 30,
            "COMPENSATION_BACKOFF_SECONDS": 0,
            "LOG_LEVEL": "WARNING",
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            store = Store(name="Concurrency Store", code="CONC")
            product = Product(sku="CONCUR-1", name="Concurrent Product", price_cents=1000)
            db.session.add_all([store, product])
            db.session.commit()
            self.store_id = store.id
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            for engine in db.engines.values():
                engine.dispose()
        self.tmpdir.cleanup()

    def _set_stock(self, quantity):
        with self.app.app_context():
            get_core().ledger.adjust(self.store_id, self.product_id, quantity, "set")

    def _run_threads(self, count, target):
        barrier = threading.Barrier(count)
        results = []
        lock = threading.Lock()

        def worker(index):
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome = target(index)
                except Exception as exc:
                    outcome = exc
                finally:
                    db.session.remove()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _sell_one(self, index):
        sale = get_core().sales.create_sale(
            user_id=100 + index,
            store_id=self.store_id,
            items=[{"product_id": self.product_id, "quantity": 1, "unit_price_cents": 1000}],
        )
        return sale.id

    def _stock(self):
        with self.app.app_context():
            return db.session.query(Stock.quantity).filter_by(
                store_id=self.store_id, product_id=self.product_id
            ).scalar()

    def test_two_sales_for_last_unit(self):
        self._set_stock(1)

        results = self._run_threads(2, self._sell_one)

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        self.assertEqual(len(successes), 1, results)
        self.assertEqual(len(failures), 1, results)
        self.assertEqual(self._stock(), 0)
        with self.app.app_context():
            self.assertEqual(db.session.query(Sale).count(), 1)

    def test_many_sales_never_oversell(self):
        self._set_stock(5)

        results = self._run_threads(10, self._sell_one)

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        self.assertEqual(len(successes), 5, results)
        self.assertEqual(len(failures), 5, results)
        self.assertEqual(self._stock(), 0)

    def test_concurrent_full_refunds_refund_once(self):
        self._set_stock(3)
        with self.app.app_context():
            sale = get_core().sales.create_sale(
                user_id=7,
                store_id=self.store_id,
                items=[{"product_id": self.product_id, "quantity": 3, "unit_price_cents": 1000}],
            )
            sale_id = sale.id

        def refund(index):
            return get_core().refunds.create_refund(
                sale_id, user_id=7, reason=f"Attempt {index}"
            ).refund.id

        results = self._run_threads(3, refund)

        successes = [r for r in results if isinstance(r, int)]
        rejected = [r for r in results if isinstance(r, (AlreadyRefunded, RefundAmountExceeded))]
        self.assertEqual(len(successes), 1, results)
        self.assertEqual(len(rejected), 2, results)
        with self.app.app_context():
            total = sum(r.total_cents for r in db.session.query(Refund).filter_by(sale_id=sale_id))
            self.assertEqual(total, 3000)
        self.assertEqual(self._stock(), 3)


if __name__ == "__main__":
    unittest.main()
