"""
Sale orchestrator tests.

Verifies:
- Selling q units reduces stock by exactly q and records an active sale
- A failing line restores every line already decremented
- A failed sale write restores stock and surfaces InternalError
- Compensation that cannot complete escalates as CompensationFailed
- Status only moves forward and is audited
"""

import pytest

from storeledger.errors import (
    AmountMismatch,
    CompensationFailed,
    InsufficientStock,
    InternalError,
    SaleNotFound,
    StockOutcomeUnknown,
    ValidationError,
)
from storeledger.extensions import db
from storeledger.models import Sale, SaleLine, SaleStatusEvent, Stock, StockMovement
from storeledger.services.sale_status import (
    SALE_STATUS_ACTIVE,
    SALE_STATUS_PARTIALLY_REFUNDED,
    SALE_STATUS_REFUNDED,
)
from storeledger.services.stock_ledger import MOVEMENT_RESTORE, MOVEMENT_SALE


def quantity_of(store_id, product_id):
    return db.session.query(Stock.quantity).filter_by(store_id=store_id, product_id=product_id).scalar()


# =============================================================================
# CREATE SALE
# =============================================================================


class TestCreateSale:
    def test_sell_four_of_ten(self, core, seeded):
        sale = core.sales.create_sale(
            user_id=7,
            store_id=seeded.store_a,
            items=[{"product_id": seeded.coffee, "quantity": 4, "unit_price_cents": 2500}],
        )

        assert quantity_of(seeded.store_a, seeded.coffee) == 6
        assert sale.status == SALE_STATUS_ACTIVE
        assert sale.total_cents == 10000
        assert [(l.product_id, l.quantity, l.line_total_cents) for l in sale.lines] == [(seeded.coffee, 4, 10000)]

    def test_total_is_sum_of_lines(self, core, seeded):
        sale = core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.coffee, "quantity": 2, "unit_price_cents": 2500},
            {"product_id": seeded.mug, "quantity": 3, "unit_price_cents": 1499},
        ])
        assert sale.total_cents == sum(l.quantity * l.unit_price_cents for l in sale.lines) == 9497

    def test_expected_total_within_tolerance(self, core, seeded):
        sale = core.sales.create_sale(
            7, seeded.store_a,
            [{"product_id": seeded.mug, "quantity": 1, "unit_price_cents": 1500}],
            expected_total_cents=1501,
        )
        assert sale.total_cents == 1500

    def test_expected_total_mismatch_writes_nothing(self, core, seeded):
        with pytest.raises(AmountMismatch):
            core.sales.create_sale(
                7, seeded.store_a,
                [{"product_id": seeded.mug, "quantity": 1, "unit_price_cents": 1500}],
                expected_total_cents=1400,
            )
        assert quantity_of(seeded.store_a, seeded.mug) == 5
        assert db.session.query(Sale).count() == 0

    @pytest.mark.parametrize("items", [
        [],
        None,
        [{"product_id": 1, "quantity": 1}],
        [{"product_id": 1, "quantity": 0, "unit_price_cents": 100}],
        [{"product_id": 1, "quantity": 1, "unit_price_cents": 0}],
        [{"product_id": 1, "quantity": 1.5, "unit_price_cents": 100}],
        [{"product_id": 1, "quantity": "1e3", "unit_price_cents": 100}],
    ])
    def test_malformed_cart_rejected(self, core, seeded, items):
        with pytest.raises(ValidationError):
            core.sales.create_sale(7, seeded.store_a, items)
        assert db.session.query(StockMovement).filter_by(movement_type=MOVEMENT_SALE).count() == 0

    def test_inactive_product_rejected_before_any_decrement(self, core, seeded):
        with pytest.raises(ValidationError):
            core.sales.create_sale(7, seeded.store_a, [
                {"product_id": seeded.coffee, "quantity": 1, "unit_price_cents": 2500},
                {"product_id": seeded.retired, "quantity": 1, "unit_price_cents": 100},
            ])
        assert quantity_of(seeded.store_a, seeded.coffee) == 10


# =============================================================================
# COMPENSATION
# =============================================================================


class TestSaleCompensation:
    def test_insufficient_line_restores_earlier_lines(self, core, seeded):
        with pytest.raises(InsufficientStock) as exc_info:
            core.sales.create_sale(7, seeded.store_a, [
                {"product_id": seeded.coffee, "quantity": 2, "unit_price_cents": 2500},
                {"product_id": seeded.mug, "quantity": 1, "unit_price_cents": 1500},
                {"product_id": seeded.kettle, "quantity": 5, "unit_price_cents": 6000},
            ])

        assert exc_info.value.product_id == seeded.kettle
        assert exc_info.value.shortage == 4
        assert quantity_of(seeded.store_a, seeded.coffee) == 10
        assert quantity_of(seeded.store_a, seeded.mug) == 5
        assert quantity_of(seeded.store_a, seeded.kettle) == 1
        assert db.session.query(Sale).count() == 0

        restores = db.session.query(StockMovement).filter_by(movement_type=MOVEMENT_RESTORE).all()
        assert sorted(m.product_id for m in restores) == sorted([seeded.coffee, seeded.mug])
        assert all(m.reference_id.endswith(":compensate") for m in restores)

    def test_persist_failure_restores_stock(self, core, seeded, monkeypatch):
        def failing_persist(*args, **kwargs):
            raise InternalError("Failed to persist sale")

        monkeypatch.setattr(core.sales, "_persist_sale", failing_persist)

        with pytest.raises(InternalError):
            core.sales.create_sale(7, seeded.store_a, [
                {"product_id": seeded.coffee, "quantity": 3, "unit_price_cents": 2500},
            ])
        assert quantity_of(seeded.store_a, seeded.coffee) == 10

    def test_failed_compensation_escalates(self, core, seeded, monkeypatch):
        def failing_persist(*args, **kwargs):
            raise InternalError("Failed to persist sale")

        def failing_restore(*args, **kwargs):
            raise StockOutcomeUnknown("stock store unavailable")

        monkeypatch.setattr(core.sales, "_persist_sale", failing_persist)
        monkeypatch.setattr(core.ledger, "restore", failing_restore)

        with pytest.raises(CompensationFailed) as exc_info:
            core.sales.create_sale(7, seeded.store_a, [
                {"product_id": seeded.coffee, "quantity": 3, "unit_price_cents": 2500},
            ])
        assert isinstance(exc_info.value, InternalError)
        assert exc_info.value.status_code == 500

    def test_unknown_outcome_line_is_not_compensated(self, core, seeded, monkeypatch):
        real_decrement = core.ledger.decrement
        restored = []

        def decrement(store_id, product_id, quantity, **kwargs):
            if product_id == seeded.mug:
                raise StockOutcomeUnknown("timeout")
            return real_decrement(store_id, product_id, quantity, **kwargs)

        real_restore = core.ledger.restore

        def restore(store_id, product_id, quantity, reference_id=None, **kwargs):
            restored.append(product_id)
            return real_restore(store_id, product_id, quantity, reference_id, **kwargs)

        monkeypatch.setattr(core.ledger, "decrement", decrement)
        monkeypatch.setattr(core.ledger, "restore", restore)

        with pytest.raises(StockOutcomeUnknown):
            core.sales.create_sale(7, seeded.store_a, [
                {"product_id": seeded.coffee, "quantity": 1, "unit_price_cents": 2500},
                {"product_id": seeded.mug, "quantity": 1, "unit_price_cents": 1500},
            ])
        assert restored == [seeded.coffee]
        assert quantity_of(seeded.store_a, seeded.coffee) == 10


# =============================================================================
# STATUS
# =============================================================================


class TestApplyStatus:
    def _sale(self, core, seeded):
        return core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.coffee, "quantity": 1, "unit_price_cents": 2500},
        ])

    def test_moves_forward_and_records_event(self, core, seeded):
        sale = self._sale(core, seeded)
        core.sales.apply_status(sale.id, SALE_STATUS_PARTIALLY_REFUNDED, refunded_cents=1000)
        core.sales.apply_status(sale.id, SALE_STATUS_REFUNDED, refunded_cents=2500)

        events = db.session.query(SaleStatusEvent).filter_by(sale_id=sale.id).order_by(SaleStatusEvent.id).all()
        assert [(e.from_status, e.to_status, e.refunded_cents) for e in events] == [
            (SALE_STATUS_ACTIVE, SALE_STATUS_PARTIALLY_REFUNDED, 1000),
            (SALE_STATUS_PARTIALLY_REFUNDED, SALE_STATUS_REFUNDED, 2500),
        ]

    @pytest.mark.parametrize("status,refunded_cents", [
        (SALE_STATUS_REFUNDED, 0),
        (SALE_STATUS_REFUNDED, 2499),
        (SALE_STATUS_PARTIALLY_REFUNDED, 0),
        (SALE_STATUS_PARTIALLY_REFUNDED, 2500),
        (SALE_STATUS_ACTIVE, 1),
    ])
    def test_status_must_match_refunded_amount(self, core, seeded, status, refunded_cents):
        sale = self._sale(core, seeded)

        with pytest.raises(ValidationError) as exc_info:
            core.sales.apply_status(sale.id, status, refunded_cents=refunded_cents)

        assert exc_info.value.details["requested"] == status
        db.session.expire_all()
        assert db.session.get(Sale, sale.id).status == SALE_STATUS_ACTIVE
        assert db.session.query(SaleStatusEvent).count() == 0

    def test_forced_status_cannot_block_real_refunds(self, core, seeded):
        sale = self._sale(core, seeded)

        with pytest.raises(ValidationError):
            core.sales.apply_status(sale.id, SALE_STATUS_REFUNDED, refunded_cents=0)

        result = core.refunds.create_refund(sale.id, user_id=7, reason="Damaged")
        assert result.sale_status == SALE_STATUS_REFUNDED

    def test_never_moves_backward(self, core, seeded):
        sale = self._sale(core, seeded)
        core.sales.apply_status(sale.id, SALE_STATUS_REFUNDED, refunded_cents=2500)

        with pytest.raises(ValidationError):
            core.sales.apply_status(sale.id, SALE_STATUS_ACTIVE, refunded_cents=0)
        assert db.session.get(Sale, sale.id).status == SALE_STATUS_REFUNDED

    def test_same_status_is_noop(self, core, seeded):
        sale = self._sale(core, seeded)
        core.sales.apply_status(sale.id, SALE_STATUS_ACTIVE, refunded_cents=0)
        assert db.session.query(SaleStatusEvent).count() == 0

    def test_unknown_status_rejected(self, core, seeded):
        sale = self._sale(core, seeded)
        with pytest.raises(ValidationError):
            core.sales.apply_status(sale.id, "void", refunded_cents=0)

    def test_missing_sale(self, core, seeded):
        with pytest.raises(SaleNotFound):
            core.sales.apply_status(4242, SALE_STATUS_REFUNDED, refunded_cents=0)



# =============================================================================
# READS
# =============================================================================


class TestSaleReads:
    def test_get_sale_includes_lines_and_history(self, core, seeded):
        sale = core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.coffee, "quantity": 2, "unit_price_cents": 2500},
        ])
        data = core.sales.get_sale(sale.id)
        assert data["status"] == SALE_STATUS_ACTIVE
        assert len(data["lines"]) == 1
        assert data["status_history"] == []

    def test_get_sale_cache_invalidated_by_status_change(self, core, seeded):
        sale = core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.coffee, "quantity": 2, "unit_price_cents": 2500},
        ])
        assert core.sales.get_sale(sale.id)["status"] == SALE_STATUS_ACTIVE
        core.sales.apply_status(sale.id, SALE_STATUS_PARTIALLY_REFUNDED, refunded_cents=1000)
        assert core.sales.get_sale(sale.id)["status"] == SALE_STATUS_PARTIALLY_REFUNDED

    def test_user_history_sees_new_sale(self, core, seeded):
        assert core.sales.list_user_sales(7) == []
        core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.mug, "quantity": 1, "unit_price_cents": 1500},
        ])
        assert len(core.sales.list_user_sales(7)) == 1
        assert len(core.sales.list_store_sales(seeded.store_a)) == 1
        assert core.sales.list_store_sales(seeded.store_b) == []

    def test_missing_sale(self, core, seeded):
        with pytest.raises(SaleNotFound):
            core.sales.get_sale(31337)

    def test_lines_are_persisted(self, core, seeded):
        sale = core.sales.create_sale(7, seeded.store_a, [
            {"product_id": seeded.coffee, "quantity": 1, "unit_price_cents": 2500},
            {"product_id": seeded.mug, "quantity": 2, "unit_price_cents": 1500},
        ])
        assert db.session.query(SaleLine).filter_by(sale_id=sale.id).count() == 2
