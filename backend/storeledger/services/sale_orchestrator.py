"""
Sale Orchestrator: turns a validated cart into a persisted Sale.

WHY: stock and sale records live in different stores and no transaction
spans both. Sale creation is therefore a saga: one stock decrement per
line, then the sale write. If any step fails, every decrement already made
in this attempt is restored before the caller sees the error, so a failed
sale never strands stock and a successful one never oversells.

DESIGN PRINCIPLES:
- Validation and catalog checks happen before the first decrement
- Each decrement carries a per-attempt reference id, each compensation its
  own, so the ledger can recognise a replay of either
- Sale + SaleLines are one local commit on the sales store
- status is derived from refund history. apply_status is the only writer:
  it accepts only the status derived from the refunded amount and never
  moves a sale backward
"""

from __future__ import annotations

import logging
import uuid
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from ..cache import ReadCache, sale_tags
from ..errors import (
    AmountMismatch,
    InsufficientStock,
    InternalError,
    SaleNotFound,
    StockOutcomeUnknown,
    ValidationError,
)
from ..models import Sale, SaleLine, SaleStatusEvent
from ..validation import optional_int, parse_sale_items
from .catalog import CatalogDirectory
from .concurrency import lock_for_update, run_with_retry
from .saga import Saga
from .sale_status import SALE_STATUS_ACTIVE, SALE_STATUSES, is_forward, sale_status_for
from .stock_ledger import StockLedger


class SaleOrchestrator:
    def __init__(
        self,
        db,
        *,
        ledger: StockLedger,
        catalog: CatalogDirectory,
        cache: ReadCache,
        logger: logging.Logger | None = None,
        amount_tolerance_cents: int = 1,
        compensation_attempts: int = 3,
        compensation_backoff: float = 0.1,
    ):
        self.db = db
        self.ledger = ledger
        self.catalog = catalog
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.amount_tolerance_cents = amount_tolerance_cents
        self.compensation_attempts = compensation_attempts
        self.compensation_backoff = compensation_backoff

    # =========================================================================
    # SALE CREATION
    # =========================================================================

    def create_sale(
        self,
        user_id: int,
        store_id: int,
        items,
        *,
        expected_total_cents: int | None = None,
    ) -> Sale:
        """
        Decrement stock for every line, then persist the sale.

        Args:
            user_id: Customer the sale belongs to
            store_id: Store whose stock is sold
            items: [{product_id, quantity, unit_price_cents}, ...]
            expected_total_cents: Optional client-computed total to verify

        Returns:
            The persisted Sale (status active) with its lines

        Raises:
            ValidationError: Malformed cart, unknown store or product
            AmountMismatch: expected_total_cents disagrees with the lines
            InsufficientStock: A line could not be decremented (nothing stays decremented)
            InternalError: Persistence failed (decrements were restored), or
                CompensationFailed when they could not be
        """
        lines = parse_sale_items(items)
        expected_total_cents = optional_int("expected_total_cents", expected_total_cents)

        self.catalog.require_store(store_id)
        self.catalog.require_products(line.product_id for line in lines)

        total_cents = sum(line.subtotal_cents for line in lines)
        if expected_total_cents is not None and abs(expected_total_cents - total_cents) > self.amount_tolerance_cents:
            raise AmountMismatch(
                f"Sale total mismatch: computed {total_cents}, requested {expected_total_cents}",
                details={"computed_cents": total_cents, "requested_cents": expected_total_cents},
            )

        attempt = f"sale-attempt-{uuid.uuid4().hex}"
        saga = Saga(
            attempt,
            logger=self.logger,
            compensation_attempts=self.compensation_attempts,
            backoff_base=self.compensation_backoff,
        )
        for index, line in enumerate(lines):
            reference = f"{attempt}:{index}"
            saga.add_step(
                f"decrement product {line.product_id}",
                partial(
                    self.ledger.decrement,
                    store_id, line.product_id, line.quantity,
                    reference_id=reference,
                    reason=f"Sale ({attempt})",
                    user_id=user_id,
                ),
                partial(
                    self.ledger.restore,
                    store_id, line.product_id, line.quantity, f"{reference}:compensate",
                    reason=f"Sale compensation ({attempt})",
                    user_id=user_id,
                ),
            )
        saga.add_step(
            "persist sale",
            partial(self._persist_sale, user_id, store_id, lines, total_cents),
        )

        try:
            results = saga.execute()
        except InsufficientStock as exc:
            self.logger.info(
                "Sale rejected for store %s: product %s short by %d",
                store_id, exc.product_id, exc.shortage,
            )
            raise
        except StockOutcomeUnknown:
            self.logger.error(
                "Sale attempt %s hit a stock failure with unknown outcome; check movements for this reference",
                attempt,
            )
            raise

        sale = results[-1]
        self.cache.invalidate(*sale_tags(sale.id, store_id, user_id))
        self.logger.info(
            "Sale %s created: store=%s user=%s lines=%d total_cents=%d",
            sale.id, store_id, user_id, len(lines), total_cents,
        )
        return sale

    def _persist_sale(self, user_id: int, store_id: int, lines, total_cents: int) -> Sale:
        session = self.db.session
        sale = Sale(
            store_id=store_id,
            user_id=user_id,
            total_cents=total_cents,
            status=SALE_STATUS_ACTIVE,
        )
        for line in lines:
            sale.lines.append(SaleLine(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.subtotal_cents,
            ))
        session.add(sale)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            self.logger.exception("Failed to persist sale for store %s user %s", store_id, user_id)
            raise InternalError(
                "Failed to persist sale",
                details={"store_id": store_id, "user_id": user_id},
            ) from exc
        return sale

    # =========================================================================
    # STATUS
    # =========================================================================

    def apply_status(self, sale_id: int, status: str, *, refunded_cents: int) -> Sale:
        """
        Persist a status recomputed from the refund ledger.

        Args:
            sale_id: Sale to update
            status: Status the caller derived
            refunded_cents: Σ refund totals the status was derived from

        Raises:
            ValidationError: unknown status, a status that is not
                sale_status_for(total, refunded_cents), or a backward move
            SaleNotFound: no such sale

        Re-applying the current status is a no-op.
        """
        if status not in SALE_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(SALE_STATUSES)}",
                details={"status": status},
            )
        if isinstance(refunded_cents, bool) or not isinstance(refunded_cents, int) or refunded_cents < 0:
            raise ValidationError("refunded_cents must be a non-negative integer")

        session = self.db.session

        def _apply() -> tuple[Sale, str | None]:
            try:
                sale = lock_for_update(session.query(Sale).filter(Sale.id == sale_id)).first()
                if sale is None:
                    raise SaleNotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
                derived = sale_status_for(sale.total_cents, refunded_cents)
                if status != derived:
                    raise ValidationError(
                        f"Sale {sale_id} with {refunded_cents} refunded is {derived}, not {status}",
                        details={
                            "sale_id": sale_id,
                            "requested": status,
                            "derived": derived,
                            "refunded_cents": refunded_cents,
                            "total_cents": sale.total_cents,
                        },
                    )
                previous = sale.status
                if previous == status:
                    return sale, None
                if not is_forward(previous, status):
                    raise ValidationError(
                        f"Sale {sale_id} cannot move from {previous} back to {status}",
                        details={"sale_id": sale_id, "current": previous, "requested": status},
                    )
                sale.status = status
                session.add(SaleStatusEvent(
                    sale_id=sale_id,
                    from_status=previous,
                    to_status=status,
                    refunded_cents=refunded_cents,
                ))
                session.commit()
                return sale, previous
            except Exception:
                session.rollback()
                raise

        try:
            sale, previous = run_with_retry(_apply)
        except SQLAlchemyError as exc:
            self.logger.exception("Failed to apply status %s to sale %s", status, sale_id)
            raise InternalError(f"Failed to update status of sale {sale_id}") from exc

        if previous is not None:
            self.cache.invalidate(*sale_tags(sale.id, sale.store_id, sale.user_id))
            self.logger.info("Sale %s status %s -> %s", sale_id, previous, status)
        return sale

    # =========================================================================
    # READS
    # =========================================================================

    def load_sale(self, sale_id: int) -> Sale:
        """Uncached ORM load for callers that need the source of truth."""
        sale = self.db.session.get(Sale, sale_id)
        if sale is None:
            raise SaleNotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        return sale

    def get_sale(self, sale_id: int) -> dict:
        def _compute() -> dict:
            sale = self.load_sale(sale_id)
            events = (
                self.db.session.query(SaleStatusEvent)
                .filter(SaleStatusEvent.sale_id == sale_id)
                .order_by(SaleStatusEvent.id)
                .all()
            )
            data = sale.to_dict(include_lines=True)
            data["status_history"] = [event.to_dict() for event in events]
            return data

        return self.cache.get_or_compute(
            f"sale:{sale_id}",
            _compute,
            kind="list",
            tags=(f"sale:{sale_id}",),
        )

    def list_store_sales(self, store_id: int, *, limit: int = 50) -> list[dict]:
        return self.cache.get_or_compute(
            f"sales:store:{store_id}:limit={limit}",
            lambda: self._list_sales(Sale.store_id == store_id, limit),
            kind="list",
            tags=(f"store:{store_id}:sales",),
        )

    def list_user_sales(self, user_id: int, *, limit: int = 50) -> list[dict]:
        return self.cache.get_or_compute(
            f"sales:user:{user_id}:limit={limit}",
            lambda: self._list_sales(Sale.user_id == user_id, limit),
            kind="history",
            tags=(f"user:{user_id}:sales",),
        )

    def _list_sales(self, criterion, limit: int) -> list[dict]:
        rows = (
            self.db.session.query(Sale)
            .filter(criterion)
            .order_by(Sale.created_at.desc(), Sale.id.desc())
            .limit(limit)
            .all()
        )
        return [sale.to_dict() for sale in rows]
