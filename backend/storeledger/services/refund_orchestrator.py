"""
Refund Orchestrator: validate, record, restore stock, recompute sale status.

WHY: a refund touches three owned resources (refund record, stock, sale
status) with no shared transaction. The refund record is the one that must
be durable; stock restoration and status propagation follow it and are
repairable if they fail.

LIFECYCLE (create_refund):
1. Validate input, load the sale, check ownership
2. Eligibility: not already refunded, inside the refund window
3. Compute lines and total (full refund = whatever remains)
4. Enforce Σ refunds <= sale total (checked, then enforced atomically by
   the SaleRefundBalance conditional update)
5. Commit Refund + RefundLines + balance in ONE refunds-store transaction
6. Restore stock per line; a failure is logged and queued as a
   PendingRestoration, never rolled back into the refund
7. Recompute status from Σ refunds and push it to the sale owner
8. Invalidate sale/refund/store/user caches

Every rejection in steps 1-4 happens before any write.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..cache import ReadCache, refund_tags
from ..errors import (
    AccessDenied,
    AlreadyRefunded,
    AmountMismatch,
    CoreError,
    InternalError,
    RefundAmountExceeded,
    RefundNotAllowed,
    RefundNotFound,
    RefundWindowExpired,
    ValidationError,
)
from ..models import PendingRestoration, Refund, RefundLine, Sale, SaleRefundBalance
from ..time_utils import as_utc_naive, utcnow
from ..validation import STAFF_ROLES, optional_int, optional_text, parse_refund_items
from .sale_orchestrator import SaleOrchestrator
from .sale_status import REFUNDABLE_STATUSES, SALE_STATUS_REFUNDED, sale_status_for
from .stock_ledger import StockLedger


@dataclass
class RefundResult:
    refund: Refund
    sale_status: str | None
    refunded_cents: int
    pending_restorations: list[PendingRestoration] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "refund": self.refund.to_dict(),
            "sale_status": self.sale_status,
            "refunded_cents": self.refunded_cents,
            "pending_restorations": [p.to_dict() for p in self.pending_restorations],
        }


class RefundOrchestrator:
    def __init__(
        self,
        db,
        *,
        sales: SaleOrchestrator,
        ledger: StockLedger,
        cache: ReadCache,
        logger: logging.Logger | None = None,
        refund_window_days: int = 30,
        amount_tolerance_cents: int = 1,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.sales = sales
        self.ledger = ledger
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.refund_window_days = refund_window_days
        self.amount_tolerance_cents = amount_tolerance_cents
        self.clock = clock

    # =========================================================================
    # REFUND CREATION
    # =========================================================================

    def create_refund(
        self,
        sale_id: int,
        *,
        user_id: int,
        reason,
        role: str = "client",
        items=None,
        amount_cents=None,
    ) -> RefundResult:
        """
        Record a refund against a sale and restore its stock.

        Args:
            sale_id: Sale being refunded
            user_id: Requesting user (must own the sale unless staff)
            reason: Required free-text reason
            role: Requesting user's role
            items: Optional [{product_id, quantity, unit_price_cents?}];
                omitted means refund everything that remains
            amount_cents: Optional client-asserted total to verify

        Raises:
            ValidationError, SaleNotFound, AccessDenied, AlreadyRefunded,
            RefundNotAllowed, RefundWindowExpired, AmountMismatch,
            RefundAmountExceeded: all before any write
            InternalError: the refund record could not be persisted
        """
        reason = optional_text("reason", reason)
        if not reason:
            raise ValidationError("reason is required")
        requested_items = parse_refund_items(items)
        amount_cents = optional_int("amount_cents", amount_cents)

        sale = self.sales.load_sale(sale_id)
        store_id = sale.store_id
        owner_id = sale.user_id
        sale_total = sale.total_cents

        if role not in STAFF_ROLES and owner_id != user_id:
            raise AccessDenied(
                f"Sale {sale_id} does not belong to user {user_id}",
                details={"sale_id": sale_id},
            )

        prior_total, refunded_qty = self._refund_history(sale_id)
        if sale.status == SALE_STATUS_REFUNDED or prior_total >= sale_total:
            raise AlreadyRefunded(
                f"Sale {sale_id} has already been fully refunded",
                details={"sale_id": sale_id, "refunded_cents": prior_total, "total_cents": sale_total},
            )
        if sale.status not in REFUNDABLE_STATUSES:
            raise RefundNotAllowed(
                f"Sale {sale_id} cannot be refunded in status {sale.status}",
                details={"sale_id": sale_id, "status": sale.status},
            )

        window = timedelta(days=self.refund_window_days)
        if self.clock() - as_utc_naive(sale.created_at) > window:
            raise RefundWindowExpired(
                f"Refund window of {self.refund_window_days} days has expired for sale {sale_id}",
                details={"sale_id": sale_id, "refund_window_days": self.refund_window_days},
            )

        remaining = sale_total - prior_total
        if requested_items is None:
            lines = self._remaining_lines(sale, refunded_qty)
            total_cents = remaining
        else:
            lines = self._requested_lines(sale, requested_items, refunded_qty)
            total_cents = sum(qty * price for _, qty, price in lines)

        if total_cents <= 0:
            raise ValidationError("Refund total must be greater than zero")

        if amount_cents is not None and abs(amount_cents - total_cents) > self.amount_tolerance_cents:
            raise AmountMismatch(
                f"Refund amount mismatch: computed {total_cents}, requested {amount_cents}",
                details={"computed_cents": total_cents, "requested_cents": amount_cents},
            )

        if total_cents > remaining + self.amount_tolerance_cents:
            raise RefundAmountExceeded(
                f"Refund of {total_cents} exceeds refundable amount {remaining} for sale {sale_id}",
                details={
                    "sale_id": sale_id,
                    "requested_cents": total_cents,
                    "refundable_cents": remaining,
                    "already_refunded_cents": prior_total,
                },
            )
        # Rounding overshoot within tolerance
        total_cents = min(total_cents, remaining)

        refund = self._persist_refund(
            sale_id=sale_id,
            store_id=store_id,
            owner_id=owner_id,
            user_id=user_id,
            sale_total=sale_total,
            prior_total=prior_total,
            total_cents=total_cents,
            reason=reason,
            lines=lines,
        )
        refund_id = refund.id
        self.logger.info(
            "Refund %s recorded for sale %s: total_cents=%d by user %s",
            refund_id, sale_id, total_cents, user_id,
        )

        pending = self._restore_stock(refund, store_id, user_id)

        refunded_cents = self._refunded_total(sale_id)
        status = sale_status_for(sale_total, refunded_cents)
        try:
            self.sales.apply_status(sale_id, status, refunded_cents=refunded_cents)
        except CoreError:
            self.logger.error(
                "Sale %s status propagation failed after refund %s (expected %s); run resync",
                sale_id, refund_id, status, exc_info=True,
            )

        self.cache.invalidate(*refund_tags(sale_id, store_id, owner_id, refund_id))
        if user_id != owner_id:
            self.cache.invalidate(f"user:{user_id}:refunds")

        return RefundResult(
            refund=self.db.session.get(Refund, refund_id),
            sale_status=status,
            refunded_cents=refunded_cents,
            pending_restorations=pending,
        )

    def _refund_history(self, sale_id: int) -> tuple[int, dict[int, int]]:
        """(Σ refund totals, refunded quantity per product) for one sale."""
        session = self.db.session
        total = (
            session.query(func.coalesce(func.sum(Refund.total_cents), 0))
            .filter(Refund.sale_id == sale_id)
            .scalar()
        )
        rows = (
            session.query(RefundLine.product_id, func.sum(RefundLine.quantity))
            .join(Refund, Refund.id == RefundLine.refund_id)
            .filter(Refund.sale_id == sale_id)
            .group_by(RefundLine.product_id)
            .all()
        )
        return int(total or 0), {product_id: int(qty) for product_id, qty in rows}

    def _refunded_total(self, sale_id: int) -> int:
        return self._refund_history(sale_id)[0]

    def _remaining_lines(self, sale: Sale, refunded_qty: dict[int, int]) -> list[tuple[int, int, int]]:
        """Unrefunded quantity of every sale line, consuming prior refunds in line order."""
        consumed = dict(refunded_qty)
        lines = []
        for line in sale.lines:
            already = min(consumed.get(line.product_id, 0), line.quantity)
            consumed[line.product_id] = consumed.get(line.product_id, 0) - already
            qty = line.quantity - already
            if qty > 0:
                lines.append((line.product_id, qty, line.unit_price_cents))
        return lines

    def _requested_lines(self, sale: Sale, items, refunded_qty: dict[int, int]) -> list[tuple[int, int, int]]:
        sold: dict[int, int] = defaultdict(int)
        prices: dict[int, int] = {}
        for line in sale.lines:
            sold[line.product_id] += line.quantity
            prices.setdefault(line.product_id, line.unit_price_cents)

        requested: dict[int, int] = defaultdict(int)
        lines = []
        for item in items:
            if item.product_id not in sold:
                raise ValidationError(
                    f"Product {item.product_id} is not part of sale {sale.id}",
                    details={"product_id": item.product_id},
                )
            requested[item.product_id] += item.quantity
            available = sold[item.product_id] - refunded_qty.get(item.product_id, 0)
            if requested[item.product_id] > available:
                raise ValidationError(
                    f"Refund quantity for product {item.product_id} exceeds refundable quantity {available}",
                    details={
                        "product_id": item.product_id,
                        "requested": requested[item.product_id],
                        "refundable": available,
                    },
                )
            price = item.unit_price_cents if item.unit_price_cents is not None else prices[item.product_id]
            lines.append((item.product_id, item.quantity, price))
        return lines

    def _ensure_balance(self, sale_id: int, sale_total: int, prior_total: int) -> None:
        session = self.db.session
        exists = session.query(SaleRefundBalance.id).filter_by(sale_id=sale_id).first()
        if exists:
            return
        session.add(SaleRefundBalance(
            sale_id=sale_id,
            sale_total_cents=sale_total,
            refunded_cents=prior_total,
        ))
        try:
            session.commit()
        except IntegrityError:
            # Another refund created it first.
            session.rollback()

    def _persist_refund(
        self,
        *,
        sale_id: int,
        store_id: int,
        owner_id: int,
        user_id: int,
        sale_total: int,
        prior_total: int,
        total_cents: int,
        reason: str,
        lines: list[tuple[int, int, int]],
    ) -> Refund:
        session = self.db.session
        try:
            self._ensure_balance(sale_id, sale_total, prior_total)

            # Advance the balance only if the refund still fits: concurrent
            # refunds serialise on this one row.
            result = session.execute(
                update(SaleRefundBalance)
                .where(
                    SaleRefundBalance.sale_id == sale_id,
                    SaleRefundBalance.refunded_cents + total_cents <= SaleRefundBalance.sale_total_cents,
                )
                .values(
                    refunded_cents=SaleRefundBalance.refunded_cents + total_cents,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                refunded = (
                    session.query(SaleRefundBalance.refunded_cents)
                    .filter_by(sale_id=sale_id)
                    .scalar()
                ) or 0
                session.rollback()
                if refunded >= sale_total:
                    raise AlreadyRefunded(
                        f"Sale {sale_id} has already been fully refunded",
                        details={"sale_id": sale_id, "refunded_cents": refunded, "total_cents": sale_total},
                    )
                raise RefundAmountExceeded(
                    f"Refund of {total_cents} exceeds refundable amount {sale_total - refunded} for sale {sale_id}",
                    details={
                        "sale_id": sale_id,
                        "requested_cents": total_cents,
                        "refundable_cents": sale_total - refunded,
                        "already_refunded_cents": refunded,
                    },
                )

            refund = Refund(
                sale_id=sale_id,
                store_id=store_id,
                user_id=owner_id,
                created_by_user_id=user_id,
                total_cents=total_cents,
                reason=reason,
            )
            for product_id, qty, price in lines:
                refund.lines.append(RefundLine(
                    product_id=product_id,
                    quantity=qty,
                    unit_price_cents=price,
                    line_total_cents=qty * price,
                ))
            session.add(refund)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            self.logger.exception("Failed to persist refund for sale %s", sale_id)
            raise InternalError(
                f"Failed to persist refund for sale {sale_id}",
                details={"sale_id": sale_id},
            ) from exc
        return refund

    # =========================================================================
    # STOCK RESTORATION (best effort + outbox)
    # =========================================================================

    def _restore_stock(self, refund: Refund, store_id: int, user_id: int) -> list[PendingRestoration]:
        refund_id = refund.id
        targets = [
            (line.product_id, line.quantity, f"refund-{refund_id}:line-{line.id}")
            for line in refund.lines
        ]
        pending = []
        for product_id, qty, reference in targets:
            try:
                self.ledger.restore(
                    store_id, product_id, qty, reference,
                    reason=f"Refund {refund_id}",
                    user_id=user_id,
                )
            except (CoreError, SQLAlchemyError) as exc:
                if isinstance(exc, SQLAlchemyError):
                    self.db.session.rollback()
                self.logger.error(
                    "Stock restoration failed for refund %s product %s qty %d: %s; queued for replay",
                    refund_id, product_id, qty, exc,
                )
                row = self._queue_restoration(refund_id, store_id, product_id, qty, reference, str(exc))
                if row is not None:
                    pending.append(row)
        return pending

    def _queue_restoration(
        self,
        refund_id: int,
        store_id: int,
        product_id: int,
        quantity: int,
        reference: str,
        error: str,
    ) -> PendingRestoration | None:
        session = self.db.session
        row = PendingRestoration(
            refund_id=refund_id,
            store_id=store_id,
            product_id=product_id,
            quantity=quantity,
            reference_id=reference,
            attempts=1,
            last_error=error[:255],
        )
        session.add(row)
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            self.logger.critical(
                "Could not queue stock restoration %s (store %s product %s qty %d); manual reconciliation required",
                reference, store_id, product_id, quantity, exc_info=True,
            )
            return None
        return row

    def replay_pending_restorations(self, limit: int = 100) -> dict:
        """
        Retry queued restorations. Each carries the original reference id,
        so a restoration that did apply the first time is not applied twice.
        """
        session = self.db.session
        rows = (
            session.query(PendingRestoration)
            .filter(PendingRestoration.resolved_at.is_(None))
            .order_by(PendingRestoration.id)
            .limit(limit)
            .all()
        )
        targets = [
            (row.id, row.refund_id, row.store_id, row.product_id, row.quantity, row.reference_id)
            for row in rows
        ]

        resolved = 0
        failed = 0
        for row_id, refund_id, store_id, product_id, qty, reference in targets:
            error = None
            try:
                self.ledger.restore(
                    store_id, product_id, qty, reference,
                    reason=f"Refund {refund_id} (replayed)",
                )
            except CoreError as exc:
                error = str(exc)
            except SQLAlchemyError as exc:
                session.rollback()
                error = str(exc)

            row = session.get(PendingRestoration, row_id)
            row.attempts += 1
            if error is None:
                row.resolved_at = utcnow()
                row.last_error = None
                resolved += 1
            else:
                row.last_error = error[:255]
                failed += 1
                self.logger.warning("Replay of restoration %s failed: %s", reference, error)
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                self.logger.exception("Failed to record replay result for restoration %s", reference)

        if targets:
            self.logger.info(
                "Replayed %d pending restoration(s): %d resolved, %d still failing",
                len(targets), resolved, failed,
            )
        return {"attempted": len(targets), "resolved": resolved, "failed": failed}

    def list_pending_restorations(self, *, include_resolved: bool = False) -> list[dict]:
        q = self.db.session.query(PendingRestoration)
        if not include_resolved:
            q = q.filter(PendingRestoration.resolved_at.is_(None))
        return [row.to_dict() for row in q.order_by(PendingRestoration.id).all()]

    # =========================================================================
    # STATUS REPAIR
    # =========================================================================

    def resync_sale_status(self, sale_id: int, *, expected_status: str | None = None) -> dict:
        """
        Recompute a sale's status from its refunds and push it to the sale owner.

        With expected_status, the caller's view is checked first: a status
        the refund ledger does not support raises ValidationError and
        nothing is written.
        """
        sale = self.sales.load_sale(sale_id)
        refunded_cents = self._refunded_total(sale_id)
        status = sale_status_for(sale.total_cents, refunded_cents)
        if expected_status is not None and expected_status != status:
            raise ValidationError(
                f"Sale {sale_id} with {refunded_cents} refunded is {status}, not {expected_status}",
                details={
                    "sale_id": sale_id,
                    "requested": expected_status,
                    "derived": status,
                    "refunded_cents": refunded_cents,
                },
            )
        sale = self.sales.apply_status(sale_id, status, refunded_cents=refunded_cents)
        return {"sale_id": sale_id, "status": sale.status, "refunded_cents": refunded_cents}

    # =========================================================================
    # READS
    # =========================================================================

    def get_refund(self, refund_id: int) -> dict:
        def _compute() -> dict:
            refund = self.db.session.get(Refund, refund_id)
            if refund is None:
                raise RefundNotFound(f"Refund {refund_id} not found", details={"refund_id": refund_id})
            return refund.to_dict()

        return self.cache.get_or_compute(
            f"refund:{refund_id}",
            _compute,
            kind="list",
            tags=(f"refund:{refund_id}",),
        )

    def list_sale_refunds(self, sale_id: int) -> dict:
        def _compute() -> dict:
            sale = self.sales.load_sale(sale_id)
            refunds = self._list_refunds(Refund.sale_id == sale_id, limit=None)
            refunded = sum(r["total_cents"] for r in refunds)
            return {
                "sale_id": sale_id,
                "sale_total_cents": sale.total_cents,
                "refunded_cents": refunded,
                "refundable_cents": max(0, sale.total_cents - refunded),
                "refunds": refunds,
            }

        return self.cache.get_or_compute(
            f"refunds:sale:{sale_id}",
            _compute,
            kind="list",
            tags=(f"sale:{sale_id}:refunds",),
        )

    def list_store_refunds(self, store_id: int, *, limit: int = 50) -> list[dict]:
        return self.cache.get_or_compute(
            f"refunds:store:{store_id}:limit={limit}",
            lambda: self._list_refunds(Refund.store_id == store_id, limit=limit),
            kind="list",
            tags=(f"store:{store_id}:refunds",),
        )

    def list_user_refunds(self, user_id: int, *, limit: int = 50) -> list[dict]:
        return self.cache.get_or_compute(
            f"refunds:user:{user_id}:limit={limit}",
            lambda: self._list_refunds(
                (Refund.user_id == user_id) | (Refund.created_by_user_id == user_id),
                limit=limit,
            ),
            kind="history",
            tags=(f"user:{user_id}:refunds",),
        )

    def _list_refunds(self, criterion, *, limit: int | None) -> list[dict]:
        q = (
            self.db.session.query(Refund)
            .filter(criterion)
            .order_by(Refund.created_at.desc(), Refund.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        return [refund.to_dict() for refund in q.all()]
