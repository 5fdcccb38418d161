"""
Stock Ledger: the single source of truth for per-store product quantity.

INVARIANTS:
- Stock.quantity >= 0 for every (store, product), enforced twice: every
  decrement is one conditional statement
      UPDATE stock SET quantity = quantity - :q
      WHERE store_id = :s AND product_id = :p AND quantity >= :q
  and the table carries CHECK (quantity >= 0).
- No read-then-write on quantity anywhere. Two concurrent sales against the
  last unit cannot both see enough stock: the second UPDATE matches no row.
- Every change appends a StockMovement in the same local transaction.
- A mutation carrying a reference_id applies at most once; a replay returns
  the current quantity without touching it.
- Each committed mutation invalidates the cache tags of its (store, product).

The ledger never retries a mutation. A storage failure rolls back the local
transaction and surfaces as StockOutcomeUnknown: the caller decides how to
reconcile, because a blind retry could double-apply.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..cache import STOCK_SUMMARY_TAG, ReadCache, stock_tags
from ..errors import CoreError, InsufficientStock, InternalError, StockOutcomeUnknown, ValidationError
from ..models import Stock, StockMovement, StockTransfer
from ..time_utils import utcnow
from ..validation import parse_stock_update
from .catalog import CatalogDirectory


MOVEMENT_SALE = "SALE"
MOVEMENT_RESTORE = "RESTORE"
MOVEMENT_ADJUSTMENT_IN = "ADJUSTMENT_IN"
MOVEMENT_ADJUSTMENT_OUT = "ADJUSTMENT_OUT"
MOVEMENT_MANUAL_SET = "MANUAL_SET"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"

_SET_ATTEMPTS = 3


class StockLedger:
    def __init__(
        self,
        db,
        *,
        catalog: CatalogDirectory,
        cache: ReadCache,
        logger: logging.Logger | None = None,
        low_stock_threshold: int = 10,
    ):
        self.db = db
        self.catalog = catalog
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.low_stock_threshold = low_stock_threshold

    # =========================================================================
    # READS
    # =========================================================================

    def _current_quantity(self, store_id: int, product_id: int) -> int:
        qty = (
            self.db.session.query(Stock.quantity)
            .filter_by(store_id=store_id, product_id=product_id)
            .scalar()
        )
        return int(qty or 0)

    def check_availability(self, store_id: int, product_id: int, quantity: int) -> dict:
        """
        Read-only availability check against the source of truth (never cached).

        Advisory only: the decrement itself is what guarantees no oversell.
        """
        if quantity <= 0:
            raise ValidationError("quantity must be > 0")
        current = self._current_quantity(store_id, product_id)
        available = current >= quantity
        return {
            "store_id": store_id,
            "product_id": product_id,
            "requested": quantity,
            "available": available,
            "current_quantity": current,
            "shortage": 0 if available else quantity - current,
        }

    def get_quantity(self, store_id: int, product_id: int) -> int:
        return self.cache.get_or_compute(
            f"stock:qty:{store_id}:{product_id}",
            lambda: self._current_quantity(store_id, product_id),
            kind="stock",
            tags=stock_tags(store_id, product_id)[:1],
        )

    def list_store_stock(self, store_id: int, *, low_stock_only: bool = False, threshold: int | None = None) -> dict:
        threshold = self.low_stock_threshold if threshold is None else threshold

        def _compute() -> dict:
            rows = (
                self.db.session.query(Stock)
                .filter(Stock.store_id == store_id)
                .order_by(Stock.product_id)
                .all()
            )
            items = [
                {**row.to_dict(), "is_low_stock": 0 < row.quantity < threshold}
                for row in rows
            ]
            counts = {
                "in_stock": sum(1 for i in items if i["quantity"] > 0),
                "out_of_stock": sum(1 for i in items if i["quantity"] == 0),
                "low_stock": sum(1 for i in items if i["is_low_stock"]),
            }
            if low_stock_only:
                items = [i for i in items if i["is_low_stock"]]
            return {"store_id": store_id, "threshold": threshold, "items": items, "counts": counts}

        return self.cache.get_or_compute(
            f"stock:store:{store_id}:low={int(low_stock_only)}:t={threshold}",
            _compute,
            kind="stock",
            tags=(f"store:{store_id}:stock",),
        )

    def list_product_stock(self, product_id: int, *, include_zero: bool = False) -> list[dict]:
        def _compute() -> list[dict]:
            q = self.db.session.query(Stock).filter(Stock.product_id == product_id)
            if not include_zero:
                q = q.filter(Stock.quantity > 0)
            return [row.to_dict() for row in q.order_by(Stock.store_id).all()]

        return self.cache.get_or_compute(
            f"stock:product:{product_id}:zero={int(include_zero)}",
            _compute,
            kind="stock",
            tags=(f"product:{product_id}:stock",),
        )

    def stock_summary(self, store_id: int | None = None, *, threshold: int | None = None) -> dict:
        threshold = self.low_stock_threshold if threshold is None else threshold

        def _compute() -> dict:
            base = self.db.session.query(Stock)
            if store_id is not None:
                base = base.filter(Stock.store_id == store_id)

            totals = base.with_entities(
                func.count(Stock.id),
                func.coalesce(func.sum(Stock.quantity), 0),
            ).one()
            out_of_stock = base.filter(Stock.quantity == 0).count()
            low_rows = (
                base.filter(Stock.quantity > 0, Stock.quantity < threshold)
                .order_by(Stock.quantity, Stock.store_id, Stock.product_id)
                .all()
            )
            total_items = int(totals[0] or 0)
            return {
                "store_id": store_id,
                "threshold": threshold,
                "total_items": total_items,
                "total_quantity": int(totals[1] or 0),
                "in_stock": total_items - out_of_stock,
                "out_of_stock": out_of_stock,
                "low_stock": len(low_rows),
                "low_stock_items": [row.to_dict() for row in low_rows],
            }

        return self.cache.get_or_compute(
            f"stock:summary:{store_id}:t={threshold}",
            _compute,
            kind="stock",
            tags=(STOCK_SUMMARY_TAG,),
        )

    def list_movements(
        self,
        *,
        store_id: int | None = None,
        product_id: int | None = None,
        reference_id: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        q = self.db.session.query(StockMovement)
        if store_id is not None:
            q = q.filter(StockMovement.store_id == store_id)
        if product_id is not None:
            q = q.filter(StockMovement.product_id == product_id)
        if reference_id is not None:
            q = q.filter(StockMovement.reference_id == reference_id)
        rows = q.order_by(StockMovement.id.desc()).limit(limit).all()
        return [row.to_dict() for row in rows]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def decrement(
        self,
        store_id: int,
        product_id: int,
        quantity: int,
        *,
        reference_id: str | None = None,
        reason: str | None = None,
        user_id: int | None = None,
        movement_type: str = MOVEMENT_SALE,
    ) -> int:
        """
        Atomically subtract quantity; returns the new quantity.

        Raises InsufficientStock when the conditional update matches no row.
        """
        self._validate_target(store_id, product_id, quantity)
        _, new_qty = self._mutate(
            store_id=store_id,
            product_id=product_id,
            quantity=quantity,
            movement_type=movement_type,
            reference_id=reference_id,
            reason=reason or "Sale",
            user_id=user_id,
            apply=lambda: self._conditional_decrement(store_id, product_id, quantity),
        )
        return new_qty

    def restore(
        self,
        store_id: int,
        product_id: int,
        quantity: int,
        reference_id: str | None = None,
        *,
        reason: str | None = None,
        user_id: int | None = None,
        movement_type: str = MOVEMENT_RESTORE,
    ) -> int:
        """
        Atomically add quantity back (creating the row if absent); returns the
        new quantity. With a reference_id, replays are no-ops.
        """
        self._validate_target(store_id, product_id, quantity)
        self._ensure_row(store_id, product_id)
        _, new_qty = self._mutate(
            store_id=store_id,
            product_id=product_id,
            quantity=quantity,
            movement_type=movement_type,
            reference_id=reference_id,
            reason=reason or "Restore",
            user_id=user_id,
            apply=lambda: self._increment(store_id, product_id, quantity),
        )
        return new_qty

    def adjust(
        self,
        store_id: int,
        product_id: int,
        quantity: int,
        operation: str,
        *,
        reason: str | None = None,
        user_id: int | None = None,
        reference_id: str | None = None,
    ) -> dict:
        """
        Manual stock update: add, subtract or set an absolute quantity.
        """
        if operation == "add":
            new_qty = self.restore(
                store_id, product_id, quantity, reference_id,
                reason=reason or "Manual stock update",
                user_id=user_id,
                movement_type=MOVEMENT_ADJUSTMENT_IN,
            )
            previous = new_qty - quantity
        elif operation == "subtract":
            new_qty = self.decrement(
                store_id, product_id, quantity,
                reference_id=reference_id,
                reason=reason or "Manual stock update",
                user_id=user_id,
                movement_type=MOVEMENT_ADJUSTMENT_OUT,
            )
            previous = new_qty + quantity
        elif operation == "set":
            previous, new_qty = self._set_quantity(
                store_id, product_id, quantity,
                reason=reason, user_id=user_id, reference_id=reference_id,
            )
        else:
            raise ValidationError("operation must be one of: add, subtract, set")

        return {
            "store_id": store_id,
            "product_id": product_id,
            "operation": operation,
            "previous_quantity": previous,
            "new_quantity": new_qty,
            "change": new_qty - previous,
        }

    def transfer(
        self,
        from_store_id: int,
        to_store_id: int,
        product_id: int,
        quantity: int,
        *,
        reason: str | None = None,
        user_id: int | None = None,
    ) -> dict:
        """
        Move quantity between stores in ONE local transaction: conditional
        decrement at the source, increment at the destination, transfer
        record and both movements. Either all of it commits or none does.
        """
        if from_store_id == to_store_id:
            raise ValidationError("Cannot transfer to the same store")
        self._validate_target(from_store_id, product_id, quantity)
        self.catalog.require_store(to_store_id)
        self._ensure_row(to_store_id, product_id)

        session = self.db.session
        reason = reason or "Stock transfer"
        try:
            src_prev, src_new = self._conditional_decrement(from_store_id, product_id, quantity)
            dst_prev, dst_new = self._increment(to_store_id, product_id, quantity)

            record = StockTransfer(
                product_id=product_id,
                from_store_id=from_store_id,
                to_store_id=to_store_id,
                quantity=quantity,
                reason=reason,
                user_id=user_id,
            )
            session.add(record)
            session.flush()

            reference = f"transfer-{record.id}"
            session.add(self._movement(
                from_store_id, product_id, MOVEMENT_TRANSFER_OUT, quantity, src_prev, src_new,
                reason=f"Transfer to store {to_store_id}: {reason}",
                reference_id=reference, user_id=user_id,
            ))
            session.add(self._movement(
                to_store_id, product_id, MOVEMENT_TRANSFER_IN, quantity, dst_prev, dst_new,
                reason=f"Transfer from store {from_store_id}: {reason}",
                reference_id=reference, user_id=user_id,
            ))
            session.commit()
        except CoreError:
            # Neither side may stay applied in the session.
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            self.logger.exception("Stock transfer failed for product %s (%s -> %s)", product_id, from_store_id, to_store_id)
            raise InternalError("Failed to transfer stock") from exc

        self.cache.invalidate(*stock_tags(from_store_id, product_id), *stock_tags(to_store_id, product_id))
        self.logger.info(
            "Transferred %d of product %s from store %s to store %s (transfer %s)",
            quantity, product_id, from_store_id, to_store_id, record.id,
        )
        return {
            "transfer": record.to_dict(),
            "from_quantity": src_new,
            "to_quantity": dst_new,
        }

    def bulk_update(self, updates: list[Any], *, user_id: int | None = None) -> dict:
        """
        Apply decrement/restore requests one by one.

        Each entry succeeds or fails on its own; one failure never aborts the
        rest of the batch.
        """
        if not isinstance(updates, list) or not updates:
            raise ValidationError("updates must be a non-empty list")

        results = []
        for index, raw in enumerate(updates):
            try:
                entry = parse_stock_update(index, raw)
                if entry.operation == "decrement":
                    new_qty = self.decrement(
                        entry.store_id, entry.product_id, entry.quantity,
                        reference_id=entry.reference_id,
                        reason=entry.reason or "Bulk stock update",
                        user_id=user_id,
                    )
                else:
                    new_qty = self.restore(
                        entry.store_id, entry.product_id, entry.quantity, entry.reference_id,
                        reason=entry.reason or "Bulk stock update",
                        user_id=user_id,
                    )
                results.append({
                    "index": index,
                    "success": True,
                    "store_id": entry.store_id,
                    "product_id": entry.product_id,
                    "operation": entry.operation,
                    "new_quantity": new_qty,
                })
            except CoreError as exc:
                results.append({
                    "index": index,
                    "success": False,
                    "error": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                })

        succeeded = sum(1 for r in results if r["success"])
        return {
            "results": results,
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
        }

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _validate_target(self, store_id: int, product_id: int, quantity: int) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        self.catalog.require_store(store_id)
        self.catalog.require_product(product_id)

    def _ensure_row(self, store_id: int, product_id: int) -> None:
        """Create a zero-quantity row if none exists (its own short transaction)."""
        session = self.db.session
        try:
            exists = (
                session.query(Stock.id)
                .filter_by(store_id=store_id, product_id=product_id)
                .first()
            )
            if exists:
                return
            session.add(Stock(store_id=store_id, product_id=product_id, quantity=0))
            session.commit()
        except IntegrityError:
            # Created concurrently; the row is there either way.
            session.rollback()
        except SQLAlchemyError as exc:
            session.rollback()
            self.logger.exception("Stock row check failed for product %s in store %s", product_id, store_id)
            raise StockOutcomeUnknown(
                f"Failed to create stock row for product {product_id} in store {store_id}",
                details={"store_id": store_id, "product_id": product_id},
            ) from exc

    def _conditional_decrement(self, store_id: int, product_id: int, quantity: int) -> tuple[int, int]:
        session = self.db.session
        stmt = (
            update(Stock)
            .where(
                Stock.store_id == store_id,
                Stock.product_id == product_id,
                Stock.quantity >= quantity,
            )
            .values(quantity=Stock.quantity - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            available = self._current_quantity(store_id, product_id)
            session.rollback()
            raise InsufficientStock(
                store_id=store_id,
                product_id=product_id,
                available=available,
                requested=quantity,
            )
        new_qty = self._current_quantity(store_id, product_id)
        return new_qty + quantity, new_qty

    def _increment(self, store_id: int, product_id: int, quantity: int) -> tuple[int, int]:
        session = self.db.session
        stmt = (
            update(Stock)
            .where(Stock.store_id == store_id, Stock.product_id == product_id)
            .values(quantity=Stock.quantity + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            raise StockOutcomeUnknown(
                f"Stock row for product {product_id} in store {store_id} is missing",
                details={"store_id": store_id, "product_id": product_id},
            )
        new_qty = self._current_quantity(store_id, product_id)
        return new_qty - quantity, new_qty

    def _set_quantity(
        self,
        store_id: int,
        product_id: int,
        quantity: int,
        *,
        reason: str | None,
        user_id: int | None,
        reference_id: str | None,
    ) -> tuple[int, int]:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            raise ValidationError("quantity must be a non-negative integer")
        self.catalog.require_store(store_id)
        self.catalog.require_product(product_id)
        self._ensure_row(store_id, product_id)

        def _apply() -> tuple[int, int]:
            # Compare-and-set on the observed value so the audit row records
            # the exact quantity that was replaced.
            for _ in range(_SET_ATTEMPTS):
                previous = self._current_quantity(store_id, product_id)
                stmt = (
                    update(Stock)
                    .where(
                        Stock.store_id == store_id,
                        Stock.product_id == product_id,
                        Stock.quantity == previous,
                    )
                    .values(quantity=quantity, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if self.db.session.execute(stmt).rowcount == 1:
                    return previous, quantity
            raise StockOutcomeUnknown(
                f"Stock for product {product_id} in store {store_id} kept changing; set not applied",
                details={"store_id": store_id, "product_id": product_id},
            )

        return self._mutate(
            store_id=store_id,
            product_id=product_id,
            quantity=quantity,
            movement_type=MOVEMENT_MANUAL_SET,
            reference_id=reference_id,
            reason=reason or "Manual stock update",
            user_id=user_id,
            apply=_apply,
        )

    def _movement(
        self,
        store_id: int,
        product_id: int,
        movement_type: str,
        quantity: int,
        previous: int,
        new: int,
        *,
        reason: str | None,
        reference_id: str | None,
        user_id: int | None,
    ) -> StockMovement:
        return StockMovement(
            store_id=store_id,
            product_id=product_id,
            movement_type=movement_type,
            quantity=quantity,
            previous_quantity=previous,
            new_quantity=new,
            reason=reason,
            reference_id=reference_id,
            user_id=user_id,
        )

    def _find_replay(self, reference_id: str, store_id: int, product_id: int, movement_type: str) -> StockMovement | None:
        return (
            self.db.session.query(StockMovement)
            .filter_by(
                reference_id=reference_id,
                store_id=store_id,
                product_id=product_id,
                movement_type=movement_type,
            )
            .first()
        )

    def _mutate(
        self,
        *,
        store_id: int,
        product_id: int,
        quantity: int,
        movement_type: str,
        reference_id: str | None,
        reason: str | None,
        user_id: int | None,
        apply: Callable[[], tuple[int, int]],
    ) -> tuple[int, int]:
        """Run one mutation plus its movement row; returns (previous, new)."""
        session = self.db.session

        try:
            if reference_id is not None:
                replay = self._find_replay(reference_id, store_id, product_id, movement_type)
                if replay is not None:
                    return self._replayed(replay)

            previous, new = apply()
            session.add(self._movement(
                store_id, product_id, movement_type, quantity, previous, new,
                reason=reason, reference_id=reference_id, user_id=user_id,
            ))
            session.commit()
        except InsufficientStock:
            raise
        except IntegrityError as exc:
            session.rollback()
            if reference_id is not None:
                replay = self._find_replay(reference_id, store_id, product_id, movement_type)
                if replay is not None:
                    return self._replayed(replay)
            self.logger.exception("Stock %s rejected by storage for product %s in store %s", movement_type, product_id, store_id)
            raise StockOutcomeUnknown(
                f"Stock {movement_type.lower()} failed for product {product_id} in store {store_id}",
                details={"store_id": store_id, "product_id": product_id, "reference_id": reference_id},
            ) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            self.logger.exception("Stock %s failed for product %s in store %s", movement_type, product_id, store_id)
            raise StockOutcomeUnknown(
                f"Stock {movement_type.lower()} failed for product {product_id} in store {store_id}",
                details={"store_id": store_id, "product_id": product_id, "reference_id": reference_id},
            ) from exc
        except StockOutcomeUnknown:
            session.rollback()
            raise

        self.cache.invalidate(*stock_tags(store_id, product_id))
        self.logger.info(
            "Stock %s: store=%s product=%s qty=%d %d -> %d ref=%s",
            movement_type, store_id, product_id, quantity, previous, new, reference_id,
        )
        return previous, new

    def _replayed(self, movement: StockMovement) -> tuple[int, int]:
        self.logger.warning(
            "Stock %s with reference %s already applied; ignoring replay",
            movement.movement_type, movement.reference_id,
        )
        return movement.previous_quantity, self._current_quantity(movement.store_id, movement.product_id)
