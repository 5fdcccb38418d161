from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Stock(db.Model):
    """
    Authoritative per-(store, product) quantity.

    Quantity is only ever changed by single conditional UPDATE statements in
    the stock ledger; the CHECK constraint is the storage-level backstop for
    quantity >= 0.
    """
    __bind_key__ = "stock"
    __tablename__ = "stock"
    __table_args__ = (
        db.UniqueConstraint("store_id", "product_id", name="uq_stock_store_product"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Catalog ids; the catalog lives in another store so there is no FK.
    store_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Stock store_id={self.store_id} product_id={self.product_id} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit row written in the same transaction as the quantity change.

    (reference_id, store_id, product_id, movement_type) is unique so that a
    replayed mutation carrying the same reference cannot apply twice.
    """
    __bind_key__ = "stock"
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint(
            "reference_id", "store_id", "product_id", "movement_type",
            name="uq_stock_movements_reference",
        ),
        db.Index("ix_stock_movements_store_product", "store_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, nullable=False)

    # SALE, RESTORE, ADJUSTMENT_IN, ADJUSTMENT_OUT, MANUAL_SET, TRANSFER_IN, TRANSFER_OUT
    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    reference_id = db.Column(db.String(128), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockTransfer(db.Model):
    """Completed store-to-store transfer (both legs committed together)."""
    __bind_key__ = "stock"
    __tablename__ = "stock_transfers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)
    from_store_id = db.Column(db.Integer, nullable=False, index=True)
    to_store_id = db.Column(db.Integer, nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "from_store_id": self.from_store_id,
            "to_store_id": self.to_store_id,
            "quantity": self.quantity,
            "reason": self.reason,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
