from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Refund(db.Model):
    """
    Refund recorded against a sale. Immutable after creation.

    sale_id/store_id/user_id are copied from the sale, which lives in the
    sales store, so none of them is a foreign key here.
    """
    __bind_key__ = "refunds"
    __tablename__ = "refunds"
    __table_args__ = (
        db.Index("ix_refunds_store_created", "store_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, nullable=False, index=True)
    store_id = db.Column(db.Integer, nullable=False, index=True)

    # Customer of the original sale
    user_id = db.Column(db.Integer, nullable=False, index=True)
    # Who requested the refund
    created_by_user_id = db.Column(db.Integer, nullable=True)

    total_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    lines = db.relationship(
        "RefundLine",
        backref="refund",
        lazy="selectin",
        order_by="RefundLine.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Refund id={self.id} sale_id={self.sale_id} total_cents={self.total_cents}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_id": self.sale_id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "created_by_user_id": self.created_by_user_id,
            "date": to_utc_z(self.created_at),
            "total_cents": self.total_cents,
            "reason": self.reason,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class RefundLine(db.Model):
    __bind_key__ = "refunds"
    __tablename__ = "refund_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class SaleRefundBalance(db.Model):
    """
    Running refunded amount per sale.

    Advanced by a single conditional UPDATE in the same transaction that
    inserts the refund, so concurrent refunds cannot exceed the sale total.
    """
    __bind_key__ = "refunds"
    __tablename__ = "sale_refund_balances"
    __table_args__ = (
        db.CheckConstraint("refunded_cents <= sale_total_cents", name="ck_refund_balance_within_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, nullable=False, unique=True)
    sale_total_cents = db.Column(db.Integer, nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PendingRestoration(db.Model):
    """
    Outbox row for a stock restoration that failed during refund processing.

    reference_id is the same one handed to the stock ledger, so replaying the
    row is safe even if the original call did apply.
    """
    __bind_key__ = "refunds"
    __tablename__ = "pending_restorations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, nullable=False, index=True)
    store_id = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    reference_id = db.Column(db.String(128), nullable=False, unique=True)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "reference_id": self.reference_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }
