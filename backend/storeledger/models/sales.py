from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Sale(db.Model):
    """
    Persisted sale, written once together with its lines.

    status is derived from the refund history and only changed through the
    sale orchestrator's apply_status; clients never set it.
    """
    __bind_key__ = "sales"
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_store_created", "store_id", "created_at"),
        db.Index("ix_sales_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    total_cents = db.Column(db.Integer, nullable=False)

    # active, partially_refunded, refunded
    status = db.Column(db.String(32), nullable=False, default="active", index=True)

    # Business date of the sale; the refund window is measured from here.
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines = db.relationship(
        "SaleLine",
        backref="sale",
        lazy="selectin",
        order_by="SaleLine.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Sale id={self.id} store_id={self.store_id} total_cents={self.total_cents} status={self.status}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "date": to_utc_z(self.created_at),
            "total_cents": self.total_cents,
            "status": self.status,
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class SaleLine(db.Model):
    """Immutable line of a sale."""
    __bind_key__ = "sales"
    __tablename__ = "sale_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class SaleStatusEvent(db.Model):
    """Append-only history of derived status changes."""
    __bind_key__ = "sales"
    __tablename__ = "sale_status_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    from_status = db.Column(db.String(32), nullable=False)
    to_status = db.Column(db.String(32), nullable=False)
    refunded_cents = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "refunded_cents": self.refunded_cents,
            "created_at": to_utc_z(self.created_at),
        }
