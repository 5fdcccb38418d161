from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ValidationError


# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_LINE_QUANTITY = 1_000_000
MAX_REASON_LENGTH = 255

STOCK_OPERATIONS = ("add", "subtract", "set")
BULK_OPERATIONS = ("decrement", "restore")

ROLES = ("client", "service", "manager", "admin")
# Roles that may act on records they do not own.
STAFF_ROLES = ("service", "manager", "admin")


@dataclass(frozen=True)
class LineItem:
    """One cart or refund line. unit_price_cents may be None for refunds."""
    product_id: int
    quantity: int
    unit_price_cents: int | None = None

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * (self.unit_price_cents or 0)


@dataclass(frozen=True)
class StockUpdate:
    """One entry of a bulk stock update."""
    store_id: int
    product_id: int
    quantity: int
    operation: str
    reference_id: str | None = None
    reason: str | None = None


def coerce_int(field: str, value: Any) -> int:
    """
    Strict integer coercion.

    Rejects bools, floats, decimals and scientific notation so that a
    quantity of "1e3" or 2.5 never reaches the ledger.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def positive_int(field: str, value: Any) -> int:
    result = coerce_int(field, value)
    if result <= 0:
        raise ValidationError(f"{field} must be > 0")
    return result


def optional_int(field: str, value: Any) -> int | None:
    if value is None:
        return None
    return coerce_int(field, value)


def price_cents(field: str, value: Any) -> int:
    result = coerce_int(field, value)
    if result < 0:
        raise ValidationError(f"{field} must be >= 0")
    if result > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")
    return result


def optional_text(field: str, value: Any, max_length: int = MAX_REASON_LENGTH) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def require_payload(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _parse_line(index: int, raw: Any, *, price_required: bool) -> LineItem:
    if not isinstance(raw, dict):
        raise ValidationError(f"Item {index + 1} must be an object")
    if raw.get("product_id") is None or raw.get("quantity") is None:
        raise ValidationError(f"Item {index + 1} is missing required fields")

    product_id = positive_int(f"items[{index}].product_id", raw["product_id"])
    quantity = positive_int(f"items[{index}].quantity", raw["quantity"])
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"items[{index}].quantity cannot exceed {MAX_LINE_QUANTITY}")

    unit_price = raw.get("unit_price_cents")
    if unit_price is None:
        if price_required:
            raise ValidationError(f"Item {index + 1} is missing unit_price_cents")
        return LineItem(product_id=product_id, quantity=quantity)

    return LineItem(
        product_id=product_id,
        quantity=quantity,
        unit_price_cents=price_cents(f"items[{index}].unit_price_cents", unit_price),
    )


def parse_sale_items(items: Any) -> list[LineItem]:
    """A sale must carry at least one fully priced line."""
    if not isinstance(items, list) or not items:
        raise ValidationError("Sale must contain at least one item")
    lines = [_parse_line(i, raw, price_required=True) for i, raw in enumerate(items)]
    for i, line in enumerate(lines):
        if line.unit_price_cents <= 0:
            raise ValidationError(f"Item {i + 1} has invalid quantity or price")
    return lines


def parse_refund_items(items: Any) -> list[LineItem] | None:
    """None (or an empty list) means a full refund of what remains."""
    if items is None:
        return None
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    if not items:
        return None
    return [_parse_line(i, raw, price_required=False) for i, raw in enumerate(items)]


def parse_stock_update(index: int, raw: Any) -> StockUpdate:
    """Parse one bulk entry; bulk callers report failures per entry."""
    if isinstance(raw, StockUpdate):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"updates[{index}] must be an object")
    require_fields(raw, "store_id", "product_id", "quantity", "operation")
    operation = str(raw["operation"]).strip().lower()
    if operation not in BULK_OPERATIONS:
        raise ValidationError(
            f"updates[{index}].operation must be one of: {', '.join(BULK_OPERATIONS)}"
        )
    return StockUpdate(
        store_id=positive_int(f"updates[{index}].store_id", raw["store_id"]),
        product_id=positive_int(f"updates[{index}].product_id", raw["product_id"]),
        quantity=positive_int(f"updates[{index}].quantity", raw["quantity"]),
        operation=operation,
        reference_id=optional_text(f"updates[{index}].reference_id", raw.get("reference_id"), 128),
        reason=optional_text(f"updates[{index}].reason", raw.get("reason")),
    )
