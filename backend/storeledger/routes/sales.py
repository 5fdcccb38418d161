# Overview: Flask API routes for sales; parses input and returns JSON responses.

# backend/storeledger/routes/sales.py
"""
Sales API Routes

DESIGN:
- POST creates a sale through the sale orchestrator (stock saga)
- Reads are served from the read cache
- PATCH .../status recomputes the status from the refund ledger (repair path)

SECURITY:
- Identity headers required on every route
- Clients may only create and read their own sales
- Status updates restricted to service/manager/admin
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..core import get_core
from ..decorators import ensure_self_or_staff, require_identity, require_role
from ..errors import CoreError
from ..validation import STAFF_ROLES, optional_int, positive_int, require_fields, require_payload


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


# =============================================================================
# SALE CREATION
# =============================================================================

@sales_bp.post("")
@require_identity
def create_sale_route():
    """
    Create a sale: decrement stock for every line, then record the sale.

    Request body:
    {
        "store_id": 1,
        "user_id": 7,  (optional, default: caller)
        "items": [{"product_id": 3, "quantity": 2, "unit_price_cents": 1999}],
        "expected_total_cents": 3998  (optional)
    }

    Returns:
        201: {sale, lines}
        400: Invalid input, InsufficientStock or AmountMismatch
        403: Client creating a sale for someone else
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "store_id", "items")

        user_id = data.get("user_id")
        user_id = g.identity.user_id if user_id is None else positive_int("user_id", user_id)
        ensure_self_or_staff(user_id)

        sale = get_core().sales.create_sale(
            user_id=user_id,
            store_id=positive_int("store_id", data["store_id"]),
            items=data["items"],
            expected_total_cents=data.get("expected_total_cents"),
        )

        return jsonify({
            "sale": sale.to_dict(),
            "lines": [line.to_dict() for line in sale.lines],
        }), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


# =============================================================================
# READS
# =============================================================================

@sales_bp.get("/<int:sale_id>")
@require_identity
def get_sale_route(sale_id: int):
    try:
        sale = get_core().sales.get_sale(sale_id)
        ensure_self_or_staff(sale["user_id"])
        return jsonify({"sale": sale}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@sales_bp.get("/store/<int:store_id>")
@require_identity
@require_role(*STAFF_ROLES)
def list_store_sales_route(store_id: int):
    try:
        limit = optional_int("limit", request.args.get("limit")) or 50
        sales = get_core().sales.list_store_sales(store_id, limit=limit)
        return jsonify({"store_id": store_id, "sales": sales, "count": len(sales)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list store sales")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@sales_bp.get("/user/<int:user_id>")
@require_identity
def list_user_sales_route(user_id: int):
    try:
        ensure_self_or_staff(user_id)
        limit = optional_int("limit", request.args.get("limit")) or 50
        sales = get_core().sales.list_user_sales(user_id, limit=limit)
        return jsonify({"user_id": user_id, "sales": sales, "count": len(sales)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list user sales")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


# =============================================================================
# STATUS (internal)
# =============================================================================

@sales_bp.patch("/<int:sale_id>/status")
@require_identity
@require_role(*STAFF_ROLES)
def update_sale_status_route(sale_id: int):
    """
    Recompute the sale's status from its refunds and apply it.

    The status is never taken from the caller: a supplied status is only
    checked against the one the refund ledger derives.

    Request body (optional):
    {
        "status": "partially_refunded"
    }

    Returns:
        200: {sale, refunded_cents}
        400: Supplied status disagrees with the refund ledger
        404: SaleNotFound
    """
    try:
        data = require_payload(request.get_json(silent=True))
        expected = data.get("status")
        if expected is not None:
            expected = str(expected).strip().lower()

        core = get_core()
        result = core.refunds.resync_sale_status(sale_id, expected_status=expected)
        return jsonify({
            "sale": core.sales.load_sale(sale_id).to_dict(),
            "refunded_cents": result["refunded_cents"],
        }), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update sale status")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500
