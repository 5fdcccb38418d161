# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

# backend/storeledger/routes/stock.py
"""
Stock Ledger API Routes

DESIGN:
- Reads (quantity, store/product listings, summary) go through the read cache
- Availability always reads the source of truth
- Mutations are internal calls: adjust, bulk-update, transfer

SECURITY:
- Identity headers required on every route
- Mutations and movement history restricted to service/manager/admin
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..core import get_core
from ..decorators import require_identity, require_role
from ..errors import CoreError, ValidationError
from ..validation import (
    STAFF_ROLES,
    STOCK_OPERATIONS,
    coerce_int,
    optional_int,
    optional_text,
    positive_int,
    require_fields,
    require_payload,
)


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _flag(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


def _required_arg(name: str) -> int:
    value = request.args.get(name)
    if value in (None, ""):
        raise ValidationError(f"Missing required query parameter: {name}")
    return positive_int(name, value)


# =============================================================================
# READS
# =============================================================================

@stock_bp.get("/availability")
@require_identity
def availability_route():
    """
    Query params: store_id, product_id, quantity (all required)
    """
    try:
        result = get_core().ledger.check_availability(
            _required_arg("store_id"),
            _required_arg("product_id"),
            _required_arg("quantity"),
        )
        return jsonify(result), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check availability")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.get("/<int:store_id>/<int:product_id>")
@require_identity
def get_quantity_route(store_id: int, product_id: int):
    try:
        quantity = get_core().ledger.get_quantity(store_id, product_id)
        return jsonify({"store_id": store_id, "product_id": product_id, "quantity": quantity}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get stock quantity")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.get("/store/<int:store_id>")
@require_identity
def list_store_stock_route(store_id: int):
    """
    Query params: low_stock_only (bool), threshold (int)
    """
    try:
        result = get_core().ledger.list_store_stock(
            store_id,
            low_stock_only=_flag("low_stock_only"),
            threshold=optional_int("threshold", request.args.get("threshold")),
        )
        return jsonify(result), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list store stock")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.get("/product/<int:product_id>")
@require_identity
def list_product_stock_route(product_id: int):
    try:
        items = get_core().ledger.list_product_stock(product_id, include_zero=_flag("include_zero"))
        return jsonify({
            "product_id": product_id,
            "items": items,
            "total_quantity": sum(i["quantity"] for i in items),
        }), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list product stock")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.get("/summary")
@require_identity
def stock_summary_route():
    try:
        summary = get_core().ledger.stock_summary(
            optional_int("store_id", request.args.get("store_id")),
            threshold=optional_int("threshold", request.args.get("threshold")),
        )
        return jsonify(summary), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build stock summary")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.get("/movements")
@require_identity
@require_role(*STAFF_ROLES)
def list_movements_route():
    try:
        movements = get_core().ledger.list_movements(
            store_id=optional_int("store_id", request.args.get("store_id")),
            product_id=optional_int("product_id", request.args.get("product_id")),
            reference_id=optional_text("reference_id", request.args.get("reference_id"), 128),
            limit=optional_int("limit", request.args.get("limit")) or 50,
        )
        return jsonify({"movements": movements, "count": len(movements)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


# =============================================================================
# MUTATIONS (internal)
# =============================================================================

@stock_bp.post("/adjust")
@require_identity
@require_role(*STAFF_ROLES)
def adjust_stock_route():
    """
    Manual stock update.

    Request body:
    {
        "store_id": 1,
        "product_id": 3,
        "quantity": 5,
        "operation": "add" | "subtract" | "set",
        "reason": "Cycle count",  (optional)
        "reference_id": "adj-42"  (optional, replay protection)
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "store_id", "product_id", "quantity", "operation")

        operation = str(data["operation"]).strip().lower()
        if operation not in STOCK_OPERATIONS:
            raise ValidationError(f"operation must be one of: {', '.join(STOCK_OPERATIONS)}")

        result = get_core().ledger.adjust(
            positive_int("store_id", data["store_id"]),
            positive_int("product_id", data["product_id"]),
            coerce_int("quantity", data["quantity"]),
            operation,
            reason=optional_text("reason", data.get("reason")),
            user_id=g.identity.user_id,
            reference_id=optional_text("reference_id", data.get("reference_id"), 128),
        )
        return jsonify(result), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.post("/bulk-update")
@require_identity
@require_role(*STAFF_ROLES)
def bulk_update_route():
    """
    Request body:
    {
        "updates": [
            {"store_id": 1, "product_id": 3, "quantity": 2, "operation": "decrement", "reference_id": "..."},
            {"store_id": 1, "product_id": 4, "quantity": 1, "operation": "restore"}
        ]
    }

    Returns 200 with per-item results; individual failures do not fail the batch.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        result = get_core().ledger.bulk_update(data.get("updates"), user_id=g.identity.user_id)
        return jsonify(result), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to apply bulk stock update")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@stock_bp.post("/transfer")
@require_identity
@require_role(*STAFF_ROLES)
def transfer_stock_route():
    """
    Request body:
    {
        "from_store_id": 1,
        "to_store_id": 2,
        "product_id": 3,
        "quantity": 4,
        "reason": "Rebalance"  (optional)
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "from_store_id", "to_store_id", "product_id", "quantity")

        result = get_core().ledger.transfer(
            positive_int("from_store_id", data["from_store_id"]),
            positive_int("to_store_id", data["to_store_id"]),
            positive_int("product_id", data["product_id"]),
            positive_int("quantity", data["quantity"]),
            reason=optional_text("reason", data.get("reason")),
            user_id=g.identity.user_id,
        )
        return jsonify(result), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transfer stock")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500
