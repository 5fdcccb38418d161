# Overview: Flask API routes for refunds; parses input and returns JSON responses.

# backend/storeledger/routes/refunds.py
"""
Refund API Routes

DESIGN:
- POST records a refund, restores stock and recomputes the sale status
- Full refund when items are omitted
- Reads are served from the read cache

SECURITY:
- Identity headers required on every route
- Clients may only refund and read refunds of their own sales
- Store-wide listings and the restoration queue are staff only
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..core import get_core
from ..decorators import ensure_self_or_staff, require_identity, require_role
from ..errors import CoreError
from ..validation import STAFF_ROLES, optional_int, positive_int, require_fields, require_payload


refunds_bp = Blueprint("refunds", __name__, url_prefix="/api/refunds")


# =============================================================================
# REFUND CREATION
# =============================================================================

@refunds_bp.post("")
@require_identity
def create_refund_route():
    """
    Refund a sale, fully or by items.

    Request body:
    {
        "sale_id": 123,
        "reason": "Damaged on arrival",
        "items": [{"product_id": 3, "quantity": 1}],  (optional; omit for full refund)
        "amount_cents": 1999  (optional)
    }

    Returns:
        201: {refund, sale_status, refunded_cents, pending_restorations}
        400: RefundWindowExpired, AlreadyRefunded, RefundAmountExceeded,
             AmountMismatch or invalid input
        403: Sale belongs to another client
        404: SaleNotFound
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "sale_id", "reason")

        result = get_core().refunds.create_refund(
            positive_int("sale_id", data["sale_id"]),
            user_id=g.identity.user_id,
            role=g.identity.role,
            reason=data["reason"],
            items=data.get("items"),
            amount_cents=data.get("amount_cents"),
        )
        return jsonify(result.to_dict()), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create refund")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


# =============================================================================
# READS
# =============================================================================

@refunds_bp.get("/<int:refund_id>")
@require_identity
def get_refund_route(refund_id: int):
    try:
        refund = get_core().refunds.get_refund(refund_id)
        if g.identity.user_id != refund["created_by_user_id"]:
            ensure_self_or_staff(refund["user_id"])
        return jsonify({"refund": refund}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get refund")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@refunds_bp.get("/sale/<int:sale_id>")
@require_identity
def list_sale_refunds_route(sale_id: int):
    try:
        core = get_core()
        ensure_self_or_staff(core.sales.get_sale(sale_id)["user_id"])
        return jsonify(core.refunds.list_sale_refunds(sale_id)), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list sale refunds")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@refunds_bp.get("/store/<int:store_id>")
@require_identity
@require_role(*STAFF_ROLES)
def list_store_refunds_route(store_id: int):
    try:
        limit = optional_int("limit", request.args.get("limit")) or 50
        refunds = get_core().refunds.list_store_refunds(store_id, limit=limit)
        return jsonify({"store_id": store_id, "refunds": refunds, "count": len(refunds)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list store refunds")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@refunds_bp.get("/user/<int:user_id>")
@require_identity
def list_user_refunds_route(user_id: int):
    try:
        ensure_self_or_staff(user_id)
        limit = optional_int("limit", request.args.get("limit")) or 50
        refunds = get_core().refunds.list_user_refunds(user_id, limit=limit)
        return jsonify({"user_id": user_id, "refunds": refunds, "count": len(refunds)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list user refunds")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


# =============================================================================
# RESTORATION QUEUE (staff)
# =============================================================================

@refunds_bp.get("/pending-restorations")
@require_identity
@require_role(*STAFF_ROLES)
def list_pending_restorations_route():
    try:
        include_resolved = request.args.get("include_resolved", "").lower() in ("1", "true", "yes")
        rows = get_core().refunds.list_pending_restorations(include_resolved=include_resolved)
        return jsonify({"pending_restorations": rows, "count": len(rows)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list pending restorations")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500


@refunds_bp.post("/pending-restorations/replay")
@require_identity
@require_role(*STAFF_ROLES)
def replay_pending_restorations_route():
    try:
        data = require_payload(request.get_json(silent=True))
        limit = optional_int("limit", data.get("limit")) or 100
        return jsonify(get_core().refunds.replay_pending_restorations(limit=limit)), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to replay pending restorations")
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error"}), 500
