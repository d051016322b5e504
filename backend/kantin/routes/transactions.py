# Overview: Flask API routes for orders; creation, listing, manual approve/reject, gateway sync.

# backend/kantin/routes/transactions.py
"""
Transaction API Routes

DESIGN:
- KASIR and USER create orders; KASIR approves/rejects pending ones
- Money fields are returned as decimal strings
- Known service errors map to their status code with {"error", "details"}
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_KASIR, ROLE_PENGURUS, ROLE_USER
from ..models.transactions import VALID_STATUSES
from ..services import order_service, settlement_service
from ..services.order_service import OrderError
from ..services.stock_service import InsufficientStockError
from ..decorators import require_auth, require_role
from kantin.time_utils import parse_iso_datetime


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


def _error_response(e):
    return jsonify({"error": str(e), "details": e.details}), e.status_code


@transactions_bp.post("")
@require_auth
@require_role(ROLE_KASIR, ROLE_USER)
def create_transaction_route():
    """
    Create an order.

    Request body:
    {
        "items": [{"itemId": 1, "quantity": 2}],
        "paymentMethod": "QRIS",
        "customerName": "Budi",       (optional)
        "customerLocation": "Meja 4", (optional)
        "notes": "tanpa sambal",      (optional)
        "posSessionId": "..."         (optional, dual-screen session)
    }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON body"}), 400

    try:
        txn = order_service.create_order(
            g.current_user,
            data.get("items"),
            data.get("paymentMethod"),
            customer={
                "name": data.get("customerName"),
                "location": data.get("customerLocation"),
                "notes": data.get("notes"),
            },
            realtime_session_id=data.get("posSessionId"),
        )
        return jsonify(txn.to_dict()), 201

    except InsufficientStockError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except OrderError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("")
@require_auth
@require_role(ROLE_KASIR, ROLE_PENGURUS)
def list_transactions_route():
    """
    List orders, newest first.

    Query params: status, from, to (ISO-8601), limit (max 500), offset
    """
    status = request.args.get("status")
    if status and status not in VALID_STATUSES:
        return jsonify({"error": f"Invalid status. Must be one of {VALID_STATUSES}"}), 400

    try:
        date_from = parse_iso_datetime(request.args.get("from"))
        date_to = parse_iso_datetime(request.args.get("to"))
        limit = min(int(request.args.get("limit", 100)), 500)
        offset = max(int(request.args.get("offset", 0)), 0)
    except ValueError:
        return jsonify({"error": "Invalid query parameters"}), 400

    txns = order_service.list_orders(
        status=status, date_from=date_from, date_to=date_to, limit=limit, offset=offset
    )
    return jsonify({"transactions": [t.to_dict(include_details=False) for t in txns]}), 200


@transactions_bp.get("/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    try:
        txn = order_service.get_order(transaction_id)
    except OrderError as e:
        return _error_response(e)

    # Customers only see their own orders
    if g.current_user.role == ROLE_USER and txn.user_id != g.current_user.id:
        return jsonify({"error": "Transaction not found", "details": {}}), 404

    return jsonify(txn.to_dict()), 200


@transactions_bp.post("/<int:transaction_id>/approve")
@require_auth
@require_role(ROLE_KASIR)
def approve_transaction_route(transaction_id: int):
    try:
        txn = settlement_service.approve_order(transaction_id, g.current_user)
        return jsonify(txn.to_dict()), 200

    except InsufficientStockError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except OrderError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/reject")
@require_auth
@require_role(ROLE_KASIR)
def reject_transaction_route(transaction_id: int):
    """Request body: {"reason": "..."} (optional)"""
    data = request.get_json(silent=True) or {}
    try:
        txn = settlement_service.reject_order(transaction_id, g.current_user, data.get("reason"))
        return jsonify(txn.to_dict()), 200

    except OrderError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/sync")
@require_auth
@require_role(ROLE_KASIR, ROLE_PENGURUS)
def sync_transaction_route(transaction_id: int):
    """Pull the gateway's current status for a QRIS order and apply it."""
    try:
        result = settlement_service.sync_gateway_status(transaction_id)
        txn = order_service.get_order(transaction_id)
        return jsonify({"transaction": txn.to_dict(), "settlement": result.to_dict()}), 200

    except OrderError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync transaction status")
        return jsonify({"error": "Internal server error"}), 500
