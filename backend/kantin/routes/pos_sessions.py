# Overview: Flask API routes for dual-screen POS sessions, including the customer display stream.

# backend/kantin/routes/pos_sessions.py
"""
POS Session API Routes

The customer display reads (GET) and streams (Server-Sent Events) a
session without authentication: the session id is an unguessable uuid and
the mirror carries no data beyond what the display shows.
"""

import json
import queue

from flask import Blueprint, Response, request, jsonify, g, current_app, stream_with_context

from ..models.auth import ROLE_KASIR
from ..services import pos_session_service
from ..services.pos_session_service import PosSessionError
from ..services.realtime_service import RealtimeError
from ..decorators import require_auth, require_role


pos_sessions_bp = Blueprint("pos_sessions", __name__, url_prefix="/api/pos/sessions")

STREAM_HEARTBEAT_SECONDS = 15


def _error_response(e: PosSessionError):
    return jsonify({"error": str(e), "details": e.details}), e.status_code


@pos_sessions_bp.post("")
@require_auth
@require_role(ROLE_KASIR)
def create_session_route():
    try:
        row, mirrored = pos_session_service.create_session(g.current_user)
        base_url = current_app.config.get("PUBLIC_BASE_URL", "").rstrip("/")
        return jsonify({
            "session": row.to_dict(),
            "mirrored": mirrored,
            "displayUrl": f"{base_url}/display/{row.session_id}",
        }), 201

    except PosSessionError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create POS session")
        return jsonify({"error": "Internal server error"}), 500


@pos_sessions_bp.get("/<session_id>")
def get_session_route(session_id: str):
    try:
        return jsonify(pos_session_service.get_session(session_id)), 200
    except PosSessionError as e:
        return _error_response(e)


@pos_sessions_bp.patch("/<session_id>")
@require_auth
@require_role(ROLE_KASIR)
def update_session_route(session_id: str):
    """
    Update the displayed cart and/or move the session forward.

    Request body:
    {
        "cart": [{"itemId": 1, "name": "Nasi Goreng", "quantity": 2, "unitPrice": 15000}],
        "status": "CLOSED"
    }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or ("cart" not in data and "status" not in data):
        return jsonify({"error": "cart or status required"}), 400

    try:
        response = {}
        if "cart" in data:
            response["mirror"] = pos_session_service.update_cart(session_id, data["cart"], g.current_user)
        if "status" in data:
            row, mirrored = pos_session_service.update_status(session_id, data["status"], g.current_user)
            response["session"] = row.to_dict()
            response["mirrored"] = mirrored
        return jsonify(response), 200

    except PosSessionError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update POS session")
        return jsonify({"error": "Internal server error"}), 500


@pos_sessions_bp.post("/<session_id>/payment")
@require_auth
@require_role(ROLE_KASIR)
def attach_payment_route(session_id: str):
    """Request body: {"transactionId": 123}"""
    data = request.get_json(silent=True) or {}
    transaction_id = data.get("transactionId")
    if not isinstance(transaction_id, int) or isinstance(transaction_id, bool):
        return jsonify({"error": "transactionId must be an integer"}), 400

    try:
        mirror = pos_session_service.attach_payment(session_id, transaction_id, g.current_user)
        return jsonify({"mirror": mirror}), 200

    except PosSessionError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to attach payment to POS session")
        return jsonify({"error": "Internal server error"}), 500


@pos_sessions_bp.get("/<session_id>/stream")
def stream_session_route(session_id: str):
    """Server-Sent Events: the current snapshot, then one event per mutation."""
    try:
        subscription = pos_session_service.subscribe(session_id)
    except PosSessionError as e:
        return _error_response(e)
    except RealtimeError:
        current_app.logger.exception("Failed to subscribe to POS session")
        return jsonify({"error": "Realtime store unavailable"}), 503

    def generate():
        try:
            while True:
                try:
                    snapshot = subscription.get(timeout=STREAM_HEARTBEAT_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                except RealtimeError:
                    break
                yield f"data: {json.dumps(snapshot)}\n\n"
        finally:
            subscription.close()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
