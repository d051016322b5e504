# Overview: Midtrans payment notification endpoint.

# backend/kantin/routes/webhooks.py
"""
Payment Webhook Routes

Hard failures answer non-200 so nothing is acknowledged by mistake:
- 400 body is not a JSON object
- 403 signature missing or invalid (no state change)
- 404 unknown order id (no state change)
Everything after verification + lookup is acknowledged with 200; internal
problems are logged and reported in the body, never as a retryable status.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import settlement_service
from ..services.gateway_service import GatewayConfigurationError, InvalidSignatureError
from ..services.order_service import OrderNotFoundError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/midtrans")
def midtrans_notification_route():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON body"}), 400

    try:
        result = settlement_service.handle_notification(payload)
    except InvalidSignatureError as e:
        return jsonify({"error": str(e)}), 403
    except OrderNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except GatewayConfigurationError:
        current_app.logger.error("Webhook rejected, gateway not configured")
        return jsonify({"error": "Payment gateway not configured"}), 500
    except Exception:
        # Processing errors come back in result.errors; anything here failed before the order was found
        current_app.logger.exception("Failed to look up Midtrans notification")
        return jsonify({"error": "Internal server error"}), 500

    if not result.ok:
        return jsonify({"status": "ERROR", "message": "; ".join(result.errors)}), 200
    return jsonify({"status": "OK", "transactionStatus": result.new_status}), 200


@webhooks_bp.get("/midtrans")
def midtrans_health_route():
    return jsonify({"status": "OK", "message": "Midtrans webhook endpoint is active"}), 200
