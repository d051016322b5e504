from __future__ import annotations

from flask import Blueprint, jsonify, request, g, current_app

from ..decorators import require_auth, require_role
from ..extensions import db
from ..models import FeeSettings
from ..models.auth import ROLE_KASIR, ROLE_PENGURUS
from ..models.settings import FEE_SETTINGS_ID
from ..services import fee_service
from ..services.fee_service import FeeError


settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.get("/fees")
@require_auth
@require_role(ROLE_PENGURUS, ROLE_KASIR)
def get_fee_settings():
    row = db.session.get(FeeSettings, FEE_SETTINGS_ID)
    if row is None:
        return jsonify({"error": "Fee settings not initialized"}), 404
    return jsonify({"settings": row.to_dict()})


@settings_bp.patch("/fees")
@require_auth
@require_role(ROLE_PENGURUS)
def update_fee_settings():
    """
    Request body (any subset):
    {"qrisFeePercent": "0.7", "platformCommissionPercent": "10", "paymentTimeoutMinutes": 5}
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON body"}), 400

    try:
        row = fee_service.update_fee_settings(
            user_id=g.current_user.id,
            qris_fee_percent=payload.get("qrisFeePercent"),
            platform_commission_percent=payload.get("platformCommissionPercent"),
            payment_timeout_minutes=payload.get("paymentTimeoutMinutes"),
        )
    except FeeError as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update fee settings")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("Fee settings updated user_id=%s", g.current_user.id)
    return jsonify({"settings": row.to_dict()})
