# backend/kantin/routes/system.py
"""
System health endpoint.

Checks the database, the fee settings singleton and the realtime store.
The realtime store is best-effort, so its failure only degrades the status.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import FeeSettings, Item, Transaction
from ..models.settings import FEE_SETTINGS_ID
from ..models.transactions import STATUS_PENDING
from kantin.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        item_count = db.session.query(Item).count()
        pending_count = db.session.query(Transaction).filter_by(status=STATUS_PENDING).count()
        reconciliation_count = db.session.query(Transaction).filter_by(needs_reconciliation=True).count()

        return {
            "status": "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {
                "items": item_count,
                "pending_transactions": pending_count,
                "needs_reconciliation": reconciliation_count,
            }
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Database error"
        }


def check_fee_settings_health() -> dict:
    start_time = time.time()
    try:
        row = db.session.get(FeeSettings, FEE_SETTINGS_ID)
        if row is None:
            return {
                "status": "unhealthy",
                "latency_ms": _elapsed_ms(start_time),
                "error": "Fee settings not initialized. Run: flask system init",
            }
        return {"status": "healthy", "latency_ms": _elapsed_ms(start_time)}
    except Exception:
        current_app.logger.exception("Fee settings health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": _elapsed_ms(start_time),
            "error": "Fee settings error"
        }


def check_realtime_health() -> dict:
    start_time = time.time()
    try:
        store = current_app.extensions["realtime_broadcaster"].mirror.store
        store.get("health-check")
        return {
            "status": "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {"backend": current_app.config.get("REALTIME_BACKEND")},
        }
    except Exception:
        current_app.logger.exception("Realtime store health check failed")
        return {
            "status": "degraded",
            "latency_ms": _elapsed_ms(start_time),
            "warning": "Realtime store unreachable",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database or fee settings unhealthy
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "fee_settings": check_fee_settings_health(),
        "realtime": check_realtime_health(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": _elapsed_ms(start_time),
        "checks": checks,
    }, http_status
