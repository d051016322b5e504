# backend/kantin/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/kantin.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///kantin.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment gateway credentials come from the environment, never the database
    MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
    MIDTRANS_CLIENT_KEY = os.environ.get("MIDTRANS_CLIENT_KEY", "")
    MIDTRANS_ENVIRONMENT = os.environ.get("MIDTRANS_ENVIRONMENT", "sandbox")
    MIDTRANS_QRIS_ACQUIRER = os.environ.get("MIDTRANS_QRIS_ACQUIRER", "gopay")
    MIDTRANS_TIMEOUT_SECONDS = float(os.environ.get("MIDTRANS_TIMEOUT_SECONDS", "5"))

    # Fee configuration cache; staleness window is capped at 5 minutes
    FEE_SETTINGS_TTL_SECONDS = min(float(os.environ.get("FEE_SETTINGS_TTL_SECONDS", "300")), 300.0)

    # Wall-clock budgets
    ORDER_TIMEOUT_SECONDS = float(os.environ.get("ORDER_TIMEOUT_SECONDS", "8"))
    ORDER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("ORDER_LOCK_TIMEOUT_SECONDS", "2"))
    WEBHOOK_LOCK_TIMEOUT_SECONDS = float(os.environ.get("WEBHOOK_LOCK_TIMEOUT_SECONDS", "1.5"))

    # Realtime mirror for the customer display
    REALTIME_BACKEND = os.environ.get("REALTIME_BACKEND", "memory")  # memory | firebase
    FIREBASE_DATABASE_URL = os.environ.get("FIREBASE_DATABASE_URL", "")
    FIREBASE_AUTH_TOKEN = os.environ.get("FIREBASE_AUTH_TOKEN", "")
    REALTIME_ASYNC = _env_bool("REALTIME_ASYNC", True)
    REALTIME_PUBLISH_TIMEOUT_SECONDS = float(os.environ.get("REALTIME_PUBLISH_TIMEOUT_SECONDS", "2"))
    REALTIME_WORKERS = int(os.environ.get("REALTIME_WORKERS", "4"))

    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:3000")
