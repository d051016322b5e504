from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from kantin.time_utils import to_utc_z


FEE_SETTINGS_ID = 1

DEFAULT_QRIS_FEE_PERCENT = Decimal("0.7")
DEFAULT_PLATFORM_COMMISSION_PERCENT = Decimal("10")
DEFAULT_PAYMENT_TIMEOUT_MINUTES = 5


class FeeSettings(db.Model):
    """
    Singleton fee configuration (id = 1).

    Read through services.fee_service.FeeSettingsCache; only the settings
    endpoint writes it, and that endpoint invalidates the cache.
    """
    __tablename__ = "fee_settings"
    __table_args__ = (
        db.CheckConstraint("qris_fee_percent >= 0 AND qris_fee_percent <= 100", name="ck_fee_settings_qris_pct"),
        db.CheckConstraint(
            "platform_commission_percent >= 0 AND platform_commission_percent <= 100",
            name="ck_fee_settings_commission_pct",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    qris_fee_percent = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_QRIS_FEE_PERCENT)
    platform_commission_percent = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_PLATFORM_COMMISSION_PERCENT)
    payment_timeout_minutes = db.Column(db.Integer, nullable=False, default=DEFAULT_PAYMENT_TIMEOUT_MINUTES)

    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "qris_fee_percent": str(self.qris_fee_percent),
            "platform_commission_percent": str(self.platform_commission_percent),
            "payment_timeout_minutes": self.payment_timeout_minutes,
            "updated_by_user_id": self.updated_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
        }
