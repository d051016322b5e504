from __future__ import annotations

from ..extensions import db
from kantin.time_utils import to_utc_z


POS_STATUS_OPEN = "OPEN"
POS_STATUS_PAYMENT = "PAYMENT"
POS_STATUS_CLOSED = "CLOSED"

VALID_POS_STATUSES = [POS_STATUS_OPEN, POS_STATUS_PAYMENT, POS_STATUS_CLOSED]


class PosSession(db.Model):
    """
    Relational anchor for a dual-screen session.

    The live cart shown on the customer display is kept in the realtime
    store under pos-sessions/<session_id>; this row only records who opened
    the session and when it ended.
    """
    __tablename__ = "pos_sessions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    kasir_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=POS_STATUS_OPEN, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    kasir = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "kasir_id": self.kasir_id,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "closed_at": to_utc_z(self.closed_at),
        }
