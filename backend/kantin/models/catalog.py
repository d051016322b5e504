from __future__ import annotations

from ..extensions import db
from kantin.time_utils import to_utc_z


ITEM_STATUS_AVAILABLE = "TERSEDIA"
ITEM_STATUS_SOLD_OUT = "HABIS"


class Item(db.Model):
    """
    Menu item supplied by a mitra (partner).

    stock_quantity is the one hot, contended counter in the system. It is only
    ever changed through services.stock_service.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_items_stock_non_negative"),
        db.CheckConstraint("unit_price >= 0", name="ck_items_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    mitra_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=ITEM_STATUS_AVAILABLE, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    mitra = db.relationship("User", backref=db.backref("items", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mitra_id": self.mitra_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "stock_quantity": self.stock_quantity,
            "status": self.status,
            "updated_at": to_utc_z(self.updated_at),
        }
