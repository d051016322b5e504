from __future__ import annotations

from ..extensions import db
from kantin.money import money_str
from kantin.time_utils import to_utc_z


PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_QRIS = "QRIS"

VALID_PAYMENT_METHODS = [PAYMENT_METHOD_CASH, PAYMENT_METHOD_QRIS]

STATUS_PENDING = "PENDING"
STATUS_SETTLEMENT = "SETTLEMENT"
STATUS_CASH = "CASH"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCEL = "CANCEL"
STATUS_EXPIRE = "EXPIRE"
STATUS_REJECTED = "REJECTED"

VALID_STATUSES = [
    STATUS_PENDING,
    STATUS_SETTLEMENT,
    STATUS_CASH,
    STATUS_COMPLETED,
    STATUS_CANCEL,
    STATUS_EXPIRE,
    STATUS_REJECTED,
]


class Transaction(db.Model):
    """
    Order record (append-only financial document).

    Money fields always satisfy:
        gross_amount = payment_fee + net_amount
        net_amount   = platform_fee + mitra_revenue

    After creation only status, settled_at, stock_deducted_at and the
    reconciliation fields change, and only through settlement_service.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.CheckConstraint("gross_amount = payment_fee + net_amount", name="ck_transactions_gross_split"),
        db.CheckConstraint("net_amount = platform_fee + mitra_revenue", name="ck_transactions_net_split"),
        db.CheckConstraint(
            "payment_fee >= 0 AND net_amount >= 0 AND platform_fee >= 0 AND mitra_revenue >= 0",
            name="ck_transactions_non_negative",
        ),
        db.Index("ix_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_by_role = db.Column(db.String(16), nullable=False)

    # Dual-screen linkage
    pos_session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True, index=True)
    realtime_session_id = db.Column(db.String(64), nullable=True)

    # Fee engine outputs
    gross_amount = db.Column(db.Numeric(14, 2), nullable=False)
    payment_fee = db.Column(db.Numeric(14, 2), nullable=False)
    net_amount = db.Column(db.Numeric(14, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(14, 2), nullable=False)
    mitra_revenue = db.Column(db.Numeric(14, 2), nullable=False)

    payment_method = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    # Gateway linkage (QRIS only)
    gateway_order_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    gateway_transaction_id = db.Column(db.String(128), nullable=True)
    qris_url = db.Column(db.String(1024), nullable=True)
    payment_expire_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Customer metadata
    customer_name = db.Column(db.String(255), nullable=True)
    customer_location = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set once, in the same unit of work that deducts stock for every line
    stock_deducted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False, index=True)
    reconciliation_note = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User")
    pos_session = db.relationship("PosSession", backref=db.backref("transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_details: bool = True) -> dict:
        data = {
            "id": self.id,
            "orderId": self.gateway_order_id,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "grossAmount": money_str(self.gross_amount),
            "paymentFee": money_str(self.payment_fee),
            "netAmount": money_str(self.net_amount),
            "platformFee": money_str(self.platform_fee),
            "mitraRevenue": money_str(self.mitra_revenue),
            "qrisUrl": self.qris_url,
            "paymentExpireAt": to_utc_z(self.payment_expire_at),
            "customerName": self.customer_name,
            "customerLocation": self.customer_location,
            "notes": self.notes,
            "userId": self.user_id,
            "posSessionId": self.realtime_session_id,
            "createdAt": to_utc_z(self.created_at),
            "settledAt": to_utc_z(self.settled_at),
            "stockDeducted": self.stock_deducted_at is not None,
            "needsReconciliation": self.needs_reconciliation,
        }
        if include_details:
            data["details"] = [line.to_dict() for line in self.details]
        return data


class TransactionDetail(db.Model):
    """One line per distinct item; price and stock snapshot frozen at order time."""
    __tablename__ = "transaction_details"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "item_id", name="uq_transaction_details_item"),
        db.CheckConstraint("quantity > 0", name="ck_transaction_details_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    subtotal = db.Column(db.Numeric(14, 2), nullable=False)

    stock_before = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)

    transaction = db.relationship(
        "Transaction",
        backref=db.backref("details", lazy=True, order_by="TransactionDetail.id"),
    )
    item = db.relationship("Item")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "itemId": self.item_id,
            "name": self.item.name if self.item else None,
            "quantity": self.quantity,
            "unitPrice": money_str(self.unit_price),
            "subtotal": money_str(self.subtotal),
            "stockBefore": self.stock_before,
            "stockAfter": self.stock_after,
        }
