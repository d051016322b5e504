# Overview: Order ingestion; cart validation, pricing, QRIS charge, atomic persist + cash-path stock deduction.

"""
Order Ingestion

Contract: given a cart and a payment method, either persist a Transaction
with its TransactionDetail lines or fail with no side effects.

Flow:
1. Validate cart shape, payment method and role (pure).
2. Batch-read items; unknown ids and shortages are rejected up front.
3. Price with database unit prices and run the fee engine.
4. QRIS: issue the gateway charge before the write unit opens, so the
   persisted order already carries the gateway order id and QR URL and no
   database lock is held across the network call.
5. One write unit: re-read items under lock, deduct stock (CASH status only)
   or re-validate availability (deferred), insert order + lines, commit.
6. After commit, best-effort realtime publishing.

Deferred orders (PENDING) have their stock deducted exactly once later, by
settlement_service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import OperationalError

from ..extensions import db
from ..models import Item, PosSession, Transaction, TransactionDetail, User
from ..models.auth import ROLE_KASIR, ROLE_USER
from ..models.pos import POS_STATUS_CLOSED, POS_STATUS_PAYMENT
from ..models.transactions import (
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_QRIS,
    STATUS_CASH,
    STATUS_PENDING,
    VALID_PAYMENT_METHODS,
)
from kantin.money import money_str
from kantin.time_utils import to_utc_z, utcnow
from .concurrency import (
    Deadline,
    DeadlineExceeded,
    apply_lock_timeout,
    begin_write,
    lock_for_update,
    run_with_retry,
)
from .fee_service import FeeError, calculate_cart_total, calculate_fees, get_fee_settings_cache
from .gateway_service import GatewayError, generate_order_id, get_gateway
from .realtime_service import get_broadcaster
from .stock_service import InsufficientStockError, check_stock_availability, deduct_stock

logger = logging.getLogger(__name__)

MAX_REALTIME_SESSION_ID_LENGTH = 64


class OrderError(Exception):
    """Raised for order operation errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderValidationError(OrderError):
    status_code = 400


class OrderPermissionError(OrderError):
    status_code = 403


class OrderNotFoundError(OrderError):
    status_code = 404


class OrderStateError(OrderError):
    status_code = 409


class PaymentGatewayError(OrderError):
    status_code = 502


class OrderTimeoutError(OrderError):
    status_code = 504


def _check_deadline(deadline: Deadline, stage: str, message: str) -> None:
    try:
        deadline.check(stage)
    except DeadlineExceeded as e:
        raise OrderTimeoutError(message, details={"stage": e.stage, "budget_seconds": e.budget_seconds})


@dataclass(frozen=True)
class CartLine:
    item_id: int
    quantity: int


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_cart(cart) -> list[CartLine]:
    """
    Validate a raw cart payload into CartLines.

    Each entry must be {"itemId": int, "quantity": int > 0}. Entries for the
    same item are merged (one order line per distinct item), keeping the
    position of the first occurrence.
    """
    if not isinstance(cart, list) or not cart:
        raise OrderValidationError("Cart must be a non-empty list of items")

    merged: dict[int, int] = {}
    for index, entry in enumerate(cart):
        if not isinstance(entry, dict):
            raise OrderValidationError("Cart entries must be objects", details={"index": index})
        item_id = entry.get("itemId")
        quantity = entry.get("quantity")
        if not _is_int(item_id) or item_id <= 0:
            raise OrderValidationError("itemId must be a positive integer", details={"index": index})
        if not _is_int(quantity) or quantity <= 0:
            raise OrderValidationError(
                "quantity must be a positive integer",
                details={"index": index, "item_id": item_id},
            )
        merged[item_id] = merged.get(item_id, 0) + quantity

    return [CartLine(item_id=item_id, quantity=qty) for item_id, qty in merged.items()]


def initial_status(role: str, payment_method: str) -> str:
    """
    Role x payment method -> initial order status.

        USER  + any  -> PENDING  (awaits staff approval or gateway)
        KASIR + CASH -> CASH     (paid at the till, stock deducted now)
        KASIR + QRIS -> PENDING  (awaits gateway settlement)
    """
    if payment_method not in VALID_PAYMENT_METHODS:
        raise OrderValidationError(
            f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}"
        )
    if role == ROLE_USER:
        return STATUS_PENDING
    if role == ROLE_KASIR:
        return STATUS_CASH if payment_method == PAYMENT_METHOD_CASH else STATUS_PENDING
    raise OrderValidationError(f"Role {role} cannot create orders", details={"role": role})


def _load_items(ids: list[int], *, lock: bool = False) -> dict[int, Item]:
    query = db.session.query(Item).filter(Item.id.in_(ids))
    if lock:
        query = lock_for_update(query).populate_existing()
    return {item.id: item for item in query.all()}


def create_order(
    user: User,
    cart,
    payment_method: str,
    customer: dict | None = None,
    realtime_session_id: str | None = None,
    *,
    gateway=None,
    fee_settings=None,
    broadcaster=None,
) -> Transaction:
    """
    Create an order.

    Raises:
        OrderValidationError: bad cart / method / role, unknown items
        InsufficientStockError: requested > available (details.items)
        OrderStateError: item prices changed while the order was in flight
        PaymentGatewayError: QRIS charge could not be created
        OrderTimeoutError: order budget exhausted or database busy
    """
    config = current_app.config
    deadline = Deadline(float(config.get("ORDER_TIMEOUT_SECONDS", 8)))
    customer = customer or {}

    lines = parse_cart(cart)
    status = initial_status(user.role, payment_method)
    if realtime_session_id is not None and (
        not isinstance(realtime_session_id, str)
        or not realtime_session_id
        or len(realtime_session_id) > MAX_REALTIME_SESSION_ID_LENGTH
    ):
        raise OrderValidationError("posSessionId must be a non-empty string of at most 64 characters")

    user_id = user.id
    user_role = user.role
    user_email = user.email
    item_ids = [line.item_id for line in lines]
    requests = [(line.item_id, line.quantity) for line in lines]

    # --- Read phase: authoritative items, availability, pricing -------------
    items = _load_items(item_ids)
    unknown = [item_id for item_id in item_ids if item_id not in items]
    if unknown:
        raise OrderValidationError("Unknown item ids", details={"item_ids": unknown})

    shortages = check_stock_availability(requests, items)
    if shortages:
        raise InsufficientStockError(shortages)

    try:
        fee_config = (fee_settings or get_fee_settings_cache()).get()
        gross = calculate_cart_total((items[line.item_id].unit_price, line.quantity) for line in lines)
        breakdown = calculate_fees(gross, payment_method, fee_config)
    except FeeError as e:
        raise OrderValidationError(str(e))

    # Release the connection before the gateway round-trip
    db.session.rollback()

    # --- Gateway phase (QRIS only) ------------------------------------------
    gateway_order_id = None
    charge = None
    if payment_method == PAYMENT_METHOD_QRIS:
        _check_deadline(deadline, "gateway", "Order timed out before payment creation")
        gateway = gateway or get_gateway()
        gateway_order_id = generate_order_id()
        try:
            charge = gateway.create_qris_charge(
                order_id=gateway_order_id,
                gross_amount=breakdown.gross_amount,
                expiry_minutes=fee_config.payment_timeout_minutes,
                customer_name=customer.get("name"),
                customer_email=user_email,
            )
        except GatewayError as e:
            logger.error("QRIS charge failed order_id=%s error=%s", gateway_order_id, e)
            raise PaymentGatewayError(f"Failed to create QRIS payment: {e}", details=e.details)

    if charge is not None and deadline.expired():
        logger.warning("QRIS charge abandoned, order timed out order_id=%s", gateway_order_id)
    _check_deadline(deadline, "persist", "Order timed out before persisting")

    # --- Write phase ---------------------------------------------------------
    lock_timeout = min(float(config.get("ORDER_LOCK_TIMEOUT_SECONDS", 2)), max(deadline.remaining(), 0.001))

    def _op():
        apply_lock_timeout(lock_timeout)
        begin_write()

        locked = _load_items(item_ids, lock=True)
        missing = [item_id for item_id in item_ids if item_id not in locked]
        if missing:
            raise OrderValidationError("Unknown item ids", details={"item_ids": missing})

        current_gross = calculate_cart_total((locked[line.item_id].unit_price, line.quantity) for line in lines)
        if current_gross != breakdown.gross_amount:
            raise OrderStateError(
                "Item prices changed while ordering, please retry",
                details={"expected": money_str(breakdown.gross_amount), "current": money_str(current_gross)},
            )

        now = utcnow()
        snapshots = {}
        if status == STATUS_CASH:
            for line in lines:
                snapshot = deduct_stock(line.item_id, line.quantity)
                snapshots[line.item_id] = (snapshot.before, snapshot.after)
        else:
            late_shortages = check_stock_availability(requests, locked)
            if late_shortages:
                raise InsufficientStockError(late_shortages)
            for line in lines:
                before = locked[line.item_id].stock_quantity
                snapshots[line.item_id] = (before, before - line.quantity)

        pos_session = None
        if realtime_session_id:
            pos_session = db.session.query(PosSession).filter_by(session_id=realtime_session_id).first()
            if pos_session is not None and pos_session.status != POS_STATUS_CLOSED:
                if status == STATUS_CASH:
                    pos_session.status = POS_STATUS_CLOSED
                    pos_session.closed_at = now
                else:
                    pos_session.status = POS_STATUS_PAYMENT

        txn = Transaction(
            user_id=user_id,
            created_by_role=user_role,
            pos_session_id=pos_session.id if pos_session is not None else None,
            realtime_session_id=realtime_session_id,
            payment_method=payment_method,
            status=status,
            gateway_order_id=gateway_order_id,
            gateway_transaction_id=charge.transaction_id if charge else None,
            qris_url=charge.qris_url if charge else None,
            payment_expire_at=charge.expire_at if charge else None,
            customer_name=customer.get("name"),
            customer_location=customer.get("location"),
            notes=customer.get("notes"),
            created_at=now,
            settled_at=now if status == STATUS_CASH else None,
            stock_deducted_at=now if status == STATUS_CASH else None,
            **breakdown.as_model_fields(),
        )
        db.session.add(txn)
        db.session.flush()

        for line in lines:
            item = locked[line.item_id]
            before, after = snapshots[line.item_id]
            db.session.add(TransactionDetail(
                transaction_id=txn.id,
                item_id=line.item_id,
                quantity=line.quantity,
                unit_price=item.unit_price,
                subtotal=item.unit_price * line.quantity,
                stock_before=before,
                stock_after=after,
            ))

        db.session.commit()
        return txn.id

    try:
        txn_id = run_with_retry(_op)
    except OperationalError as e:
        logger.error("Order persist failed order_id=%s error=%s", gateway_order_id, e)
        raise OrderTimeoutError("Database busy, order not created", details={"stage": "persist"})

    txn = db.session.get(Transaction, txn_id)
    logger.info(
        "Order created transaction_id=%s order_id=%s status=%s method=%s gross=%s",
        txn.id, txn.gateway_order_id, txn.status, txn.payment_method, money_str(txn.gross_amount),
    )

    _publish_order(txn, broadcaster or get_broadcaster())
    return txn


def _publish_order(txn: Transaction, broadcaster) -> None:
    """Best-effort realtime side effects of a committed order."""
    try:
        sid = txn.realtime_session_id
        if sid:
            cart = [
                {
                    "itemId": d.item_id,
                    "name": d.item.name if d.item else None,
                    "quantity": d.quantity,
                    "unitPrice": money_str(d.unit_price),
                }
                for d in txn.details
            ]
            broadcaster.publish_cart(sid, cart)
            if txn.status == STATUS_CASH:
                broadcaster.publish_status(
                    sid,
                    POS_STATUS_CLOSED,
                    grossAmount=txn.gross_amount,
                    paymentStatus=txn.status,
                    paidAt=to_utc_z(txn.settled_at),
                    transactionId=txn.id,
                )
            else:
                broadcaster.publish_status(
                    sid,
                    POS_STATUS_PAYMENT,
                    grossAmount=txn.gross_amount,
                    qrisUrl=txn.qris_url,
                    expireAt=to_utc_z(txn.payment_expire_at),
                    paymentStatus=txn.status,
                    transactionId=txn.id,
                )

        if txn.status == STATUS_PENDING:
            broadcaster.notify_pending_order(txn.id, txn.status)
        if txn.stock_deducted_at is not None:
            broadcaster.publish_stock_levels({d.item_id: d.stock_after for d in txn.details})
    except Exception as exc:
        logger.error("Realtime publish after order failed transaction_id=%s error=%s", txn.id, exc)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(transaction_id: int) -> Transaction:
    txn = db.session.get(Transaction, transaction_id)
    if txn is None:
        raise OrderNotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return txn


def list_orders(
    *,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Transaction]:
    query = db.session.query(Transaction)
    if status:
        query = query.filter(Transaction.status == status)
    if date_from:
        query = query.filter(Transaction.created_at >= date_from)
    if date_to:
        query = query.filter(Transaction.created_at <= date_to)
    return (
        query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
