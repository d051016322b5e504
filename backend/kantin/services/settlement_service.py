# Overview: Settlement state machine; webhook processing, manual approve/reject, gateway status sync.

"""
Settlement State Machine

| From    | Signal                     | To         | Side effect                  |
|---------|----------------------------|------------|------------------------------|
| PENDING | capture + fraud accept     | SETTLEMENT | deduct stock (once)          |
| PENDING | settlement                 | SETTLEMENT | deduct stock (once)          |
| PENDING | pending                    | PENDING    | none                         |
| PENDING | deny / cancel              | CANCEL     | none                         |
| PENDING | expire                     | EXPIRE     | none                         |
| PENDING | manual approve (KASIR)     | COMPLETED  | deduct stock if not yet done |
| PENDING | manual reject (KASIR)      | REJECTED   | restore stock if deducted    |

Only PENDING orders move. Every other status is terminal for this path.

IDEMPOTENCY: the status is re-read under a row lock (BEGIN IMMEDIATE on
SQLite) in the same unit that updates it, and stock is deducted only when
that read says PENDING and stock_deducted_at is unset. A duplicate delivery
that loses the race observes SETTLEMENT and does nothing.

FAILURE SPLIT (webhook):
- hard: bad signature (403), unknown order (404); nothing is touched
- soft: anything after that; captured in SettlementResult.errors, logged,
  and acknowledged with 200 so the gateway stops retrying
Per-line stock shortages at settlement time do not block the status change
(the money has already moved); they are written to reconciliation_note and
the order is flagged needs_reconciliation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import PosSession, Transaction, User
from ..models.auth import ROLE_KASIR
from ..models.pos import POS_STATUS_CLOSED
from ..models.transactions import (
    PAYMENT_METHOD_QRIS,
    STATUS_CANCEL,
    STATUS_COMPLETED,
    STATUS_EXPIRE,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SETTLEMENT,
)
from kantin.money import money_str, to_decimal
from kantin.time_utils import parse_gateway_datetime, to_utc_z, utcnow
from .concurrency import apply_lock_timeout, begin_write, lock_for_update, run_with_retry
from .gateway_service import GatewayError, get_gateway
from .order_service import (
    OrderNotFoundError,
    OrderPermissionError,
    OrderStateError,
    PaymentGatewayError,
)
from .realtime_service import get_broadcaster
from .stock_service import InsufficientStockError, StockError, deduct_stock, get_stock_levels, restore_stock

logger = logging.getLogger(__name__)

SOURCE_WEBHOOK = "webhook"
SOURCE_SYNC = "sync"


def map_gateway_status(transaction_status: str | None, fraud_status: str | None = None) -> tuple[str | None, bool]:
    """
    Gateway signal -> (target status, deduct stock).

    A target of None means the signal does not move the order.
    """
    if transaction_status == "capture":
        if fraud_status == "accept":
            return STATUS_SETTLEMENT, True
        return None, False
    if transaction_status == "settlement":
        return STATUS_SETTLEMENT, True
    if transaction_status == "pending":
        return STATUS_PENDING, False
    if transaction_status in ("deny", "cancel"):
        return STATUS_CANCEL, False
    if transaction_status == "expire":
        return STATUS_EXPIRE, False
    return None, False


@dataclass
class SettlementResult:
    """Outcome of one settlement attempt; errors is the soft-failure channel."""
    order_id: str | None
    transaction_id: int | None = None
    old_status: str | None = None
    new_status: str | None = None
    changed: bool = False
    stock_deducted: bool = False
    stock_levels: dict = field(default_factory=dict)
    line_failures: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "transactionId": self.transaction_id,
            "oldStatus": self.old_status,
            "newStatus": self.new_status,
            "changed": self.changed,
            "stockDeducted": self.stock_deducted,
            "lineFailures": self.line_failures,
            "errors": self.errors,
        }


def _locked_transaction(transaction_id: int) -> Transaction:
    txn = (
        lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id))
        .populate_existing()
        .first()
    )
    if txn is None:
        raise OrderNotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return txn


def _close_pos_session(txn: Transaction, now) -> None:
    if txn.pos_session_id is None:
        return
    pos = db.session.get(PosSession, txn.pos_session_id)
    if pos is not None and pos.status != POS_STATUS_CLOSED:
        pos.status = POS_STATUS_CLOSED
        pos.closed_at = now


def _append_note(txn: Transaction, notes: list[str]) -> None:
    if not notes:
        return
    joined = "; ".join(notes)
    txn.reconciliation_note = f"{txn.reconciliation_note}; {joined}" if txn.reconciliation_note else joined
    txn.needs_reconciliation = True


def _deduct_lines_best_effort(txn: Transaction, result: SettlementResult) -> None:
    """Deduct every line, continuing past failures; failures land in result.line_failures."""
    for line in txn.details:
        try:
            snapshot = deduct_stock(line.item_id, line.quantity)
            result.stock_levels[line.item_id] = snapshot.after
        except InsufficientStockError as e:
            shortage = e.shortages[0]
            result.line_failures.append(
                f"item {line.item_id} short: available {shortage['available']}, requested {line.quantity}"
            )
        except StockError as e:
            result.line_failures.append(f"item {line.item_id}: {e}")


def apply_gateway_status(
    transaction_id: int,
    transaction_status: str | None,
    fraud_status: str | None = None,
    *,
    settlement_time: str | None = None,
    gross_amount: str | None = None,
    gateway_transaction_id: str | None = None,
    source: str = SOURCE_WEBHOOK,
    lock_timeout: float | None = None,
) -> SettlementResult:
    """
    Apply one gateway status signal to an order inside a single write unit.

    Returns a SettlementResult describing what changed; raises only for
    infrastructure failures (callers decide whether those are soft).
    """
    target, deduct = map_gateway_status(transaction_status, fraud_status)

    def _op():
        apply_lock_timeout(lock_timeout)
        begin_write()

        txn = _locked_transaction(transaction_id)
        result = SettlementResult(
            order_id=txn.gateway_order_id,
            transaction_id=txn.id,
            old_status=txn.status,
            new_status=txn.status,
        )
        notes = []

        if gross_amount is not None:
            try:
                reported = to_decimal(gross_amount)
            except (ValueError, ArithmeticError):
                reported = None
            if reported is None or reported != to_decimal(txn.gross_amount):
                notes.append(
                    f"{source}: gross amount {gross_amount} differs from order {money_str(txn.gross_amount)}"
                )

        if target is None:
            logger.info(
                "Settlement signal ignored order_id=%s status=%s transaction_status=%s fraud_status=%s",
                txn.gateway_order_id, txn.status, transaction_status, fraud_status,
            )
        elif txn.status != STATUS_PENDING:
            logger.info(
                "Settlement signal for non-pending order ignored order_id=%s status=%s target=%s",
                txn.gateway_order_id, txn.status, target,
            )
        elif target != STATUS_PENDING:
            now = utcnow()
            txn.status = target
            if gateway_transaction_id and not txn.gateway_transaction_id:
                txn.gateway_transaction_id = gateway_transaction_id

            if deduct and txn.stock_deducted_at is None:
                _deduct_lines_best_effort(txn, result)
                txn.stock_deducted_at = now
                result.stock_deducted = True
                notes.extend(f"{source}: {failure}" for failure in result.line_failures)

            if target == STATUS_SETTLEMENT:
                try:
                    txn.settled_at = parse_gateway_datetime(settlement_time) or now
                except ValueError:
                    txn.settled_at = now

            _close_pos_session(txn, now)
            result.new_status = target
            result.changed = True

        _append_note(txn, notes)
        db.session.commit()

        logger.info(
            "Settlement processed source=%s order_id=%s old_status=%s new_status=%s "
            "stock_deducted=%s line_failures=%s reconciliation=%s",
            source, result.order_id, result.old_status, result.new_status,
            result.stock_deducted, result.line_failures, bool(notes),
        )
        if result.line_failures:
            logger.error(
                "Stock deduction failures during settlement order_id=%s failures=%s",
                result.order_id, result.line_failures,
            )
        return result

    return run_with_retry(_op)


def handle_notification(payload: dict, *, gateway=None, broadcaster=None) -> SettlementResult:
    """
    Process a gateway webhook notification.

    Raises (hard failures, no state change):
        InvalidSignatureError: signature missing or wrong
        OrderNotFoundError: no order with this gateway order id
    Everything else is reported through SettlementResult.errors.
    """
    gateway = gateway or get_gateway()
    gateway.require_valid_signature(payload)

    order_id = payload.get("order_id")
    txn = db.session.query(Transaction).filter_by(gateway_order_id=order_id).first()
    if txn is None:
        logger.error("Webhook for unknown order order_id=%s", order_id)
        raise OrderNotFoundError("Transaction not found", details={"order_id": order_id})
    transaction_id = txn.id

    logger.info(
        "Webhook received order_id=%s transaction_status=%s fraud_status=%s",
        order_id, payload.get("transaction_status"), payload.get("fraud_status"),
    )

    try:
        result = apply_gateway_status(
            transaction_id,
            payload.get("transaction_status"),
            payload.get("fraud_status"),
            settlement_time=payload.get("settlement_time"),
            gross_amount=payload.get("gross_amount"),
            gateway_transaction_id=payload.get("transaction_id"),
            source=SOURCE_WEBHOOK,
            lock_timeout=current_app.config.get("WEBHOOK_LOCK_TIMEOUT_SECONDS"),
        )
    except Exception as e:
        logger.exception("Webhook processing failed order_id=%s", order_id)
        return SettlementResult(order_id=order_id, transaction_id=transaction_id, errors=[str(e)])

    _publish_settlement(result, broadcaster or get_broadcaster())
    return result


def sync_gateway_status(transaction_id: int, *, gateway=None, broadcaster=None) -> SettlementResult:
    """
    Pull the current status of a QRIS order from the gateway and apply it.

    Covers missed webhooks; the answer comes from an authenticated
    server-to-server call so no signature is involved.
    """
    txn = db.session.get(Transaction, transaction_id)
    if txn is None:
        raise OrderNotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    if txn.payment_method != PAYMENT_METHOD_QRIS or not txn.gateway_order_id:
        raise OrderStateError("Only QRIS orders can be synced with the gateway")
    order_id = txn.gateway_order_id

    gateway = gateway or get_gateway()
    try:
        body = gateway.get_status(order_id)
    except GatewayError as e:
        raise PaymentGatewayError(f"Failed to check payment status: {e}", details=e.details)

    result = apply_gateway_status(
        transaction_id,
        body.get("transaction_status"),
        body.get("fraud_status"),
        settlement_time=body.get("settlement_time"),
        gross_amount=body.get("gross_amount"),
        gateway_transaction_id=body.get("transaction_id"),
        source=SOURCE_SYNC,
    )
    _publish_settlement(result, broadcaster or get_broadcaster())
    return result


# =============================================================================
# MANUAL ACTIONS
# =============================================================================

def _require_kasir(actor: User, action: str) -> None:
    if actor is None or actor.role != ROLE_KASIR:
        raise OrderPermissionError(f"Only KASIR can {action} orders")


def approve_order(transaction_id: int, actor: User, *, broadcaster=None) -> Transaction:
    """
    PENDING -> COMPLETED, deducting stock if not already deducted.

    Unlike the webhook path a shortage here refuses the approval as a whole:
    staff are present and can adjust the order.
    """
    _require_kasir(actor, "approve")
    actor_id = actor.id

    def _op():
        begin_write()
        txn = _locked_transaction(transaction_id)
        if txn.status != STATUS_PENDING:
            raise OrderStateError(
                f"Cannot approve transaction in status {txn.status}",
                details={"status": txn.status},
            )

        levels = {}
        if txn.stock_deducted_at is None:
            shortages = []
            for line in txn.details:
                try:
                    levels[line.item_id] = deduct_stock(line.item_id, line.quantity).after
                except InsufficientStockError as e:
                    shortages.extend(e.shortages)
            if shortages:
                raise InsufficientStockError(shortages)
            txn.stock_deducted_at = utcnow()

        old_status = txn.status
        txn.status = STATUS_COMPLETED
        txn.settled_at = utcnow()
        _close_pos_session(txn, txn.settled_at)
        db.session.commit()

        logger.info(
            "Order approved transaction_id=%s old_status=%s new_status=%s actor_id=%s stock_deducted=%s",
            txn.id, old_status, txn.status, actor_id, bool(levels),
        )
        return txn.id, levels

    txn_id, levels = run_with_retry(_op)
    txn = db.session.get(Transaction, txn_id)
    _publish_manual(txn, levels, broadcaster or get_broadcaster())
    return txn


def reject_order(transaction_id: int, actor: User, reason: str | None = None, *, broadcaster=None) -> Transaction:
    """PENDING -> REJECTED, restoring stock if it had been deducted."""
    _require_kasir(actor, "reject")
    actor_id = actor.id
    actor_name = actor.name

    def _op():
        begin_write()
        txn = _locked_transaction(transaction_id)
        if txn.status != STATUS_PENDING:
            raise OrderStateError(
                f"Cannot reject transaction in status {txn.status}",
                details={"status": txn.status},
            )

        levels = {}
        if txn.stock_deducted_at is not None:
            for line in txn.details:
                levels[line.item_id] = restore_stock(line.item_id, line.quantity).after
            txn.stock_deducted_at = None

        txn.status = STATUS_REJECTED
        note = f"Rejected by {actor_name}" + (f": {reason}" if reason else "")
        txn.reconciliation_note = f"{txn.reconciliation_note}; {note}" if txn.reconciliation_note else note
        _close_pos_session(txn, utcnow())
        db.session.commit()

        logger.info(
            "Order rejected transaction_id=%s actor_id=%s stock_restored=%s reason=%s",
            txn.id, actor_id, bool(levels), reason,
        )
        return txn.id, levels

    txn_id, levels = run_with_retry(_op)
    txn = db.session.get(Transaction, txn_id)
    _publish_manual(txn, levels, broadcaster or get_broadcaster())
    return txn


# =============================================================================
# REALTIME
# =============================================================================

def _publish_settlement(result: SettlementResult, broadcaster) -> None:
    if not result.changed:
        return
    try:
        txn = db.session.get(Transaction, result.transaction_id)
        sid = txn.realtime_session_id
        if result.new_status == STATUS_SETTLEMENT:
            broadcaster.publish_status(
                sid,
                POS_STATUS_CLOSED,
                paymentStatus=STATUS_SETTLEMENT,
                paidAt=to_utc_z(txn.settled_at),
                transactionId=txn.id,
            )
        else:
            broadcaster.publish_status(sid, POS_STATUS_CLOSED, paymentStatus=result.new_status)

        broadcaster.notify_pending_order(txn.id, result.new_status)
        if result.stock_levels:
            broadcaster.publish_stock_levels(get_stock_levels(result.stock_levels))
    except Exception as exc:
        logger.error("Realtime publish after settlement failed order_id=%s error=%s", result.order_id, exc)


def _publish_manual(txn: Transaction, levels: dict, broadcaster) -> None:
    try:
        broadcaster.publish_status(
            txn.realtime_session_id,
            POS_STATUS_CLOSED,
            paymentStatus=txn.status,
            paidAt=to_utc_z(txn.settled_at),
            transactionId=txn.id,
        )
        broadcaster.notify_pending_order(txn.id, txn.status)
        if levels:
            broadcaster.publish_stock_levels(get_stock_levels(levels))
    except Exception as exc:
        logger.error("Realtime publish after manual action failed transaction_id=%s error=%s", txn.id, exc)
