# Overview: Dual-screen POS sessions; relational record lifecycle plus the realtime mirror it drives.

"""
POS Sessions

A cashier opens a session, shares its id with the customer display, edits
the cart, issues a QRIS charge and closes. The PosSession row is the
authority for who opened the session and for its status ordering
(OPEN -> PAYMENT -> CLOSED, forward only). The realtime mirror is updated
after each relational change; a mirror failure is reported but never undoes
the relational change.
"""

from __future__ import annotations

import logging
import uuid

from ..extensions import db
from ..models import PosSession, Transaction, User
from ..models.auth import ROLE_KASIR
from ..models.pos import (
    POS_STATUS_CLOSED,
    POS_STATUS_OPEN,
    POS_STATUS_PAYMENT,
    VALID_POS_STATUSES,
)
from ..models.transactions import PAYMENT_METHOD_QRIS
from kantin.time_utils import to_utc_z, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .realtime_service import (
    CartSnapshotError,
    RealtimeError,
    SessionMirror,
    get_session_mirror,
    normalize_cart,
)

logger = logging.getLogger(__name__)

_STATUS_ORDER = {POS_STATUS_OPEN: 0, POS_STATUS_PAYMENT: 1, POS_STATUS_CLOSED: 2}


class PosSessionError(Exception):
    """Raised for POS session errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message)
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code


def _get_row(session_id: str, *, lock: bool = False) -> PosSession:
    query = db.session.query(PosSession).filter_by(session_id=session_id)
    if lock:
        query = lock_for_update(query).populate_existing()
    row = query.first()
    if row is None:
        raise PosSessionError("Session not found", details={"session_id": session_id}, status_code=404)
    return row


def _require_owner(row: PosSession, actor: User) -> None:
    if actor.role != ROLE_KASIR or row.kasir_id != actor.id:
        raise PosSessionError("Only the owning KASIR can modify this session", status_code=403)


def _mirror_call(action: str, session_id: str, fn, *args, **kwargs) -> bool:
    try:
        fn(*args, **kwargs)
        return True
    except RealtimeError as e:
        logger.error("Realtime mirror update failed action=%s session_id=%s error=%s", action, session_id, e)
        return False


def create_session(kasir: User, *, mirror: SessionMirror | None = None) -> tuple[PosSession, bool]:
    """
    Open a new session for a KASIR.

    Returns (row, mirrored) where mirrored is False if the realtime store
    could not be initialized.
    """
    if kasir.role != ROLE_KASIR:
        raise PosSessionError("Only KASIR can open POS sessions", status_code=403)

    row = PosSession(session_id=str(uuid.uuid4()), kasir_id=kasir.id, status=POS_STATUS_OPEN, created_at=utcnow())
    db.session.add(row)
    db.session.commit()

    mirror = mirror or get_session_mirror()
    mirrored = _mirror_call("create", row.session_id, mirror.create, row.session_id, kasir.id, kasir.name)
    logger.info("POS session opened session_id=%s kasir_id=%s mirrored=%s", row.session_id, kasir.id, mirrored)
    return row, mirrored


def get_session(session_id: str, *, mirror: SessionMirror | None = None) -> dict:
    """Relational record merged with the current mirror snapshot (None if unavailable)."""
    row = _get_row(session_id)
    mirror = mirror or get_session_mirror()
    try:
        snapshot = mirror.get(session_id)
    except RealtimeError as e:
        logger.error("Realtime mirror read failed session_id=%s error=%s", session_id, e)
        snapshot = None

    data = row.to_dict()
    data["mirror"] = snapshot
    return data


def update_cart(session_id: str, cart, actor: User, *, mirror: SessionMirror | None = None) -> dict:
    """Replace the displayed cart; the total is only recomputed while OPEN."""
    row = _get_row(session_id)
    _require_owner(row, actor)
    if row.status == POS_STATUS_CLOSED:
        raise PosSessionError("Session is closed", status_code=409)

    try:
        normalize_cart(cart)
    except CartSnapshotError as e:
        raise PosSessionError(str(e))

    mirror = mirror or get_session_mirror()
    try:
        return mirror.patch_cart(session_id, cart)
    except RealtimeError as e:
        logger.error("Realtime cart update failed session_id=%s error=%s", session_id, e)
        raise PosSessionError("Realtime store unavailable", status_code=503)


def update_status(session_id: str, status: str, actor: User, *, mirror: SessionMirror | None = None) -> tuple[PosSession, bool]:
    """Move the session forward (OPEN -> PAYMENT -> CLOSED)."""
    if status not in VALID_POS_STATUSES:
        raise PosSessionError(f"Invalid status: {status}. Must be one of {VALID_POS_STATUSES}")

    def _op():
        begin_write()
        row = _get_row(session_id, lock=True)
        _require_owner(row, actor)
        if _STATUS_ORDER[status] < _STATUS_ORDER[row.status]:
            raise PosSessionError(f"Cannot move session from {row.status} to {status}", status_code=409)
        row.status = status
        if status == POS_STATUS_CLOSED and row.closed_at is None:
            row.closed_at = utcnow()
        db.session.commit()
        return row

    row = run_with_retry(_op)
    mirror = mirror or get_session_mirror()
    mirrored = _mirror_call("status", session_id, mirror.patch_status, session_id, status)
    return row, mirrored


def attach_payment(session_id: str, transaction_id: int, actor: User, *, mirror: SessionMirror | None = None) -> dict:
    """
    Show a QRIS charge on the customer display and pin the session total to
    the charged amount.
    """
    def _op():
        begin_write()
        row = _get_row(session_id, lock=True)
        _require_owner(row, actor)
        if row.status == POS_STATUS_CLOSED:
            raise PosSessionError("Session is closed", status_code=409)

        txn = db.session.get(Transaction, transaction_id)
        if txn is None:
            raise PosSessionError("Transaction not found", status_code=404)
        if txn.payment_method != PAYMENT_METHOD_QRIS or not txn.qris_url:
            raise PosSessionError("Transaction has no QRIS charge", status_code=409)
        if txn.realtime_session_id != session_id:
            raise PosSessionError("Transaction belongs to another session", status_code=409)

        row.status = POS_STATUS_PAYMENT
        db.session.commit()
        return txn

    txn = run_with_retry(_op)
    mirror = mirror or get_session_mirror()
    try:
        return mirror.patch_status(
            session_id,
            POS_STATUS_PAYMENT,
            qrisUrl=txn.qris_url,
            expireAt=to_utc_z(txn.payment_expire_at),
            grossAmount=txn.gross_amount,
            paymentStatus=txn.status,
            transactionId=txn.id,
        )
    except RealtimeError as e:
        logger.error("Realtime payment attach failed session_id=%s error=%s", session_id, e)
        raise PosSessionError("Realtime store unavailable", status_code=503)


def subscribe(session_id: str, *, mirror: SessionMirror | None = None):
    _get_row(session_id)
    mirror = mirror or get_session_mirror()
    return mirror.subscribe(session_id)
