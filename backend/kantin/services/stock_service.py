# Overview: Stock ledger; check-then-decrement / increment on item stock counters.

"""
Stock Ledger

Item.stock_quantity is the only hot shared counter. All mutation goes
through deduct_stock / restore_stock, which run inside the caller's unit of
work (they flush, never commit) so they share its isolation and rollback.

Invariants:
- stock_quantity never goes negative (guarded UPDATE + DB CHECK constraint)
- deduct compares against the current persisted value, never a cached one
- callers guard against deducting the same order line twice
  (Transaction.stock_deducted_at)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import update

from ..extensions import db
from ..models import Item
from ..models.catalog import ITEM_STATUS_AVAILABLE, ITEM_STATUS_SOLD_OUT
from .concurrency import lock_for_update


class StockError(Exception):
    """Raised for stock operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStockError(StockError):
    """Requested quantity exceeds what is on hand."""
    status_code = 409

    def __init__(self, shortages: list[dict]):
        summary = ", ".join(
            f"{s['name']} (available: {s['available']}, requested: {s['requested']})"
            for s in shortages
        )
        super().__init__(f"Insufficient stock: {summary}", details={"items": shortages})
        self.shortages = shortages


@dataclass(frozen=True)
class StockSnapshot:
    item_id: int
    before: int
    after: int

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, "before": self.before, "after": self.after}


def _shortage(item: Item | None, item_id: int, available: int, requested: int) -> dict:
    return {
        "item_id": item_id,
        "name": item.name if item is not None else "Unknown",
        "available": available,
        "requested": requested,
    }


def _validate_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise StockError("Quantity must be a positive integer", details={"quantity": quantity})


def _locked_item(item_id: int) -> Item:
    item = lock_for_update(db.session.query(Item).filter_by(id=item_id)).populate_existing().first()
    if item is None:
        raise StockError(f"Item {item_id} not found", details={"item_id": item_id})
    return item


def deduct_stock(item_id: int, quantity: int) -> StockSnapshot:
    """
    Decrement stock if enough is on hand.

    Runs inside the caller's transaction. The UPDATE carries the availability
    predicate itself, so a concurrent writer that got there first turns this
    call into a shortage instead of a negative counter.

    Raises:
        StockError: unknown item or bad quantity
        InsufficientStockError: current stock < quantity
    """
    _validate_quantity(quantity)
    item = _locked_item(item_id)
    before = item.stock_quantity

    if before < quantity:
        raise InsufficientStockError([_shortage(item, item_id, before, quantity)])

    result = db.session.execute(
        update(Item)
        .where(Item.id == item_id, Item.stock_quantity >= quantity)
        .values(stock_quantity=Item.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(item)
        raise InsufficientStockError([_shortage(item, item_id, item.stock_quantity, quantity)])

    db.session.refresh(item)
    after = item.stock_quantity
    if after == 0 and item.status != ITEM_STATUS_SOLD_OUT:
        item.status = ITEM_STATUS_SOLD_OUT
    db.session.flush()

    return StockSnapshot(item_id=item_id, before=after + quantity, after=after)


def restore_stock(item_id: int, quantity: int) -> StockSnapshot:
    """Unconditionally add stock back (cancelled/rejected orders, restocks)."""
    _validate_quantity(quantity)
    item = _locked_item(item_id)

    db.session.execute(
        update(Item)
        .where(Item.id == item_id)
        .values(stock_quantity=Item.stock_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(item)
    after = item.stock_quantity
    if after > 0 and item.status == ITEM_STATUS_SOLD_OUT:
        item.status = ITEM_STATUS_AVAILABLE
    db.session.flush()

    return StockSnapshot(item_id=item_id, before=after - quantity, after=after)


def check_stock_availability(requests: Iterable[tuple[int, int]], items: dict[int, Item] | None = None) -> list[dict]:
    """
    Report every (item_id, quantity) request that cannot be served.

    Returns an empty list when everything is available. Unknown items are
    reported with available = 0.
    """
    requests = list(requests)
    if items is None:
        ids = [item_id for item_id, _ in requests]
        items = {i.id: i for i in db.session.query(Item).filter(Item.id.in_(ids)).all()} if ids else {}

    shortages = []
    for item_id, quantity in requests:
        item = items.get(item_id)
        available = item.stock_quantity if item is not None else 0
        if item is None or available < quantity:
            shortages.append(_shortage(item, item_id, available, quantity))
    return shortages


def get_stock_levels(item_ids: Iterable[int]) -> dict[int, int]:
    ids = sorted(set(item_ids))
    if not ids:
        return {}
    rows = db.session.query(Item.id, Item.stock_quantity).filter(Item.id.in_(ids)).all()
    return {row.id: row.stock_quantity for row in rows}
