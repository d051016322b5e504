# Overview: Locking, retry, lock-timeout and deadline helpers shared by the write paths.

from __future__ import annotations

import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class DeadlineExceeded(Exception):
    """Raised when an operation runs past its wall-clock budget."""

    def __init__(self, stage: str, budget_seconds: float):
        super().__init__(f"Deadline of {budget_seconds:.1f}s exceeded at {stage}")
        self.stage = stage
        self.budget_seconds = budget_seconds


class Deadline:
    """Wall-clock budget for a multi-step operation."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires

    def check(self, stage: str) -> None:
        if self.expired():
            raise DeadlineExceeded(stage, self.seconds)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the write unit so check-then-mutate sequences are serialized.

    On SQLite this takes the RESERVED lock up front (BEGIN IMMEDIATE); other
    backends rely on lock_for_update row locks. Must run before any read or
    write of the unit of work (apply_lock_timeout may precede it).
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def apply_lock_timeout(seconds: float | None) -> None:
    """
    Bound how long the current unit of work may wait on locks.

    On SQLite call it before begin_write(); the busy timeout is what limits
    the wait for the write lock.
    """
    if not seconds:
        return
    dialect = db.engine.dialect.name
    millis = max(1, int(seconds * 1000))
    if dialect == "postgresql":
        db.session.execute(text(f"SET LOCAL lock_timeout = '{millis}ms'"))
    elif dialect in ("mysql", "mariadb"):
        db.session.execute(text(f"SET SESSION innodb_lock_wait_timeout = {max(1, int(seconds))}"))
    elif dialect == "sqlite":
        # Bounds how long BEGIN IMMEDIATE waits for another writer
        db.session.execute(text(f"PRAGMA busy_timeout = {millis}"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other failure rolls the unit back
    before propagating, so nothing from a failed attempt stays visible.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
