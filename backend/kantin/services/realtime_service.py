# Overview: Realtime mirror of POS sessions for the customer display; stores, mirror operations, broadcaster.

"""
Realtime Sync

The customer display mirrors the cashier's session without polling. The
mirror lives in a realtime store under pos-sessions/<session_id> and is a
derived, best-effort cache: it is never read back for money or stock
decisions and may be lost without financial consequence.

Pieces:
- RealtimeStore: get/set/update/transact/delete/subscribe on string paths.
  InMemoryRealtimeStore (single process) and FirebaseRealtimeStore
  (Firebase Realtime Database REST API over httpx).
- SessionMirror: the session protocol (create, patch cart, patch status,
  subscribe). Once a session leaves OPEN the displayed total is pinned.
- RealtimeBroadcaster: fire-and-forget publishing for the order and
  settlement paths. Every failure is logged and swallowed.
"""

from __future__ import annotations

import copy
import json
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import httpx
from flask import current_app

from ..models.pos import (
    POS_STATUS_CLOSED,
    POS_STATUS_OPEN,
    POS_STATUS_PAYMENT,
    VALID_POS_STATUSES,
)
from kantin.money import money_str, to_decimal
from kantin.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

SESSION_ROOT = "pos-sessions"
PENDING_ORDERS_PATH = "pending-orders-trigger"
STOCK_UPDATES_PATH = "stock-updates"

_STATUS_RANK = {POS_STATUS_OPEN: 0, POS_STATUS_PAYMENT: 1, POS_STATUS_CLOSED: 2}

STATUS_EXTRA_FIELDS = ("qrisUrl", "expireAt", "grossAmount", "paymentStatus", "paidAt", "transactionId")


class RealtimeError(Exception):
    """Raised for realtime store/mirror failures."""


class CartSnapshotError(RealtimeError):
    """Cart payload for the display is malformed."""


def session_path(session_id: str) -> str:
    return f"{SESSION_ROOT}/{session_id}"


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class Subscription:
    """
    Push-based snapshot feed for one path.

    The first message is the current snapshot (None if absent); afterwards
    every mutation delivers the new snapshot. There is no history.
    """

    _CLOSED = object()

    def __init__(self, on_close: Callable[["Subscription"], None] | None = None, maxsize: int = 100):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._on_close = on_close
        self.closed = False

    def push(self, snapshot: Any) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(copy.deepcopy(snapshot))
        except queue.Full:
            # Slow consumer: keep only the newest state
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(copy.deepcopy(snapshot))

    def get(self, timeout: float | None = None) -> Any:
        """Next snapshot; raises queue.Empty on timeout, RealtimeError once closed."""
        item = self._queue.get(timeout=timeout)
        if item is self._CLOSED:
            raise RealtimeError("Subscription closed")
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(self._CLOSED)
        except queue.Full:
            pass
        if self._on_close:
            self._on_close(self)


# =============================================================================
# STORES
# =============================================================================

class RealtimeStore:
    """Interface for a path-addressed realtime document store."""

    def get(self, path: str) -> Any:
        raise NotImplementedError

    def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    def update(self, path: str, patch: dict) -> None:
        raise NotImplementedError

    def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace the value at path with fn(current). Returns the new value."""
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def subscribe(self, path: str) -> Subscription:
        raise NotImplementedError


class InMemoryRealtimeStore(RealtimeStore):
    """Thread-safe single-process store; the default backend and the test double."""

    def __init__(self):
        self._data: dict[str, Any] = {}
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = threading.RLock()

    def _notify(self, path: str) -> None:
        snapshot = self._data.get(path)
        for sub in list(self._subscribers.get(path, [])):
            sub.push(snapshot)

    def get(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(path))

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self._data[path] = copy.deepcopy(value)
            self._notify(path)

    def update(self, path: str, patch: dict) -> None:
        with self._lock:
            current = self._data.get(path)
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(copy.deepcopy(patch))
            self._data[path] = merged
            self._notify(path)

    def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            new_value = fn(copy.deepcopy(self._data.get(path)))
            if new_value is None:
                self._data.pop(path, None)
            else:
                self._data[path] = copy.deepcopy(new_value)
            self._notify(path)
            return copy.deepcopy(new_value)

    def delete(self, path: str) -> None:
        with self._lock:
            self._data.pop(path, None)
            self._notify(path)

    def subscribe(self, path: str) -> Subscription:
        with self._lock:
            sub = Subscription(on_close=lambda s: self._unsubscribe(path, s))
            self._subscribers.setdefault(path, []).append(sub)
            sub.push(self._data.get(path))
            return sub

    def _unsubscribe(self, path: str, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(path, [])
            if sub in subs:
                subs.remove(sub)


def _apply_stream_event(snapshot: Any, rel_path: str, data: Any, merge: bool) -> Any:
    """Apply a Firebase 'put'/'patch' stream event to a local snapshot."""
    parts = [p for p in rel_path.strip("/").split("/") if p]
    if not parts:
        if merge and isinstance(snapshot, dict) and isinstance(data, dict):
            merged = dict(snapshot)
            merged.update(data)
            return merged
        return data

    root = dict(snapshot) if isinstance(snapshot, dict) else {}
    node = root
    for part in parts[:-1]:
        child = node.get(part)
        child = dict(child) if isinstance(child, dict) else {}
        node[part] = child
        node = child

    leaf = parts[-1]
    if merge and isinstance(node.get(leaf), dict) and isinstance(data, dict):
        merged = dict(node[leaf])
        merged.update(data)
        node[leaf] = merged
    elif data is None:
        node.pop(leaf, None)
    else:
        node[leaf] = data
    return root


class FirebaseRealtimeStore(RealtimeStore):
    """
    Firebase Realtime Database over its REST API.

    transact() uses ETag conditional writes; subscribe() follows the
    Server-Sent Events stream on a background thread.
    """

    MAX_TRANSACT_ATTEMPTS = 5

    def __init__(
        self,
        database_url: str,
        *,
        auth_token: str = "",
        timeout: float = 2.0,
        client: httpx.Client | None = None,
    ):
        if not database_url:
            raise RealtimeError("FIREBASE_DATABASE_URL not configured")
        self.database_url = database_url.rstrip("/")
        self.auth_token = auth_token
        self._timeout = timeout
        self._client = client or httpx.Client(base_url=self.database_url, timeout=timeout)

    def _params(self) -> dict:
        return {"auth": self.auth_token} if self.auth_token else {}

    def _url(self, path: str) -> str:
        return f"/{path.strip('/')}.json"

    def _call(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, self._url(path), params=self._params(), **kwargs)
        except httpx.HTTPError as exc:
            raise RealtimeError(f"Firebase unreachable: {exc}") from exc
        if response.status_code >= 400 and response.status_code != 412:
            raise RealtimeError(f"Firebase {method} {path} failed: HTTP {response.status_code}")
        return response

    def get(self, path: str) -> Any:
        return self._call("GET", path).json()

    def set(self, path: str, value: Any) -> None:
        self._call("PUT", path, json=value)

    def update(self, path: str, patch: dict) -> None:
        self._call("PATCH", path, json=patch)

    def delete(self, path: str) -> None:
        self._call("DELETE", path)

    def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        for _ in range(self.MAX_TRANSACT_ATTEMPTS):
            current = self._call("GET", path, headers={"X-Firebase-ETag": "true"})
            etag = current.headers.get("ETag")
            new_value = fn(current.json())
            if new_value is None:
                response = self._call("DELETE", path, headers={"if-match": etag} if etag else {})
            else:
                response = self._call("PUT", path, json=new_value, headers={"if-match": etag} if etag else {})
            if response.status_code != 412:
                return new_value
        raise RealtimeError(f"Firebase transaction on {path} kept conflicting")

    def subscribe(self, path: str) -> Subscription:
        stop = threading.Event()
        sub = Subscription(on_close=lambda s: stop.set())
        thread = threading.Thread(target=self._stream, args=(path, sub, stop), daemon=True)
        thread.start()
        return sub

    def _stream(self, path: str, sub: Subscription, stop: threading.Event) -> None:
        snapshot: Any = None
        event_name = None
        try:
            with self._client.stream(
                "GET",
                self._url(path),
                params=self._params(),
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self._timeout, read=None),
            ) as response:
                for line in response.iter_lines():
                    if stop.is_set():
                        break
                    if line.startswith("event:"):
                        event_name = line.split(":", 1)[1].strip()
                    elif line.startswith("data:") and event_name in ("put", "patch"):
                        payload = json.loads(line.split(":", 1)[1].strip())
                        snapshot = _apply_stream_event(
                            snapshot, payload.get("path", "/"), payload.get("data"), event_name == "patch"
                        )
                        sub.push(snapshot)
                    elif event_name in ("cancel", "auth_revoked"):
                        break
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Firebase stream failed path=%s error=%s", path, exc)
        finally:
            sub.close()


def build_realtime_store(config: dict) -> RealtimeStore:
    backend = (config.get("REALTIME_BACKEND") or "memory").lower()
    if backend == "firebase":
        return FirebaseRealtimeStore(
            config.get("FIREBASE_DATABASE_URL", ""),
            auth_token=config.get("FIREBASE_AUTH_TOKEN", ""),
            timeout=float(config.get("REALTIME_PUBLISH_TIMEOUT_SECONDS", 2)),
        )
    if backend == "memory":
        return InMemoryRealtimeStore()
    raise RealtimeError(f"Unknown REALTIME_BACKEND: {backend}")


# =============================================================================
# SESSION MIRROR
# =============================================================================

def normalize_cart(cart: Any) -> list[dict]:
    """
    Validate a cart snapshot for display.

    Accepts {itemId, quantity, unitPrice|hargaSatuan, name|namaBarang}; the
    subtotal is recomputed from quantity and unit price.
    """
    if not isinstance(cart, list):
        raise CartSnapshotError("cart must be a list")
    normalized = []
    for entry in cart:
        if not isinstance(entry, dict):
            raise CartSnapshotError("cart entries must be objects")
        item_id = entry.get("itemId")
        quantity = entry.get("quantity")
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise CartSnapshotError("cart itemId must be an integer")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise CartSnapshotError("cart quantity must be a positive integer")
        raw_price = entry.get("unitPrice", entry.get("hargaSatuan", 0))
        try:
            unit_price = to_decimal(raw_price if raw_price is not None else 0)
        except (InvalidOperation, ValueError):
            raise CartSnapshotError("cart unitPrice must be a number")
        normalized.append({
            "itemId": item_id,
            "name": entry.get("name", entry.get("namaBarang")),
            "quantity": quantity,
            "unitPrice": money_str(unit_price),
            "subtotal": money_str(unit_price * quantity),
        })
    return normalized


def cart_total(cart: list[dict]) -> str:
    total = sum((Decimal(line["subtotal"]) for line in cart), Decimal("0"))
    return money_str(total)


class SessionMirror:
    """Realtime session protocol on top of a RealtimeStore."""

    def __init__(self, store: RealtimeStore):
        self.store = store

    def create(self, session_id: str, kasir_id: int, kasir_name: str) -> dict:
        now = to_utc_z(utcnow())
        record = {
            "sessionId": session_id,
            "kasirId": kasir_id,
            "kasirName": kasir_name,
            "status": POS_STATUS_OPEN,
            "cart": [],
            "grossAmount": "0",
            "createdAt": now,
            "updatedAt": now,
        }
        self.store.set(session_path(session_id), record)
        return record

    def get(self, session_id: str) -> dict | None:
        return self.store.get(session_path(session_id))

    def patch_cart(self, session_id: str, cart: Any) -> dict:
        """
        Replace the cart. The total is recomputed only while the session is
        OPEN; after a charge is issued the displayed total stays pinned.
        """
        lines = normalize_cart(cart)

        def _apply(current):
            if current is None:
                raise RealtimeError(f"Session {session_id} not found")
            current["cart"] = lines
            if current.get("status", POS_STATUS_OPEN) == POS_STATUS_OPEN:
                current["grossAmount"] = cart_total(lines)
            current["updatedAt"] = to_utc_z(utcnow())
            return current

        return self.store.transact(session_path(session_id), _apply)

    def patch_status(self, session_id: str, status: str, **extra) -> dict:
        """Move OPEN -> PAYMENT -> CLOSED, attaching charge/payment fields."""
        if status not in VALID_POS_STATUSES:
            raise RealtimeError(f"Invalid session status: {status}")
        unknown = set(extra) - set(STATUS_EXTRA_FIELDS)
        if unknown:
            raise RealtimeError(f"Unknown session fields: {sorted(unknown)}")

        def _apply(current):
            if current is None:
                raise RealtimeError(f"Session {session_id} not found")
            old = current.get("status", POS_STATUS_OPEN)
            if _STATUS_RANK[status] < _STATUS_RANK.get(old, 0):
                raise RealtimeError(f"Cannot move session from {old} to {status}")
            current["status"] = status
            for key, value in extra.items():
                if value is None:
                    continue
                current[key] = money_str(value) if key == "grossAmount" else value
            current["updatedAt"] = to_utc_z(utcnow())
            return current

        return self.store.transact(session_path(session_id), _apply)

    def subscribe(self, session_id: str) -> Subscription:
        return self.store.subscribe(session_path(session_id))


# =============================================================================
# BROADCASTER
# =============================================================================

class RealtimeBroadcaster:
    """
    Fire-and-forget publisher used by the financial paths.

    Nothing here may fail or delay an order or a settlement: work is handed
    to a small thread pool (or run inline when run_async is False) and every
    exception is logged and dropped. When more than max_pending publishes are
    in flight, new ones are dropped with a warning.
    """

    def __init__(self, mirror: SessionMirror, *, run_async: bool = True, workers: int = 4, max_pending: int = 256):
        self.mirror = mirror
        self.run_async = run_async
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="realtime") if run_async else None
        self._slots = threading.BoundedSemaphore(max_pending)

    def _run(self, action: str, fn: Callable, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as exc:
            logger.error("Realtime publish failed action=%s error=%s", action, exc)

    def _submit(self, action: str, fn: Callable, *args, **kwargs) -> None:
        if not self.run_async:
            self._run(action, fn, *args, **kwargs)
            return
        if not self._slots.acquire(blocking=False):
            logger.warning("Realtime publish dropped, queue full action=%s", action)
            return

        def _task():
            try:
                self._run(action, fn, *args, **kwargs)
            finally:
                self._slots.release()

        try:
            self._executor.submit(_task)
        except RuntimeError as exc:
            self._slots.release()
            logger.error("Realtime publish not scheduled action=%s error=%s", action, exc)

    def publish_cart(self, session_id: str | None, cart: list[dict]) -> None:
        if session_id:
            self._submit("publish_cart", self.mirror.patch_cart, session_id, cart)

    def publish_status(self, session_id: str | None, status: str, **extra) -> None:
        if session_id:
            self._submit("publish_status", self.mirror.patch_status, session_id, status, **extra)

    def notify_pending_order(self, transaction_id: int, status: str) -> None:
        payload = {"transactionId": transaction_id, "status": status, "timestamp": to_utc_z(utcnow())}
        self._submit("notify_pending_order", self.mirror.store.set, PENDING_ORDERS_PATH, payload)

    def publish_stock_levels(self, levels: dict[int, int]) -> None:
        if not levels:
            return
        now = to_utc_z(utcnow())
        patch = {str(item_id): {"stock": stock, "timestamp": now} for item_id, stock in levels.items()}
        self._submit("publish_stock_levels", self.mirror.store.update, STOCK_UPDATES_PATH, patch)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def get_broadcaster() -> RealtimeBroadcaster:
    return current_app.extensions["realtime_broadcaster"]


def get_session_mirror() -> SessionMirror:
    return current_app.extensions["realtime_broadcaster"].mirror


def build_broadcaster(config: dict) -> RealtimeBroadcaster:
    mirror = SessionMirror(build_realtime_store(config))
    return RealtimeBroadcaster(
        mirror,
        run_async=bool(config.get("REALTIME_ASYNC", True)),
        workers=int(config.get("REALTIME_WORKERS", 4)),
    )
