"""
Realtime sync tests.

Verifies:
- Session mirror create / cart / status protocol
- Total is recomputed while OPEN and pinned afterwards
- Status only moves forward
- Subscribers get the current snapshot first, then every change
- Broadcaster never raises and drops work past its pending limit
- Firebase REST store: URLs, auth, ETag transactions, SSE stream
"""

import json
import queue
import threading

import httpx
import pytest

from kantin.services.realtime_service import (
    CartSnapshotError,
    FirebaseRealtimeStore,
    InMemoryRealtimeStore,
    RealtimeBroadcaster,
    RealtimeError,
    RealtimeStore,
    SessionMirror,
    Subscription,
    build_realtime_store,
    normalize_cart,
    session_path,
)


CART = [
    {"itemId": 1, "name": "Nasi Goreng", "quantity": 2, "unitPrice": "15000"},
    {"itemId": 2, "namaBarang": "Es Teh", "quantity": 4, "hargaSatuan": 5000},
]


@pytest.fixture
def mirror():
    m = SessionMirror(InMemoryRealtimeStore())
    m.create("s1", 7, "Siti Kasir")
    return m


class TestNormalizeCart:

    def test_accepts_both_field_spellings(self):
        lines = normalize_cart(CART)
        assert lines[0] == {
            "itemId": 1, "name": "Nasi Goreng", "quantity": 2, "unitPrice": "15000", "subtotal": "30000",
        }
        assert lines[1]["name"] == "Es Teh"
        assert lines[1]["subtotal"] == "20000"

    @pytest.mark.parametrize("cart", [
        None,
        [1],
        [{"itemId": "1", "quantity": 1}],
        [{"itemId": 1, "quantity": 0}],
        [{"itemId": 1, "quantity": True}],
        [{"itemId": 1, "quantity": 1, "unitPrice": "murah"}],
    ])
    def test_rejects_malformed(self, cart):
        with pytest.raises(CartSnapshotError):
            normalize_cart(cart)


class TestSessionMirror:

    def test_create(self, mirror):
        record = mirror.get("s1")
        assert record["status"] == "OPEN"
        assert record["cart"] == []
        assert record["grossAmount"] == "0"
        assert record["kasirName"] == "Siti Kasir"

    def test_cart_updates_total_while_open(self, mirror):
        record = mirror.patch_cart("s1", CART)
        assert record["grossAmount"] == "50000"
        assert len(record["cart"]) == 2

    def test_total_pinned_after_payment(self, mirror):
        mirror.patch_cart("s1", CART)
        mirror.patch_status("s1", "PAYMENT", grossAmount="50000", qrisUrl="https://qr.example/1")

        record = mirror.patch_cart("s1", CART[:1])

        assert record["grossAmount"] == "50000"
        assert record["cart"][0]["itemId"] == 1 and len(record["cart"]) == 1
        assert record["qrisUrl"] == "https://qr.example/1"

    def test_status_is_forward_only(self, mirror):
        mirror.patch_status("s1", "PAYMENT")
        mirror.patch_status("s1", "CLOSED", paymentStatus="SETTLEMENT")

        with pytest.raises(RealtimeError):
            mirror.patch_status("s1", "OPEN")
        assert mirror.get("s1")["status"] == "CLOSED"

    def test_repeating_a_status_is_allowed(self, mirror):
        mirror.patch_status("s1", "CLOSED", paymentStatus="EXPIRE")
        record = mirror.patch_status("s1", "CLOSED", paymentStatus="EXPIRE")
        assert record["status"] == "CLOSED"

    def test_none_extras_are_skipped(self, mirror):
        record = mirror.patch_status("s1", "PAYMENT", qrisUrl=None, grossAmount=12000)
        assert "qrisUrl" not in record
        assert record["grossAmount"] == "12000"

    def test_rejects_unknown_status_and_fields(self, mirror):
        with pytest.raises(RealtimeError):
            mirror.patch_status("s1", "PAID")
        with pytest.raises(RealtimeError):
            mirror.patch_status("s1", "PAYMENT", cart=[])

    def test_missing_session(self, mirror):
        with pytest.raises(RealtimeError):
            mirror.patch_cart("nope", CART)
        with pytest.raises(RealtimeError):
            mirror.patch_status("nope", "PAYMENT")
        assert mirror.get("nope") is None

    def test_subscribe_receives_snapshot_then_changes(self, mirror):
        sub = mirror.subscribe("s1")

        assert sub.get(timeout=1)["status"] == "OPEN"
        mirror.patch_status("s1", "PAYMENT", grossAmount="50000")
        assert sub.get(timeout=1)["status"] == "PAYMENT"

        sub.close()
        mirror.patch_status("s1", "CLOSED")
        with pytest.raises(RealtimeError):
            sub.get(timeout=1)

    def test_subscribe_to_missing_session_starts_empty(self, mirror):
        sub = mirror.subscribe("later")
        assert sub.get(timeout=1) is None
        mirror.create("later", 7, "Siti Kasir")
        assert sub.get(timeout=1)["sessionId"] == "later"


class TestSubscription:

    def test_slow_consumer_keeps_newest(self):
        sub = Subscription(maxsize=2)
        for n in range(3):
            sub.push({"n": n})
        assert sub.get(timeout=1) == {"n": 1}
        assert sub.get(timeout=1) == {"n": 2}
        with pytest.raises(queue.Empty):
            sub.get(timeout=0.01)


class TestInMemoryStore:

    def test_transact_none_deletes(self):
        store = InMemoryRealtimeStore()
        store.set("a", {"x": 1})
        store.transact("a", lambda current: None)
        assert store.get("a") is None

    def test_values_are_copied(self):
        store = InMemoryRealtimeStore()
        value = {"cart": []}
        store.set("a", value)
        value["cart"].append(1)
        assert store.get("a") == {"cart": []}

    def test_update_merges(self):
        store = InMemoryRealtimeStore()
        store.update("stock", {"1": {"stock": 3}})
        store.update("stock", {"2": {"stock": 5}})
        assert store.get("stock") == {"1": {"stock": 3}, "2": {"stock": 5}}


class FailingStore(RealtimeStore):

    def transact(self, path, fn):
        raise RuntimeError("store down")

    def set(self, path, value):
        raise RuntimeError("store down")

    def update(self, path, patch):
        raise RuntimeError("store down")


class BlockingStore(InMemoryRealtimeStore):

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.calls = 0

    def set(self, path, value):
        self.calls += 1
        self.release.wait(timeout=5)
        super().set(path, value)


class TestBroadcaster:

    def test_failures_are_swallowed(self):
        broadcaster = RealtimeBroadcaster(SessionMirror(FailingStore()), run_async=False)

        broadcaster.publish_cart("s1", CART)
        broadcaster.publish_status("s1", "CLOSED", paymentStatus="CASH")
        broadcaster.notify_pending_order(1, "PENDING")
        broadcaster.publish_stock_levels({1: 3})

    def test_no_session_id_is_a_no_op(self):
        store = InMemoryRealtimeStore()
        sub = store.subscribe(session_path("s1"))
        broadcaster = RealtimeBroadcaster(SessionMirror(store), run_async=False)

        broadcaster.publish_cart(None, CART)
        broadcaster.publish_status("", "CLOSED")

        assert sub.get(timeout=1) is None
        with pytest.raises(queue.Empty):
            sub.get(timeout=0.01)

    def test_async_publish_lands(self):
        store = InMemoryRealtimeStore()
        mirror = SessionMirror(store)
        mirror.create("s1", 7, "Siti Kasir")
        broadcaster = RealtimeBroadcaster(mirror, run_async=True, workers=1)

        broadcaster.publish_cart("s1", CART)
        broadcaster.publish_stock_levels({1: 8})
        broadcaster.shutdown(wait=True)

        assert mirror.get("s1")["grossAmount"] == "50000"
        assert store.get("stock-updates")["1"]["stock"] == 8

    def test_drops_work_past_pending_limit(self):
        store = BlockingStore()
        broadcaster = RealtimeBroadcaster(SessionMirror(store), run_async=True, workers=1, max_pending=1)

        broadcaster.notify_pending_order(1, "PENDING")
        broadcaster.notify_pending_order(2, "PENDING")
        store.release.set()
        broadcaster.shutdown(wait=True)

        assert store.calls == 1
        assert store.get("pending-orders-trigger")["transactionId"] == 1


class TestBuildStore:

    def test_memory_default(self):
        assert isinstance(build_realtime_store({}), InMemoryRealtimeStore)

    def test_firebase_requires_url(self):
        with pytest.raises(RealtimeError):
            build_realtime_store({"REALTIME_BACKEND": "firebase"})

    def test_firebase_backend(self):
        store = build_realtime_store({
            "REALTIME_BACKEND": "firebase",
            "FIREBASE_DATABASE_URL": "https://kantin-default-rtdb.firebaseio.com/",
        })
        assert isinstance(store, FirebaseRealtimeStore)
        assert store.database_url == "https://kantin-default-rtdb.firebaseio.com"

    def test_unknown_backend(self):
        with pytest.raises(RealtimeError):
            build_realtime_store({"REALTIME_BACKEND": "redis"})


FIREBASE_URL = "https://kantin-default-rtdb.firebaseio.com"


def _firebase(handler, auth_token="secret"):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url=FIREBASE_URL)
    return FirebaseRealtimeStore(FIREBASE_URL, auth_token=auth_token, client=client)


class TestFirebaseStore:

    def test_get_and_set_use_json_paths_with_auth(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, request.url.params.get("auth"), request.content))
            if request.method == "GET":
                return httpx.Response(200, json={"status": "OPEN"})
            return httpx.Response(200, json=None)

        store = _firebase(handler)
        store.set("pos-sessions/s1", {"status": "OPEN"})
        assert store.get("pos-sessions/s1") == {"status": "OPEN"}

        assert seen[0][:3] == ("PUT", "/pos-sessions/s1.json", "secret")
        assert json.loads(seen[0][3]) == {"status": "OPEN"}
        assert seen[1][:3] == ("GET", "/pos-sessions/s1.json", "secret")

    def test_http_errors_raise(self):
        store = _firebase(lambda request: httpx.Response(401, json={"error": "Permission denied"}))
        with pytest.raises(RealtimeError):
            store.update("stock-updates", {"1": {"stock": 2}})

    def test_unreachable_raises(self):
        def handler(request):
            raise httpx.ConnectError("no route")

        with pytest.raises(RealtimeError, match="unreachable"):
            _firebase(handler).get("x")

    def test_transact_retries_on_etag_conflict(self):
        etags = iter(["e1", "e2"])
        puts = []

        def handler(request):
            if request.method == "GET":
                assert request.headers["X-Firebase-ETag"] == "true"
                return httpx.Response(200, json={"status": "OPEN"}, headers={"ETag": next(etags)})
            puts.append(request.headers["if-match"])
            return httpx.Response(412 if len(puts) == 1 else 200, json=None)

        result = _firebase(handler).transact("pos-sessions/s1", lambda current: {**current, "status": "PAYMENT"})

        assert result == {"status": "PAYMENT"}
        assert puts == ["e1", "e2"]

    def test_transact_gives_up(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={}, headers={"ETag": "stale"})
            return httpx.Response(412, json=None)

        with pytest.raises(RealtimeError, match="kept conflicting"):
            _firebase(handler).transact("x", lambda current: {"n": 1})

    def test_stream_applies_put_and_patch_events(self):
        body = (
            'event: put\n'
            'data: {"path": "/", "data": {"status": "OPEN", "grossAmount": "0"}}\n'
            '\n'
            'event: patch\n'
            'data: {"path": "/", "data": {"status": "PAYMENT"}}\n'
            '\n'
            'event: put\n'
            'data: {"path": "/grossAmount", "data": "50000"}\n'
            '\n'
        )

        def handler(request):
            assert request.headers["Accept"] == "text/event-stream"
            return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})

        sub = _firebase(handler, auth_token="").subscribe("pos-sessions/s1")

        assert sub.get(timeout=2) == {"status": "OPEN", "grossAmount": "0"}
        assert sub.get(timeout=2) == {"status": "PAYMENT", "grossAmount": "0"}
        assert sub.get(timeout=2) == {"status": "PAYMENT", "grossAmount": "50000"}
        with pytest.raises(RealtimeError):
            sub.get(timeout=2)
