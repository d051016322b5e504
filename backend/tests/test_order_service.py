"""
Order ingestion tests.

Verifies:
- Role x payment method decision table
- Cart parsing rejects malformed entries and merges duplicate items
- CASH orders deduct stock in the same unit as the insert
- QRIS orders carry the gateway order id / QR URL and leave stock alone
- Shortages and gateway failures persist nothing
- A failure on a later line rolls back earlier deductions
"""

from decimal import Decimal

import httpx
import pytest

from kantin.extensions import db
from kantin.models import Item, PosSession, Transaction, TransactionDetail
from kantin.models.pos import POS_STATUS_CLOSED, POS_STATUS_PAYMENT
from kantin.services import order_service
from kantin.services.order_service import (
    OrderStateError,
    OrderTimeoutError,
    OrderValidationError,
    PaymentGatewayError,
    create_order,
    initial_status,
    list_orders,
    parse_cart,
)
from kantin.services.realtime_service import PENDING_ORDERS_PATH, STOCK_UPDATES_PATH, SessionMirror, session_path
from kantin.services.stock_service import InsufficientStockError


def _stock(item_id):
    db.session.expire_all()
    return db.session.get(Item, item_id).stock_quantity


def _transaction_count():
    return db.session.query(Transaction).count()


class TestDecisionTable:

    @pytest.mark.parametrize("role,method,expected", [
        ("USER", "CASH", "PENDING"),
        ("USER", "QRIS", "PENDING"),
        ("KASIR", "CASH", "CASH"),
        ("KASIR", "QRIS", "PENDING"),
    ])
    def test_initial_status(self, role, method, expected):
        assert initial_status(role, method) == expected

    def test_pengurus_cannot_order(self):
        with pytest.raises(OrderValidationError):
            initial_status("PENGURUS", "CASH")

    def test_unknown_method(self):
        with pytest.raises(OrderValidationError, match="Invalid payment method"):
            initial_status("KASIR", "CARD")


class TestParseCart:

    def test_merges_duplicate_items(self):
        lines = parse_cart([
            {"itemId": 2, "quantity": 1},
            {"itemId": 1, "quantity": 3},
            {"itemId": 2, "quantity": 2},
        ])
        assert [(l.item_id, l.quantity) for l in lines] == [(2, 3), (1, 3)]

    @pytest.mark.parametrize("cart", [
        [],
        None,
        "1x nasi",
        [1],
        [{"itemId": "1", "quantity": 1}],
        [{"itemId": 1, "quantity": 0}],
        [{"itemId": 1, "quantity": -2}],
        [{"itemId": 1, "quantity": 1.5}],
        [{"itemId": 1, "quantity": True}],
        [{"itemId": 1}],
    ])
    def test_rejects_malformed(self, cart):
        with pytest.raises(OrderValidationError):
            parse_cart(cart)


class TestCashOrders:

    def test_cash_order_deducts_stock(self, db_session, fee_settings, kasir, make_item):
        item = make_item(price="15000", stock=10)

        txn = create_order(kasir, [{"itemId": item.id, "quantity": 2}], "CASH")

        assert txn.status == "CASH"
        assert txn.gross_amount == Decimal("30000")
        assert txn.payment_fee == Decimal("0")
        assert txn.platform_fee == Decimal("3000")
        assert txn.mitra_revenue == Decimal("27000")
        assert txn.stock_deducted_at is not None
        assert txn.settled_at is not None
        assert txn.gateway_order_id is None

        detail = txn.details[0]
        assert (detail.quantity, detail.unit_price, detail.subtotal) == (2, Decimal("15000"), Decimal("30000"))
        assert (detail.stock_before, detail.stock_after) == (10, 8)
        assert _stock(item.id) == 8

    def test_customer_metadata_is_stored(self, db_session, fee_settings, kasir, make_item):
        item = make_item()
        txn = create_order(
            kasir,
            [{"itemId": item.id, "quantity": 1}],
            "CASH",
            customer={"name": "Budi", "location": "Meja 4", "notes": "tanpa sambal"},
        )
        assert (txn.customer_name, txn.customer_location, txn.notes) == ("Budi", "Meja 4", "tanpa sambal")

    def test_multi_item_order(self, db_session, fee_settings, kasir, make_item):
        nasi = make_item(name="Nasi Goreng", price="15000", stock=10)
        teh = make_item(name="Es Teh", price="5000", stock=20)

        txn = create_order(kasir, [
            {"itemId": nasi.id, "quantity": 2},
            {"itemId": teh.id, "quantity": 4},
        ], "CASH")

        assert txn.gross_amount == Decimal("50000")
        assert len(txn.details) == 2
        assert _stock(nasi.id) == 8
        assert _stock(teh.id) == 16

    def test_shortage_creates_nothing(self, db_session, fee_settings, kasir, make_item):
        item = make_item(name="Es Teh", stock=3)

        with pytest.raises(InsufficientStockError) as exc_info:
            create_order(kasir, [{"itemId": item.id, "quantity": 5}], "CASH")

        assert exc_info.value.shortages == [
            {"item_id": item.id, "name": "Es Teh", "available": 3, "requested": 5}
        ]
        assert _transaction_count() == 0
        assert _stock(item.id) == 3

    def test_unknown_item(self, db_session, fee_settings, kasir):
        with pytest.raises(OrderValidationError) as exc_info:
            create_order(kasir, [{"itemId": 4242, "quantity": 1}], "CASH")
        assert exc_info.value.details == {"item_ids": [4242]}

    def test_missing_fee_settings(self, db_session, kasir, make_item):
        item = make_item()
        with pytest.raises(OrderValidationError, match="not initialized"):
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "CASH")
        assert _transaction_count() == 0

    def test_failure_on_later_line_rolls_back_earlier_lines(self, db_session, fee_settings, kasir, make_item, monkeypatch):
        first = make_item(name="A", stock=10)
        second = make_item(name="B", stock=10)
        real_deduct = order_service.deduct_stock

        def flaky_deduct(item_id, quantity):
            if item_id == second.id:
                raise InsufficientStockError([
                    {"item_id": item_id, "name": "B", "available": 0, "requested": quantity}
                ])
            return real_deduct(item_id, quantity)

        monkeypatch.setattr(order_service, "deduct_stock", flaky_deduct)

        with pytest.raises(InsufficientStockError):
            create_order(kasir, [
                {"itemId": first.id, "quantity": 4},
                {"itemId": second.id, "quantity": 1},
            ], "CASH")

        assert _stock(first.id) == 10
        assert _transaction_count() == 0
        assert db.session.query(TransactionDetail).count() == 0

    def test_timeout_before_persist(self, app, db_session, fee_settings, kasir, make_item, monkeypatch):
        item = make_item(stock=10)
        monkeypatch.setitem(app.config, "ORDER_TIMEOUT_SECONDS", 0)

        with pytest.raises(OrderTimeoutError) as exc_info:
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "CASH")

        assert exc_info.value.details["stage"] == "persist"
        assert _transaction_count() == 0
        assert _stock(item.id) == 10

    def test_timeout_before_gateway_sends_no_charge(self, app, db_session, fee_settings, kasir, make_item,
                                                    midtrans, monkeypatch):
        item = make_item(stock=10)
        monkeypatch.setitem(app.config, "ORDER_TIMEOUT_SECONDS", 0)

        with pytest.raises(OrderTimeoutError) as exc_info:
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "QRIS")

        assert exc_info.value.details["stage"] == "gateway"
        assert midtrans.charge_requests == []
        assert _transaction_count() == 0


class TestDeferredOrders:

    def test_kasir_qris_order_issues_charge(self, db_session, fee_settings, kasir, make_item, midtrans):
        item = make_item(price="25000", stock=10)

        txn = create_order(kasir, [{"itemId": item.id, "quantity": 2}], "QRIS")

        assert txn.status == "PENDING"
        assert txn.gateway_order_id.startswith("TXN-")
        assert txn.qris_url.endswith(f"/v2/qris/{txn.gateway_order_id}/qr-code")
        assert txn.gateway_transaction_id == f"trx-{txn.gateway_order_id}"
        assert txn.payment_expire_at is not None
        assert txn.stock_deducted_at is None
        assert txn.payment_fee == Decimal("350")
        assert txn.mitra_revenue == Decimal("44685")

        (_, _, body), = midtrans.charge_requests
        assert body["payment_type"] == "qris"
        assert body["transaction_details"] == {"order_id": txn.gateway_order_id, "gross_amount": 50000}
        assert body["custom_expiry"] == {"expiry_duration": 5, "unit": "minute"}

        detail = txn.details[0]
        assert (detail.stock_before, detail.stock_after) == (10, 8)
        assert _stock(item.id) == 10

    def test_customer_cash_order_is_pending_without_charge(self, db_session, fee_settings, customer, make_item, midtrans, realtime_store):
        item = make_item(stock=5)

        txn = create_order(customer, [{"itemId": item.id, "quantity": 1}], "CASH")

        assert txn.status == "PENDING"
        assert txn.created_by_role == "USER"
        assert txn.gateway_order_id is None
        assert midtrans.charge_requests == []
        assert _stock(item.id) == 5
        assert realtime_store.get(PENDING_ORDERS_PATH)["transactionId"] == txn.id

    def test_gateway_failure_persists_nothing(self, db_session, fee_settings, kasir, make_item, midtrans):
        item = make_item(stock=10)
        midtrans.fail_with = httpx.ConnectError("connection refused")

        with pytest.raises(PaymentGatewayError):
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "QRIS")

        assert _transaction_count() == 0
        assert _stock(item.id) == 10

    def test_charge_without_qr_action_is_a_gateway_error(self, db_session, fee_settings, kasir, make_item, midtrans):
        item = make_item(stock=10)
        midtrans.charge_body = {"status_code": "201", "transaction_id": "x", "actions": []}

        with pytest.raises(PaymentGatewayError, match="QRIS URL not found"):
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "QRIS")
        assert _transaction_count() == 0

    def test_charge_with_bad_expiry_is_a_gateway_error(self, db_session, fee_settings, kasir, make_item, midtrans):
        item = make_item(stock=10)
        midtrans.charge_body = {
            "status_code": "201",
            "transaction_id": "x",
            "transaction_status": "pending",
            "expiry_time": "tomorrow-ish",
            "actions": [{"name": "generate-qr-code", "url": "https://api.sandbox.midtrans.com/v2/qris/x/qr-code"}],
        }

        with pytest.raises(PaymentGatewayError, match="expiry_time"):
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "QRIS")
        assert _transaction_count() == 0
        assert _stock(item.id) == 10

    def test_price_change_during_charge_is_rejected(self, db_session, fee_settings, kasir, make_item, midtrans):
        item = make_item(price="15000", stock=10)
        item_id = item.id

        def bump_price(_body):
            db.session.get(Item, item_id).unit_price = Decimal("17000")
            db.session.commit()

        midtrans.on_charge = bump_price

        with pytest.raises(OrderStateError) as exc_info:
            create_order(kasir, [{"itemId": item_id, "quantity": 1}], "QRIS")

        assert exc_info.value.details == {"expected": "15000", "current": "17000"}
        assert _transaction_count() == 0


class TestRealtimeSideEffects:

    def _open_session(self, db_session, kasir, store, sid="sess-1"):
        db_session.add(PosSession(session_id=sid, kasir_id=kasir.id))
        db_session.commit()
        SessionMirror(store).create(sid, kasir.id, kasir.name)
        return sid

    def test_cash_order_closes_session(self, db_session, fee_settings, kasir, make_item, realtime_store):
        item = make_item(name="Nasi Goreng", price="15000", stock=10)
        sid = self._open_session(db_session, kasir, realtime_store)

        txn = create_order(kasir, [{"itemId": item.id, "quantity": 2}], "CASH", realtime_session_id=sid)

        mirror = realtime_store.get(session_path(sid))
        assert mirror["status"] == POS_STATUS_CLOSED
        assert mirror["grossAmount"] == "30000"
        assert mirror["paymentStatus"] == "CASH"
        assert mirror["transactionId"] == txn.id
        assert mirror["cart"][0]["name"] == "Nasi Goreng"

        row = db.session.query(PosSession).filter_by(session_id=sid).one()
        assert row.status == POS_STATUS_CLOSED
        assert row.closed_at is not None
        assert txn.pos_session_id == row.id

        assert realtime_store.get(STOCK_UPDATES_PATH)[str(item.id)]["stock"] == 8

    def test_qris_order_moves_session_to_payment(self, db_session, fee_settings, kasir, make_item, midtrans, realtime_store):
        item = make_item(price="25000", stock=10)
        sid = self._open_session(db_session, kasir, realtime_store)

        txn = create_order(kasir, [{"itemId": item.id, "quantity": 2}], "QRIS", realtime_session_id=sid)

        mirror = realtime_store.get(session_path(sid))
        assert mirror["status"] == POS_STATUS_PAYMENT
        assert mirror["qrisUrl"] == txn.qris_url
        assert mirror["grossAmount"] == "50000"
        assert mirror["expireAt"].endswith("Z")
        assert db.session.query(PosSession).filter_by(session_id=sid).one().status == POS_STATUS_PAYMENT
        assert realtime_store.get(STOCK_UPDATES_PATH) is None

    def test_missing_mirror_does_not_fail_order(self, db_session, fee_settings, kasir, make_item, realtime_store):
        item = make_item(stock=10)

        txn = create_order(kasir, [{"itemId": item.id, "quantity": 1}], "CASH", realtime_session_id="ghost")

        assert txn.status == "CASH"
        assert txn.pos_session_id is None
        assert txn.realtime_session_id == "ghost"
        assert realtime_store.get(session_path("ghost")) is None

    def test_rejects_oversized_session_id(self, db_session, fee_settings, kasir, make_item):
        item = make_item()
        with pytest.raises(OrderValidationError):
            create_order(kasir, [{"itemId": item.id, "quantity": 1}], "CASH", realtime_session_id="x" * 65)


class TestListOrders:

    def test_filters_by_status(self, db_session, fee_settings, kasir, customer, make_item):
        item = make_item(stock=10)
        cash = create_order(kasir, [{"itemId": item.id, "quantity": 1}], "CASH")
        pending = create_order(customer, [{"itemId": item.id, "quantity": 1}], "CASH")

        assert [t.id for t in list_orders(status="PENDING")] == [pending.id]
        assert {t.id for t in list_orders()} == {cash.id, pending.id}
        assert len(list_orders(limit=1)) == 1
