"""
Pytest fixtures for Kantin backend tests.

Provides the app on in-memory SQLite, a per-test table wipe, user/item/fee
factories, a Midtrans API faked with httpx.MockTransport and an inline
(synchronous) realtime broadcaster over the in-memory store.
"""

import json
from decimal import Decimal

import httpx
import pytest

from kantin import create_app
from kantin.extensions import db
from kantin.models import FeeSettings, Item, User
from kantin.models.auth import ROLE_KASIR, ROLE_MITRA, ROLE_PENGURUS, ROLE_USER
from kantin.models.settings import FEE_SETTINGS_ID
from kantin.services import session_service
from kantin.services.gateway_service import SANDBOX_BASE_URL, MidtransGateway, compute_signature
from kantin.services.realtime_service import InMemoryRealtimeStore, RealtimeBroadcaster, SessionMirror


TEST_SERVER_KEY = "SB-Mid-server-test-key"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MIDTRANS_SERVER_KEY': TEST_SERVER_KEY,
        'REALTIME_BACKEND': 'memory',
        'REALTIME_ASYNC': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh tables, fee cache and realtime store for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        app.extensions["fee_settings_cache"].invalidate()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def realtime_store(app, db_session):
    """Inline broadcaster over a fresh in-memory store."""
    store = InMemoryRealtimeStore()
    app.extensions["realtime_broadcaster"] = RealtimeBroadcaster(SessionMirror(store), run_async=False)
    return store


@pytest.fixture(scope='function')
def fee_settings(db_session):
    settings = FeeSettings(
        id=FEE_SETTINGS_ID,
        qris_fee_percent=Decimal("0.7"),
        platform_commission_percent=Decimal("10"),
        payment_timeout_minutes=5,
    )
    db_session.add(settings)
    db_session.commit()
    return settings


def _make_user(db_session, name, email, role):
    user = User(name=name, email=email, role=role, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def kasir(db_session):
    return _make_user(db_session, "Siti Kasir", "kasir@kantin.local", ROLE_KASIR)


@pytest.fixture(scope='function')
def customer(db_session):
    return _make_user(db_session, "Budi", "budi@kantin.local", ROLE_USER)


@pytest.fixture(scope='function')
def pengurus(db_session):
    return _make_user(db_session, "Pak Pengurus", "pengurus@kantin.local", ROLE_PENGURUS)


@pytest.fixture(scope='function')
def mitra(db_session):
    return _make_user(db_session, "Bu Mitra", "mitra@kantin.local", ROLE_MITRA)


@pytest.fixture(scope='function')
def make_item(db_session, mitra):
    """Factory: make_item(name, price, stock) -> Item"""
    def _make(name="Nasi Goreng", price="15000", stock=10):
        item = Item(mitra_id=mitra.id, name=name, unit_price=Decimal(price), stock_quantity=stock)
        db_session.add(item)
        db_session.commit()
        return item
    return _make


class FakeMidtrans:
    """Records Core API requests and answers with canned bodies."""

    def __init__(self):
        self.requests = []
        self.charge_status = 201
        self.charge_body = None
        self.status_body = {}
        self.fail_with = None
        self.on_charge = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))

        if self.fail_with is not None:
            raise self.fail_with

        if request.url.path == "/v2/charge":
            if self.on_charge is not None:
                self.on_charge(body)
            if self.charge_body is not None:
                return httpx.Response(self.charge_status, json=self.charge_body)
            order_id = body["transaction_details"]["order_id"]
            return httpx.Response(201, json={
                "status_code": "201",
                "status_message": "QRIS transaction is created",
                "transaction_id": f"trx-{order_id}",
                "order_id": order_id,
                "gross_amount": f"{body['transaction_details']['gross_amount']}.00",
                "payment_type": "qris",
                "transaction_status": "pending",
                "expiry_time": "2026-10-18 10:05:00",
                "actions": [
                    {"name": "generate-qr-code", "method": "GET",
                     "url": f"https://api.sandbox.midtrans.com/v2/qris/{order_id}/qr-code"},
                ],
            })

        if request.url.path.endswith("/status"):
            return httpx.Response(200, json=self.status_body)

        return httpx.Response(404, json={"status_code": "404", "status_message": "Not found"})

    @property
    def charge_requests(self):
        return [r for r in self.requests if r[1] == "/v2/charge"]


@pytest.fixture(scope='function')
def midtrans(app):
    """Real MidtransGateway wired to a MockTransport."""
    fake = FakeMidtrans()
    client = httpx.Client(transport=httpx.MockTransport(fake.handler), base_url=SANDBOX_BASE_URL)
    gateway = MidtransGateway(TEST_SERVER_KEY, client=client)
    previous = app.extensions["payment_gateway"]
    app.extensions["payment_gateway"] = gateway
    fake.gateway = gateway
    yield fake
    app.extensions["payment_gateway"] = previous


def notification(order_id, transaction_status="settlement", gross_amount="50000.00", status_code="200",
                 fraud_status=None, settlement_time="2026-10-18 10:01:00", server_key=TEST_SERVER_KEY):
    """Signed Midtrans notification payload."""
    payload = {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "transaction_id": f"trx-{order_id}",
        "payment_type": "qris",
        "signature_key": compute_signature(order_id, status_code, gross_amount, server_key),
    }
    if fraud_status is not None:
        payload["fraud_status"] = fraud_status
    if settlement_time is not None:
        payload["settlement_time"] = settlement_time
    return payload


def auth_headers(user) -> dict:
    """Issue a session token for a user and return Authorization headers."""
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def signed_notification():
    return notification


@pytest.fixture(scope='function')
def kasir_headers(kasir):
    return auth_headers(kasir)


@pytest.fixture(scope='function')
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture(scope='function')
def pengurus_headers(pengurus):
    return auth_headers(pengurus)


@pytest.fixture(scope='function')
def headers_for():
    """Factory: headers_for(user) -> Authorization headers"""
    return auth_headers
