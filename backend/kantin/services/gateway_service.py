# Overview: Midtrans Core API adapter; QRIS charge creation, status lookup and webhook signature check.

"""
Payment Gateway Adapter (Midtrans)

Credentials come from configuration (environment), never from the database:
- MIDTRANS_SERVER_KEY
- MIDTRANS_ENVIRONMENT ("production" or "sandbox")

Webhook authenticity: Midtrans signs every notification with
    sha512(order_id + status_code + gross_amount + server_key)
and a notification whose signature does not match must not touch state.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from flask import current_app

from kantin.money import money_str
from kantin.time_utils import parse_gateway_datetime

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api.sandbox.midtrans.com"
PRODUCTION_BASE_URL = "https://api.midtrans.com"


class GatewayError(Exception):
    """Raised when the gateway cannot be reached or answers with an error."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class GatewayConfigurationError(GatewayError):
    """Server key missing; nothing can be charged or verified."""


class InvalidSignatureError(GatewayError):
    """Webhook signature missing or not matching the expected keyed hash."""


@dataclass(frozen=True)
class QrisCharge:
    transaction_id: str
    order_id: str
    qris_url: str
    expire_at: datetime | None
    status: str | None = None


def generate_order_id() -> str:
    """
    Unique gateway order id.

    Format: TXN-{epoch millis}-{8 hex chars}, e.g. TXN-1733184000000-a1b2c3d4
    """
    return f"TXN-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


class MidtransGateway:
    """
    Thin httpx client over the Midtrans Core API.

    Pass `client` to inject a preconfigured httpx.Client (tests use
    httpx.MockTransport).
    """

    def __init__(
        self,
        server_key: str,
        *,
        is_production: bool = False,
        timeout: float = 5.0,
        qris_acquirer: str = "gopay",
        client: httpx.Client | None = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.qris_acquirer = qris_acquirer
        self.base_url = PRODUCTION_BASE_URL if is_production else SANDBOX_BASE_URL
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: dict, client: httpx.Client | None = None) -> "MidtransGateway":
        return cls(
            config.get("MIDTRANS_SERVER_KEY", ""),
            is_production=config.get("MIDTRANS_ENVIRONMENT") == "production",
            timeout=float(config.get("MIDTRANS_TIMEOUT_SECONDS", 5)),
            qris_acquirer=config.get("MIDTRANS_QRIS_ACQUIRER", "gopay"),
            client=client,
        )

    def _require_key(self, action: str) -> None:
        if not self.server_key:
            logger.error("Midtrans configuration missing action=%s variable=MIDTRANS_SERVER_KEY", action)
            raise GatewayConfigurationError("MIDTRANS_SERVER_KEY not configured")

    def _request(self, method: str, path: str, *, json: dict | None = None) -> dict[str, Any]:
        try:
            response = self._client.request(
                method,
                path,
                json=json,
                auth=(self.server_key, ""),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise GatewayError("Midtrans request timed out", details={"path": path}) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Midtrans unreachable: {exc}", details={"path": path}) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            raise GatewayError(
                body.get("status_message") or f"HTTP {response.status_code}",
                details={"http_status": response.status_code, "path": path},
            )

        # Core API reports business failures with a 2xx HTTP status and an error status_code
        status_code = str(body.get("status_code", "200"))
        if not status_code.startswith("2"):
            raise GatewayError(
                body.get("status_message") or f"Gateway status {status_code}",
                details={"status_code": status_code, "path": path},
            )
        return body

    # -------------------------------------------------------------------------
    # CHARGES
    # -------------------------------------------------------------------------

    def create_qris_charge(
        self,
        *,
        order_id: str,
        gross_amount,
        expiry_minutes: int,
        customer_name: str | None = None,
        customer_email: str | None = None,
    ) -> QrisCharge:
        """
        Create a QRIS charge and return the QR image URL and expiry.

        Raises:
            GatewayError: upstream failure or a response without a QR action
        """
        self._require_key("create_qris_charge")
        logger.info("Creating QRIS payment order_id=%s gross_amount=%s", order_id, gross_amount)

        parameter: dict[str, Any] = {
            "payment_type": "qris",
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": int(money_str(gross_amount)),
            },
            "qris": {"acquirer": self.qris_acquirer},
            "custom_expiry": {"expiry_duration": expiry_minutes, "unit": "minute"},
        }
        if customer_name:
            parameter["customer_details"] = {"first_name": customer_name, "email": customer_email}

        body = self._request("POST", "/v2/charge", json=parameter)

        qr_action = next(
            (a for a in body.get("actions") or [] if a.get("name") == "generate-qr-code"),
            None,
        )
        if not qr_action or not qr_action.get("url"):
            logger.error(
                "Invalid Midtrans response, QRIS URL missing order_id=%s actions=%s",
                order_id,
                [a.get("name") for a in body.get("actions") or []],
            )
            raise GatewayError("QRIS URL not found in Midtrans response", details={"order_id": order_id})

        try:
            expire_at = parse_gateway_datetime(body.get("expiry_time"))
        except ValueError:
            logger.error(
                "Invalid Midtrans response, bad expiry_time order_id=%s expiry_time=%r",
                order_id, body.get("expiry_time"),
            )
            raise GatewayError("Invalid expiry_time in Midtrans response", details={"order_id": order_id})

        charge = QrisCharge(
            transaction_id=body.get("transaction_id", ""),
            order_id=body.get("order_id", order_id),
            qris_url=qr_action["url"],
            expire_at=expire_at,
            status=body.get("transaction_status"),
        )
        logger.info(
            "QRIS payment created order_id=%s transaction_id=%s status=%s",
            order_id, charge.transaction_id, charge.status,
        )
        return charge

    def get_status(self, order_id: str) -> dict[str, Any]:
        """Fetch the current gateway-side status of an order."""
        self._require_key("get_status")
        body = self._request("GET", f"/v2/{order_id}/status")
        logger.info(
            "Transaction status retrieved order_id=%s status=%s",
            order_id, body.get("transaction_status"),
        )
        return body

    # -------------------------------------------------------------------------
    # WEBHOOK AUTHENTICITY
    # -------------------------------------------------------------------------

    def verify_signature(self, order_id, status_code, gross_amount, signature_key) -> bool:
        """Constant-time check of a notification signature."""
        self._require_key("verify_signature")
        if not all(isinstance(v, str) and v for v in (order_id, status_code, gross_amount, signature_key)):
            logger.warning("Webhook signature check with missing fields order_id=%s", order_id)
            return False

        expected = compute_signature(order_id, status_code, gross_amount, self.server_key)
        valid = hmac.compare_digest(expected.encode(), signature_key.lower().encode("utf-8"))
        if not valid:
            logger.error(
                "Midtrans webhook signature verification failed order_id=%s status_code=%s "
                "gross_amount=%s received=%s...",
                order_id, status_code, gross_amount, signature_key[:10],
            )
        return valid

    def require_valid_signature(self, payload: dict) -> None:
        if not self.verify_signature(
            payload.get("order_id"),
            payload.get("status_code"),
            payload.get("gross_amount"),
            payload.get("signature_key"),
        ):
            raise InvalidSignatureError("Invalid signature", details={"order_id": payload.get("order_id")})


def get_gateway():
    return current_app.extensions["payment_gateway"]
