# Overview: Fee engine (gross -> gateway fee, net, platform fee, mitra revenue) and fee settings cache.

"""
Fee Engine

Splits a gross amount between the payment gateway, the platform and the
mitra (partner). Order matters: every step rounds half-up to one Rupiah
before the next step consumes it.

    payment_fee   = round(gross * qris_fee_percent / 100)   (QRIS only)
    net_amount    = gross - payment_fee
    platform_fee  = round(net_amount * platform_commission_percent / 100)
    mitra_revenue = net_amount - platform_fee

Example (0.7% QRIS, 10% commission): 50000 -> 350 / 49650 / 4965 / 44685.

Fee percentages are read from the FeeSettings singleton through
FeeSettingsCache (bounded staleness, explicit invalidation).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable

from flask import current_app

from ..extensions import db
from ..models import FeeSettings
from ..models.settings import FEE_SETTINGS_ID
from ..models.transactions import PAYMENT_METHOD_QRIS, VALID_PAYMENT_METHODS
from kantin.money import is_whole_units, round_money, to_decimal

HUNDRED = Decimal("100")
ZERO = Decimal("0")


class FeeError(ValueError):
    """Raised for invalid fee inputs or missing fee configuration."""


@dataclass(frozen=True)
class FeeConfig:
    """Immutable snapshot of the fee settings row."""
    qris_fee_percent: Decimal
    platform_commission_percent: Decimal
    payment_timeout_minutes: int

    @classmethod
    def from_model(cls, row: FeeSettings) -> "FeeConfig":
        return cls(
            qris_fee_percent=to_decimal(row.qris_fee_percent),
            platform_commission_percent=to_decimal(row.platform_commission_percent),
            payment_timeout_minutes=int(row.payment_timeout_minutes),
        )


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: Decimal
    payment_fee: Decimal
    net_amount: Decimal
    platform_fee: Decimal
    mitra_revenue: Decimal

    def as_model_fields(self) -> dict:
        return {
            "gross_amount": self.gross_amount,
            "payment_fee": self.payment_fee,
            "net_amount": self.net_amount,
            "platform_fee": self.platform_fee,
            "mitra_revenue": self.mitra_revenue,
        }


def calculate_fees(gross_amount, payment_method: str, config: FeeConfig) -> FeeBreakdown:
    """
    Compute the four-way split for a gross amount.

    Args:
        gross_amount: Total charged to the customer (Decimal, int or str)
        payment_method: CASH or QRIS
        config: Fee percentages

    Raises:
        FeeError: gross not positive / not whole units, unknown method
    """
    if payment_method not in VALID_PAYMENT_METHODS:
        raise FeeError(f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}")

    try:
        gross = to_decimal(gross_amount)
    except (InvalidOperation, ValueError):
        raise FeeError(f"Invalid gross amount: {gross_amount!r}")

    if not gross.is_finite() or gross <= ZERO:
        raise FeeError("Gross amount must be positive")
    if not is_whole_units(gross):
        raise FeeError("Gross amount must be a whole number of currency units")
    gross = round_money(gross)

    if payment_method == PAYMENT_METHOD_QRIS:
        payment_fee = round_money(gross * config.qris_fee_percent / HUNDRED)
    else:
        payment_fee = round_money(ZERO)

    net_amount = gross - payment_fee
    platform_fee = round_money(net_amount * config.platform_commission_percent / HUNDRED)
    mitra_revenue = net_amount - platform_fee

    return FeeBreakdown(
        gross_amount=gross,
        payment_fee=payment_fee,
        net_amount=net_amount,
        platform_fee=platform_fee,
        mitra_revenue=mitra_revenue,
    )


def calculate_cart_total(lines: Iterable[tuple]) -> Decimal:
    """
    Sum quantity x unit price over (unit_price, quantity) pairs.

    Unit prices must come from the database, never from the client.
    """
    total = ZERO
    for unit_price, quantity in lines:
        if unit_price is None:
            raise FeeError("Item unit price is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise FeeError("Item quantity must be greater than 0")
        total += to_decimal(unit_price) * quantity
    return total


# =============================================================================
# FEE SETTINGS CACHE
# =============================================================================

def load_fee_config() -> FeeConfig:
    """Read the fee settings singleton straight from the database."""
    row = db.session.get(FeeSettings, FEE_SETTINGS_ID)
    if row is None:
        raise FeeError("Fee settings not initialized. Run: flask system init")
    return FeeConfig.from_model(row)


class FeeSettingsCache:
    """
    Read-through cache for fee configuration with a TTL.

    Concurrent refreshes may both hit the database; the last one wins,
    which is fine for an operator-edited, read-mostly row.
    """

    def __init__(
        self,
        loader: Callable[[], FeeConfig] = load_fee_config,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: FeeConfig | None = None
        self._fetched_at = 0.0

    def get(self) -> FeeConfig:
        with self._lock:
            value = self._value
            fresh = value is not None and (self._clock() - self._fetched_at) < self._ttl
        if fresh:
            return value

        loaded = self._loader()
        with self._lock:
            self._value = loaded
            self._fetched_at = self._clock()
        return loaded

    def invalidate(self) -> None:
        """Drop the cached value; call after the settings row is updated."""
        with self._lock:
            self._value = None
            self._fetched_at = 0.0


def get_fee_settings_cache() -> FeeSettingsCache:
    return current_app.extensions["fee_settings_cache"]


def update_fee_settings(
    *,
    user_id: int | None,
    qris_fee_percent=None,
    platform_commission_percent=None,
    payment_timeout_minutes=None,
    cache: FeeSettingsCache | None = None,
) -> FeeSettings:
    """
    Administrative update of the fee singleton; invalidates the cache on success.

    Every value is validated before the row is touched.
    """
    updates = {}
    for field, value in (
        ("qris_fee_percent", qris_fee_percent),
        ("platform_commission_percent", platform_commission_percent),
    ):
        if value is None:
            continue
        try:
            pct = to_decimal(value)
        except (InvalidOperation, ValueError):
            raise FeeError(f"{field} must be a number")
        if not pct.is_finite() or pct < ZERO or pct > HUNDRED:
            raise FeeError(f"{field} must be between 0 and 100")
        updates[field] = pct

    if payment_timeout_minutes is not None:
        if isinstance(payment_timeout_minutes, bool) or not isinstance(payment_timeout_minutes, int) \
                or payment_timeout_minutes <= 0:
            raise FeeError("payment_timeout_minutes must be a positive integer")
        updates["payment_timeout_minutes"] = payment_timeout_minutes

    row = db.session.get(FeeSettings, FEE_SETTINGS_ID)
    if row is None:
        row = FeeSettings(id=FEE_SETTINGS_ID)
        db.session.add(row)

    for field, value in updates.items():
        setattr(row, field, value)
    row.updated_by_user_id = user_id
    db.session.commit()

    (cache or get_fee_settings_cache()).invalidate()
    return row
