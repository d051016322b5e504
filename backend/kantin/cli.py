# Overview: Flask CLI command groups for bootstrap, users and item stock.

# backend/kantin/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create tables and seed the fee settings singleton (0.7% QRIS, 10% commission, 5 min timeout).
#
# Users:
# - python -m flask users create --name "Siti" --email siti@kantin.local --role KASIR
# - python -m flask users token --email siti@kantin.local
#   Issue a bearer token (printed once, only its hash is stored).
#
# Items:
# - python -m flask items create --mitra-email mitra@kantin.local --name "Nasi Goreng" --price 15000 --stock 20
# - python -m flask items restock --item-id 1 --quantity 10

import click
from decimal import Decimal, InvalidOperation
from flask.cli import with_appcontext

from .extensions import db
from .money import is_whole_units
from .models import FeeSettings, Item, User
from .models.auth import ROLE_MITRA, VALID_ROLES
from .models.settings import (
    DEFAULT_PAYMENT_TIMEOUT_MINUTES,
    DEFAULT_PLATFORM_COMMISSION_PERCENT,
    DEFAULT_QRIS_FEE_PERCENT,
    FEE_SETTINGS_ID,
)
from .services import session_service
from .services.concurrency import begin_write, run_with_retry
from .services.stock_service import StockError, restore_stock


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create tables (if missing) and the fee settings row. Idempotent."""
    click.echo("START Initializing Kantin system...")

    db.create_all()
    click.echo("PASS Tables ready")

    settings = db.session.get(FeeSettings, FEE_SETTINGS_ID)
    if settings is None:
        settings = FeeSettings(
            id=FEE_SETTINGS_ID,
            qris_fee_percent=DEFAULT_QRIS_FEE_PERCENT,
            platform_commission_percent=DEFAULT_PLATFORM_COMMISSION_PERCENT,
            payment_timeout_minutes=DEFAULT_PAYMENT_TIMEOUT_MINUTES,
        )
        db.session.add(settings)
        db.session.commit()
        click.echo(
            f"PASS Created fee settings: QRIS {settings.qris_fee_percent}%, "
            f"commission {settings.platform_commission_percent}%, "
            f"timeout {settings.payment_timeout_minutes} min"
        )
    else:
        click.echo("PASS Fee settings already present")

    click.echo("DONE")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True, help='Role')
@with_appcontext
def create_user_cli(name, email, role):
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User with email {email} already exists")
        return

    user = User(name=name.strip(), email=email, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {user.name} ({user.email}) with role '{user.role}' (ID: {user.id})")


@users_group.command('token')
@click.option('--email', prompt=True, help='Email address')
@with_appcontext
def issue_token_cli(email):
    """Issue a session token for integration use."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL User {email} not found")
        return

    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Token for {user.email} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@click.group('items')
def items_group():
    """Menu item and stock commands."""


@items_group.command('create')
@click.option('--mitra-email', required=True, help='Owning MITRA email')
@click.option('--name', required=True, help='Item name')
@click.option('--price', required=True, help='Unit price in Rupiah')
@click.option('--stock', type=click.IntRange(min=0), default=0, show_default=True, help='Initial stock')
@with_appcontext
def create_item_cli(mitra_email, name, price, stock):
    mitra = db.session.query(User).filter_by(email=mitra_email.strip().lower()).first()
    if not mitra or mitra.role != ROLE_MITRA:
        click.echo(f"FAIL MITRA {mitra_email} not found")
        return

    try:
        unit_price = Decimal(price)
    except InvalidOperation:
        unit_price = None
    if unit_price is None or not unit_price.is_finite():
        click.echo(f"FAIL Invalid price: {price}")
        return
    if unit_price < 0:
        click.echo("FAIL Price must not be negative")
        return
    if not is_whole_units(unit_price):
        click.echo(f"FAIL Price must be whole Rupiah: {price}")
        return

    item = Item(mitra_id=mitra.id, name=name.strip(), unit_price=unit_price, stock_quantity=stock)
    db.session.add(item)
    db.session.commit()
    click.echo(f"PASS Created item: {item.name} (ID: {item.id}) price {item.unit_price} stock {item.stock_quantity}")


@items_group.command('restock')
@click.option('--item-id', type=int, required=True, help='Item ID')
@click.option('--quantity', type=click.IntRange(min=1), required=True, help='Units to add')
@with_appcontext
def restock_item_cli(item_id, quantity):
    def _op():
        begin_write()
        snapshot = restore_stock(item_id, quantity)
        db.session.commit()
        return snapshot

    try:
        snapshot = run_with_retry(_op)
    except StockError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Item {item_id} stock {snapshot.before} -> {snapshot.after}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(items_group)
