"""Shared pytest fixtures: in-memory database, app, client and data builders."""

import datetime
import json
import os
import tempfile

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["CONFIG_PATH"] = os.path.join(tempfile.gettempdir(), "storefront-billing-no-config.yaml")
os.environ["SUBSCRIPTION_JOB_ENABLED"] = "false"
os.environ["SUBSCRIPTION_GRACE_PERIOD_DAYS"] = "7"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["FLASK_ENV"] = "development"

from werkzeug.security import generate_password_hash

from app import create_app
from extensions import db
from models import ROLE_PLATFORM_ADMIN, SUBSCRIPTION_ACTIVE, Subscription, Tenant, User
from services.billing_period import compute_period

UTC = datetime.timezone.utc
TEST_PASSWORD = "testpassword"


def utc(*args):
    return datetime.datetime(*args, tzinfo=UTC)


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Application context for service-level tests."""
    with app.app_context():
        yield
        db.session.remove()


def create_owner(email="owner@example.com", subdomain="shop", is_active=False,
                 custom_domain=None, name="Test Shop"):
    """Insert a store owner and their tenant; returns ``(user_id, tenant_id)``."""
    user = User(email=email, password_hash=generate_password_hash(TEST_PASSWORD))
    db.session.add(user)
    db.session.flush()
    tenant = Tenant(
        name=name,
        subdomain=subdomain,
        custom_domain=custom_domain,
        owner_id=user.id,
        is_active=is_active,
    )
    db.session.add(tenant)
    db.session.commit()
    return user.id, tenant.id


def create_subscription(tenant_id, start, status=SUBSCRIPTION_ACTIVE, cancelled_at=None):
    period = compute_period(start)
    sub = Subscription(
        tenant_id=tenant_id,
        status=status,
        current_period_start=period.period_start,
        current_period_end=period.period_end,
        next_billing_date=period.next_billing_date,
        cancelled_at=cancelled_at,
    )
    db.session.add(sub)
    db.session.commit()
    return sub.id


def create_admin(email="root@example.com"):
    admin = User(
        email=email,
        password_hash=generate_password_hash(TEST_PASSWORD),
        role=ROLE_PLATFORM_ADMIN,
    )
    db.session.add(admin)
    db.session.commit()
    return admin.id


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def callback_body(external_order_id, status="completed", code="100", order_id="bog-order-1",
                  reject_reason=None):
    """Raw BOG ``order_payment`` callback body."""
    body = {
        "order_id": order_id,
        "external_order_id": external_order_id,
        "order_status": {"key": status},
        "payment_detail": {"code": code},
        "purchase_units": {"transfer_amount": "1.00"},
    }
    if reject_reason:
        body["reject_reason"] = reject_reason
    return json.dumps({"event": "order_payment", "body": body}).encode("utf-8")
