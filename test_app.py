"""HTTP-level tests for the storefront billing application.

Tests cover: app creation, onboarding and login, payments, subscription
management, the storefront gate, BOG callbacks, platform admin routes and
the ``flask billing`` CLI.
"""

import dataclasses
import datetime

from conftest import (
    TEST_PASSWORD,
    callback_body,
    create_admin,
    create_owner,
    create_subscription,
    login,
    utc,
)
from extensions import db
from models import (
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_TYPE_MONTHLY,
    PAYMENT_TYPE_SETUP_FEE,
    ROLE_PLATFORM_ADMIN,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    AuditLog,
    Payment,
    Subscription,
    Tenant,
    User,
)
from services.billing import get_ledger
from services.bog_gateway import BogOrder, build_external_order_id
from utils import utc_now

SHOP = {"X-Original-Host": "shop.localhost"}


def _recent_start(days_ago=10):
    return utc_now() - datetime.timedelta(days=days_ago)


def _create_payment(app, tenant_id, user_id, payment_type=PAYMENT_TYPE_SETUP_FEE):
    with app.app_context():
        return get_ledger().create_payment(tenant_id, user_id, payment_type).id


def _owner(app, **kwargs):
    with app.app_context():
        return create_owner(**kwargs)


def _admin(app):
    with app.app_context():
        return create_admin()


# ============================================================================
# App creation tests
# ============================================================================


class TestAppCreation:
    def test_app_config(self, app):
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite://"
        assert app.config["TESTING"] is True
        assert app.config["BILLING_CONFIG"].grace_period_days == 7

    def test_platform_admin_created(self, app):
        with app.app_context():
            admin = User.query.filter_by(email="admin@localhost").first()
            assert admin is not None
            assert admin.role == ROLE_PLATFORM_ADMIN

    def test_session_config(self, app):
        assert app.config["SESSION_COOKIE_HTTPONLY"] is True
        assert app.config["SESSION_COOKIE_SAMESITE"] == "Lax"

    def test_scheduler_not_started(self, app):
        assert "reconciliation_scheduler" not in app.extensions

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"status": "ok", "scheduler_running": False}

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]

    def test_unknown_route_is_json(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False


# ============================================================================
# Route tests - Authentication and onboarding
# ============================================================================


REGISTRATION = {
    "email": "Owner@Example.com",
    "password": "s3cret-pass",
    "tenant_name": "My Shop",
    "subdomain": "shop",
}


class TestAuthRoutes:
    def test_register_creates_inactive_store_and_setup_fee(self, client, app):
        resp = client.post("/auth/register", json=REGISTRATION)
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["user"]["email"] == "owner@example.com"
        assert data["tenant"]["is_active"] is False
        assert data["payment"]["type"] == PAYMENT_TYPE_SETUP_FEE
        assert data["payment"]["status"] == PAYMENT_PENDING
        assert data["payment"]["amount"] == "1.00"
        with app.app_context():
            assert Subscription.query.count() == 0

    def test_register_pay_and_open_store(self, client, app):
        payment_id = client.post("/auth/register", json=REGISTRATION).get_json()["data"]["payment"]["id"]
        assert client.get("/storefront", headers=SHOP).status_code == 403

        resp = client.post(f"/payments/{payment_id}/process")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == PAYMENT_PAID

        resp = client.get("/payments/subscription", headers=SHOP)
        assert resp.status_code == 200
        sub = resp.get_json()["data"]
        assert sub["status"] == SUBSCRIPTION_ACTIVE
        assert sub["days_remaining"] >= 27

        resp = client.get("/storefront", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["subscription_warning"] is None

    def test_register_validation(self, client):
        resp = client.post("/auth/register", json={"email": "bad", "password": "x",
                                                   "tenant_name": "", "subdomain": "Bad_Sub"})
        assert resp.status_code == 400
        details = resp.get_json()["details"]
        assert set(details) == {"email", "password", "tenant_name", "subdomain"}

    def test_register_duplicate_email(self, client):
        client.post("/auth/register", json=REGISTRATION)
        resp = client.post("/auth/register", json=dict(REGISTRATION, subdomain="other"))
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "User with this email already exists"

    def test_register_duplicate_subdomain(self, client):
        client.post("/auth/register", json=REGISTRATION)
        resp = client.post("/auth/register", json=dict(REGISTRATION, email="b@example.com"))
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Subdomain already taken"

    def test_login_and_logout(self, client, app):
        _owner(app)
        resp = client.post("/auth/login", json={"email": "owner@example.com",
                                                "password": TEST_PASSWORD})
        assert resp.status_code == 200
        me = client.get("/auth/me").get_json()["data"]
        assert me["email"] == "owner@example.com"
        assert [t["subdomain"] for t in me["tenants"]] == ["shop"]

        assert client.post("/auth/logout").status_code == 200
        assert client.get("/auth/me").status_code == 401

    def test_login_failure(self, client, app):
        _owner(app)
        resp = client.post("/auth/login", json={"email": "owner@example.com", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid email or password"

    def test_logout_rejects_get(self, client):
        assert client.get("/auth/logout").status_code == 405

    def test_csrf_token(self, client):
        resp = client.get("/auth/csrf-token")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["csrf_token"]


# ============================================================================
# Route tests - Payments
# ============================================================================


class TestPaymentRoutes:
    def test_process_requires_login(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        assert client.post(f"/payments/{payment_id}/process").status_code == 401

    def test_process_unknown_payment(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        assert client.post("/payments/999/process").status_code == 404

    def test_process_other_users_payment(self, client, app):
        user_id, tenant_id = _owner(app)
        other_id, _ = _owner(app, email="other@example.com", subdomain="other")
        payment_id = _create_payment(app, tenant_id, user_id)
        login(client, other_id)
        assert client.post(f"/payments/{payment_id}/process").status_code == 403
        assert client.get(f"/payments/{payment_id}").status_code == 403

    def test_process_failed_payment_conflicts(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        with app.app_context():
            get_ledger().settle(payment_id, PAYMENT_FAILED, error="declined")
        login(client, user_id)
        resp = client.post(f"/payments/{payment_id}/process")
        assert resp.status_code == 409
        assert "create a new payment" in resp.get_json()["error"]

    def test_process_payment_sent_to_bog_conflicts(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        with app.app_context():
            get_ledger().attach_gateway_order(payment_id, "BOG-1", "order-1")
        login(client, user_id)
        resp = client.post(f"/payments/{payment_id}/process")
        assert resp.status_code == 409
        with app.app_context():
            payment = db.session.get(Payment, payment_id)
            assert payment.status == PAYMENT_PENDING
            assert payment.transaction_id == "BOG-1"

    def test_process_monthly_without_subscription(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id, PAYMENT_TYPE_MONTHLY)
        login(client, user_id)
        resp = client.post(f"/payments/{payment_id}/process")
        assert resp.status_code == 404
        with app.app_context():
            assert db.session.get(Payment, payment_id).status == PAYMENT_FAILED

    def test_admin_can_process_any_payment(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        login(client, _admin(app))
        assert client.post(f"/payments/{payment_id}/process").status_code == 200

    def test_payment_detail(self, client, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        login(client, user_id)
        data = client.get(f"/payments/{payment_id}").get_json()["data"]
        assert data["id"] == payment_id
        assert data["metadata"] == {"type": PAYMENT_TYPE_SETUP_FEE}

    def test_user_payments(self, client, app):
        user_id, tenant_id = _owner(app)
        _create_payment(app, tenant_id, user_id)
        _create_payment(app, tenant_id, user_id, PAYMENT_TYPE_MONTHLY)
        login(client, user_id)
        data = client.get("/payments/user/payments").get_json()["data"]
        assert len(data) == 2

    def test_pending_setup_fee_created_for_legacy_tenant(self, client, app):
        user_id, tenant_id = _owner(app)
        login(client, user_id)
        resp = client.get("/payments/user/pending-setup-fee")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["tenant_id"] == tenant_id
        again = client.get("/payments/user/pending-setup-fee").get_json()["data"]
        assert again["id"] == resp.get_json()["data"]["id"]

    def test_no_pending_setup_fee_for_subscribed_tenant(self, client, app):
        user_id, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, _recent_start())
        login(client, user_id)
        resp = client.get("/payments/user/pending-setup-fee")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Pending setup fee payment not found"

    def test_tenant_payments(self, client, app):
        user_id, tenant_id = _owner(app)
        other_user, other_tenant = _owner(app, email="other@example.com", subdomain="other")
        _create_payment(app, tenant_id, user_id)
        _create_payment(app, other_tenant, other_user)
        login(client, user_id)
        data = client.get("/payments/tenant/payments", headers=SHOP).get_json()["data"]
        assert [p["tenant_id"] for p in data] == [tenant_id]

    def test_checkout_mock(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        resp = client.post("/payments/checkout", headers=SHOP,
                           json={"type": PAYMENT_TYPE_MONTHLY})
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["payment"]["amount"] == "49.00"
        assert data["payment"]["payment_method"] == "MOCK"
        assert data["redirect_url"] is None

    def test_checkout_invalid_type(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        resp = client.post("/payments/checkout", headers=SHOP, json={"type": "DONATION"})
        assert resp.status_code == 400

    def test_checkout_bog_disabled(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        resp = client.post("/payments/checkout", headers=SHOP,
                           json={"type": PAYMENT_TYPE_SETUP_FEE, "payment_method": "BOG"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "BOG payments are not enabled"

    def test_checkout_bog_returns_redirect(self, client, app):
        class FakeGateway:
            def create_order(self, external_order_id, amount, description, **kwargs):
                self.external_order_id = external_order_id
                return BogOrder("bog-77", "https://payment.bog.ge/?order_id=bog-77")

        gateway = FakeGateway()
        app.config["BOG_CONFIG"] = dataclasses.replace(app.config["BOG_CONFIG"], enabled=True)
        app.extensions["bog_gateway"] = gateway
        user_id, tenant_id = _owner(app)
        login(client, user_id)

        resp = client.post("/payments/checkout", headers=SHOP,
                           json={"type": PAYMENT_TYPE_SETUP_FEE, "payment_method": "bog"})
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        payment_id = data["payment"]["id"]
        assert data["redirect_url"] == "https://payment.bog.ge/?order_id=bog-77"
        assert gateway.external_order_id == f"{tenant_id}:{PAYMENT_TYPE_SETUP_FEE}:{payment_id}"
        assert data["payment"]["transaction_id"] == f"BOG-{gateway.external_order_id}"
        assert data["payment"]["metadata"]["gateway_order_id"] == "bog-77"


# ============================================================================
# Route tests - Subscription management
# ============================================================================


class TestSubscriptionRoutes:
    def test_owner_of_inactive_store_reaches_dashboard(self, client, app):
        user_id, _ = _owner(app, is_active=False)
        login(client, user_id)
        resp = client.get("/payments/tenant/payments", headers=SHOP)
        assert resp.status_code == 200

    def test_tenant_required(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        resp = client.get("/payments/subscription")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Tenant ID is required"

    def test_not_the_owner(self, client, app):
        _owner(app)
        other_id, _ = _owner(app, email="other@example.com", subdomain="other")
        login(client, other_id)
        assert client.get("/payments/subscription", headers=SHOP).status_code == 403

    def test_subscription_not_found(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        resp = client.get("/payments/subscription", headers=SHOP)
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Subscription not found"

    def test_subscription_recovered_from_paid_setup_fee(self, client, app):
        user_id, tenant_id = _owner(app)
        with app.app_context():
            db.session.add(Payment(
                tenant_id=tenant_id, user_id=user_id, type=PAYMENT_TYPE_SETUP_FEE,
                amount=1, status=PAYMENT_PAID, transaction_id="MOCK-legacy",
            ))
            db.session.commit()
        login(client, user_id)
        resp = client.get("/payments/subscription", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == SUBSCRIPTION_ACTIVE
        with app.app_context():
            assert db.session.get(Tenant, tenant_id).is_active is True

    def test_cancel_and_reactivate(self, client, app):
        user_id, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, _recent_start())
        login(client, user_id)

        resp = client.post("/payments/subscription/cancel", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == SUBSCRIPTION_CANCELLED
        assert client.get("/storefront", headers=SHOP).status_code == 200

        resp = client.post("/payments/subscription/reactivate", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == SUBSCRIPTION_ACTIVE
        with app.app_context():
            assert Payment.query.count() == 0
            actions = [a.action for a in AuditLog.query.order_by(AuditLog.id)]
            assert actions[-2:] == ["subscription_cancelled", "subscription_reactivated"]

    def test_reactivate_active_conflicts(self, client, app):
        user_id, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, _recent_start())
        login(client, user_id)
        assert client.post("/payments/subscription/reactivate", headers=SHOP).status_code == 409

    def test_reactivate_expired_charges_a_month(self, client, app):
        user_id, tenant_id = _owner(app, is_active=False)
        with app.app_context():
            create_subscription(tenant_id, _recent_start(90), SUBSCRIPTION_EXPIRED)
        login(client, user_id)
        resp = client.post("/payments/subscription/reactivate", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == SUBSCRIPTION_ACTIVE
        with app.app_context():
            payment = Payment.query.one()
            assert payment.type == PAYMENT_TYPE_MONTHLY
            assert payment.status == PAYMENT_PAID
            assert db.session.get(Tenant, tenant_id).is_active is True

    def test_cancel_expired_conflicts(self, client, app):
        user_id, tenant_id = _owner(app)
        with app.app_context():
            create_subscription(tenant_id, _recent_start(90), SUBSCRIPTION_EXPIRED)
        login(client, user_id)
        assert client.post("/payments/subscription/cancel", headers=SHOP).status_code == 409


# ============================================================================
# Route tests - Storefront
# ============================================================================


class TestStorefrontRoutes:
    def test_inactive_store(self, client, app):
        _owner(app, is_active=False)
        resp = client.get("/storefront", headers=SHOP)
        assert resp.status_code == 403
        body = resp.get_json()
        assert body["error"] == "Store is currently inactive"
        assert body["details"] == {"subdomain": "shop", "is_active": False}

    def test_active_store(self, client, app):
        _owner(app, is_active=True)
        resp = client.get("/storefront", headers=SHOP)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["store"]["subdomain"] == "shop"

    def test_cancelled_store_shows_warning(self, client, app):
        _, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, _recent_start(), SUBSCRIPTION_CANCELLED, utc_now())
        warning = client.get("/storefront", headers=SHOP).get_json()["data"]["subscription_warning"]
        assert warning["cancelled"] is True
        assert warning["daysRemaining"] > 0

    def test_custom_domain(self, client, app):
        _owner(app, is_active=True, custom_domain="myshop.ge")
        resp = client.get("/storefront", headers={"X-Original-Host": "www.myshop.ge"})
        assert resp.status_code == 200

    def test_unknown_store(self, client):
        resp = client.get("/storefront", headers={"X-Original-Host": "ghost.localhost"})
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Tenant not found"

    def test_main_domain(self, client):
        resp = client.get("/storefront")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Store not found"

    def test_tenant_slug_header(self, client, app):
        _owner(app, is_active=True)
        resp = client.get("/storefront", headers={"X-Tenant-Slug": "shop"})
        assert resp.status_code == 200


# ============================================================================
# Route tests - BOG callback
# ============================================================================


class TestBogCallbackRoute:
    def _pending(self, app):
        user_id, tenant_id = _owner(app)
        payment_id = _create_payment(app, tenant_id, user_id)
        return tenant_id, payment_id, build_external_order_id(
            tenant_id, PAYMENT_TYPE_SETUP_FEE, payment_id
        )

    def test_paid_callback(self, client, app):
        tenant_id, payment_id, external_id = self._pending(app)
        resp = client.post("/bog/callback", data=callback_body(external_id),
                           content_type="application/json")
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"action": "paid", "payment_id": payment_id}
        with app.app_context():
            assert db.session.get(Tenant, tenant_id).is_active is True

        resp = client.post("/bog/callback", data=callback_body(external_id),
                           content_type="application/json")
        assert resp.get_json()["data"]["action"] == "duplicate"

    def test_invalid_json(self, client):
        resp = client.post("/bog/callback", data=b"{oops", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid JSON"

    def test_missing_body(self, client):
        assert client.post("/bog/callback").status_code == 400

    def test_invalid_signature(self, client, app):
        _, _, external_id = self._pending(app)
        app.config["BOG_CONFIG"] = dataclasses.replace(
            app.config["BOG_CONFIG"], verify_signatures=True
        )
        resp = client.post("/bog/callback", data=callback_body(external_id),
                           content_type="application/json",
                           headers={"Callback-Signature": "bm90IGEgc2lnbmF0dXJl"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid signature"

    def test_processing_error_asks_for_retry(self, client, monkeypatch):
        class BrokenIngestor:
            def ingest(self, raw_body, headers):
                raise RuntimeError("database is locked")

        monkeypatch.setattr("routes.bog.get_webhook_ingestor", BrokenIngestor)
        resp = client.post("/bog/callback", data=callback_body("1:SETUP_FEE:1"),
                           content_type="application/json")
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Processing error"


# ============================================================================
# Route tests - Platform admin
# ============================================================================


class TestAdminRoutes:
    def test_requires_admin(self, client, app):
        user_id, _ = _owner(app)
        login(client, user_id)
        assert client.get("/admin/tenants").status_code == 403

    def test_requires_login(self, client):
        assert client.get("/admin/tenants").status_code == 401

    def test_list_tenants(self, client, app):
        _, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, _recent_start())
        _owner(app, email="b@example.com", subdomain="bare")
        login(client, _admin(app))
        data = client.get("/admin/tenants").get_json()["data"]
        by_subdomain = {t["subdomain"]: t for t in data}
        assert by_subdomain["shop"]["subscription"]["status"] == SUBSCRIPTION_ACTIVE
        assert by_subdomain["bare"]["subscription"] is None

    def test_activation_override(self, client, app):
        _, tenant_id = _owner(app, is_active=False)
        admin_id = _admin(app)
        login(client, admin_id)
        resp = client.post(f"/admin/tenants/{tenant_id}/activation", json={"is_active": True})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["is_active"] is True
        assert client.get("/storefront", headers=SHOP).status_code == 200
        with app.app_context():
            entry = AuditLog.query.filter_by(action="tenant_activation_override").one()
            assert entry.user_id == admin_id

    def test_activation_requires_boolean(self, client, app):
        _, tenant_id = _owner(app)
        login(client, _admin(app))
        resp = client.post(f"/admin/tenants/{tenant_id}/activation", json={"is_active": "yes"})
        assert resp.status_code == 400

    def test_activation_unknown_tenant(self, client, app):
        login(client, _admin(app))
        resp = client.post("/admin/tenants/999/activation", json={"is_active": True})
        assert resp.status_code == 404


# ============================================================================
# CLI tests
# ============================================================================


class TestBillingCli:
    def test_reconcile(self, app):
        _, lapsing = _owner(app, is_active=True)
        _, expiring = _owner(app, email="b@example.com", subdomain="gone", is_active=True)
        with app.app_context():
            create_subscription(lapsing, utc(2026, 2, 1))
            create_subscription(expiring, utc(2026, 1, 1), SUBSCRIPTION_CANCELLED, utc(2026, 1, 5))

        result = app.test_cli_runner().invoke(
            args=["billing", "reconcile", "--at", "2026-03-02T00:00:00+00:00"]
        )
        assert result.exit_code == 0
        assert "Lapsed: 1" in result.output
        assert "Expired: 1" in result.output
        with app.app_context():
            assert db.session.get(Tenant, expiring).is_active is False
            assert db.session.get(Tenant, lapsing).is_active is True

    def test_reconcile_invalid_timestamp(self, app):
        result = app.test_cli_runner().invoke(args=["billing", "reconcile", "--at", "soon"])
        assert result.exit_code == 1

    def test_show(self, app):
        _, tenant_id = _owner(app, is_active=True)
        with app.app_context():
            create_subscription(tenant_id, utc(2026, 2, 1))
        result = app.test_cli_runner().invoke(args=["billing", "show", "shop"])
        assert result.exit_code == 0
        assert '"status": "ACTIVE"' in result.output

    def test_show_without_subscription(self, app):
        _owner(app)
        result = app.test_cli_runner().invoke(args=["billing", "show", "shop"])
        assert result.exit_code == 0
        assert "No subscription." in result.output

    def test_show_unknown_tenant(self, app):
        result = app.test_cli_runner().invoke(args=["billing", "show", "ghost"])
        assert result.exit_code == 1
