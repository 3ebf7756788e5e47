"""Payment and subscription routes for store owners."""

import logging

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import limiter
from models import VALID_PAYMENT_TYPES
from services.auth import get_current_user, login_required, owner_required
from services.billing import get_bog_config, get_gateway, get_ledger, get_lifecycle
from services.bog_gateway import build_external_order_id, transaction_id_for
from services.ledger import payment_to_dict
from services.tenant import admin_tenant_required, get_current_tenant
from utils import api_error, api_success

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _require_tenant():
    tenant = get_current_tenant()
    if tenant is None:
        raise ValidationError("Tenant ID is required")
    return tenant


def _can_access(payment) -> bool:
    user = get_current_user()
    return user.is_platform_admin or payment.user_id == user.id


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@payments_bp.route("/checkout", methods=["POST"])
@login_required
@admin_tenant_required
@owner_required
def checkout():
    """Create a PENDING payment for the current tenant.

    With ``payment_method=BOG`` a hosted BOG order is created as well and
    its redirect URL returned.
    """
    tenant = _require_tenant()
    data = request.get_json(silent=True) or {}
    payment_type = data.get("type", "")
    payment_method = (data.get("payment_method") or "MOCK").upper()
    if payment_type not in VALID_PAYMENT_TYPES:
        raise ValidationError(
            "Invalid payment type", details={"allowed": sorted(VALID_PAYMENT_TYPES)}
        )

    user = get_current_user()
    ledger = get_ledger()
    if payment_method == "BOG" and not get_bog_config().enabled:
        raise ValidationError("BOG payments are not enabled")
    payment = ledger.create_payment(tenant.id, user.id, payment_type, payment_method)
    redirect_url = None
    if payment_method == "BOG":
        external_id = build_external_order_id(tenant.id, payment_type, payment.id)
        order = get_gateway().create_order(
            external_id,
            payment.amount,
            f"{tenant.name}: {payment_type}",
            customer_name=" ".join(filter(None, [user.first_name, user.last_name])),
            customer_email=user.email,
            idempotency_key=external_id,
        )
        payment = ledger.attach_gateway_order(
            payment.id, transaction_id_for(external_id), order.order_id
        )
        redirect_url = order.redirect_url

    return jsonify(api_success(
        {"payment": payment_to_dict(payment), "redirect_url": redirect_url},
        "Payment created",
    )), 201


@payments_bp.route("/<int:payment_id>/process", methods=["POST"])
@limiter.limit("10 per minute")
@login_required
def process(payment_id):
    """Settle a payment through the mock gateway."""
    ledger = get_ledger()
    payment = ledger.get_payment(payment_id)
    if payment is None:
        return jsonify(api_error("Payment not found")), 404
    if not _can_access(payment):
        return jsonify(api_error("Forbidden")), 403
    payment = ledger.process_mock_payment(payment_id)
    return jsonify(api_success(payment_to_dict(payment), "Payment processed successfully"))


@payments_bp.route("/<int:payment_id>")
@login_required
def detail(payment_id):
    payment = get_ledger().get_payment(payment_id)
    if payment is None:
        return jsonify(api_error("Payment not found")), 404
    if not _can_access(payment):
        return jsonify(api_error("Forbidden")), 403
    return jsonify(api_success(payment_to_dict(payment)))


@payments_bp.route("/user/payments")
@login_required
def user_payments():
    payments = get_ledger().get_user_payments(get_current_user().id)
    return jsonify(api_success([payment_to_dict(p) for p in payments]))


@payments_bp.route("/user/pending-setup-fee")
@login_required
def pending_setup_fee():
    """The user's pending setup fee, created for legacy tenants if missing."""
    payment = get_ledger().get_or_create_pending_setup_fee(get_current_user())
    if payment is None:
        return jsonify(api_error("Pending setup fee payment not found")), 404
    return jsonify(api_success(payment_to_dict(payment)))


@payments_bp.route("/tenant/payments")
@login_required
@admin_tenant_required
@owner_required
def tenant_payments():
    tenant = _require_tenant()
    payments = get_ledger().get_tenant_payments(tenant.id)
    return jsonify(api_success([payment_to_dict(p) for p in payments]))


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

@payments_bp.route("/subscription")
@login_required
@admin_tenant_required
@owner_required
def subscription():
    """Current subscription; recreated when the setup fee was paid but the row is missing."""
    tenant = _require_tenant()
    lifecycle = get_lifecycle()
    sub = lifecycle.get(tenant.id)
    if sub is None:
        sub = lifecycle.recover_subscription(tenant.id)
    if sub is None:
        return jsonify(api_error("Subscription not found")), 404
    return jsonify(api_success(lifecycle.snapshot(sub)))


@payments_bp.route("/subscription/cancel", methods=["POST"])
@login_required
@admin_tenant_required
@owner_required
def cancel_subscription():
    """Cancel at period end; the store stays up through the grace period."""
    tenant = _require_tenant()
    lifecycle = get_lifecycle()
    sub = lifecycle.cancel(tenant.id, user_id=get_current_user().id)
    return jsonify(api_success(
        lifecycle.snapshot(sub),
        "Subscription cancelled. Your store stays online until the end of the billing period.",
    ))


@payments_bp.route("/subscription/reactivate", methods=["POST"])
@login_required
@admin_tenant_required
@owner_required
def reactivate_subscription():
    tenant = _require_tenant()
    lifecycle = get_lifecycle()
    sub = lifecycle.reactivate(tenant.id, get_ledger(), user_id=get_current_user().id)
    return jsonify(api_success(lifecycle.snapshot(sub), "Subscription reactivated"))
