"""Platform administration routes."""

import logging

from flask import Blueprint, jsonify, request

from errors import NotFoundError, ValidationError
from extensions import db
from models import Tenant
from routes.auth import tenant_to_dict
from services.audit import log_action
from services.auth import get_current_user, platform_admin_required
from services.billing import get_lifecycle
from utils import api_success

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.route("/tenants")
@platform_admin_required
def tenants():
    """All tenants with their subscription snapshot."""
    lifecycle = get_lifecycle()
    result = []
    for tenant in Tenant.query.order_by(Tenant.name).all():
        data = tenant_to_dict(tenant)
        sub = tenant.subscription
        data["subscription"] = lifecycle.snapshot(sub) if sub else None
        result.append(data)
    return jsonify(api_success(result))


@admin_bp.route("/tenants/<int:tenant_id>/activation", methods=["POST"])
@platform_admin_required
def set_activation(tenant_id):
    """Force ``is_active`` on or off regardless of subscription state."""
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    data = request.get_json(silent=True) or {}
    is_active = data.get("is_active")
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be true or false")

    previous = tenant.is_active
    tenant.is_active = is_active
    log_action(
        "tenant_activation_override", "tenant", tenant.id,
        f"is_active {previous} -> {is_active}",
        tenant_id=tenant.id,
    )
    db.session.commit()
    logger.info("Admin %s set tenant %s is_active=%s",
                get_current_user().id, tenant.subdomain, is_active)
    return jsonify(api_success(tenant_to_dict(tenant), "Tenant updated"))
