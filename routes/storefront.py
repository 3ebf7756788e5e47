"""Public storefront routes."""

from flask import Blueprint, g, jsonify

from services.tenant import storefront_tenant_required
from utils import api_success

storefront_bp = Blueprint("storefront", __name__)


@storefront_bp.route("/storefront")
@storefront_tenant_required
def index():
    """Public store info with the advisory subscription warning, if any."""
    tenant = g.current_tenant
    return jsonify(api_success({
        "store": {
            "id": tenant.id,
            "name": tenant.name,
            "subdomain": tenant.subdomain,
            "custom_domain": tenant.custom_domain,
        },
        "subscription_warning": g.subscription_warning,
    }))
