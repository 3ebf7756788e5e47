"""Tenant resolution and per-request access policies."""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Iterable, Optional

from flask import abort, current_app, g, jsonify, request
from sqlalchemy import or_

from errors import NotFoundError
from models import SUBSCRIPTION_CANCELLED, Tenant
from services.subscription import days_until
from utils import api_error, as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)

TENANT_SLUG_HEADER = "X-Tenant-Slug"


def get_current_tenant() -> Optional[Tenant]:
    """Return the resolved Tenant object from ``g``, or None."""
    return getattr(g, "current_tenant", None)


def get_current_tenant_id() -> Optional[int]:
    tenant = get_current_tenant()
    return tenant.id if tenant else None


def normalize_host(host: Optional[str]) -> str:
    return (host or "").strip().split(":")[0].lower()


def extract_subdomain(host: str) -> Optional[str]:
    """First label of *host* when it names a store.

    ``shop.shopu.ge`` and ``shop.localhost`` name the store ``shop``;
    ``shopu.ge`` and ``localhost`` name none.
    """
    if host.replace(".", "").isdigit():
        return None
    parts = host.split(".")
    if host == "localhost" or host.endswith(".localhost"):
        return parts[0] if len(parts) > 1 else None
    return parts[0] if len(parts) > 2 else None


def find_by_custom_domain(host: str) -> Optional[Tenant]:
    bare = host[4:] if host.startswith("www.") else host
    return (
        Tenant.query.filter(Tenant.custom_domain.isnot(None))
        .filter(or_(
            Tenant.custom_domain == host,
            Tenant.custom_domain == f"www.{host}",
            Tenant.custom_domain == bare,
        ))
        .first()
    )


def resolve_tenant(host: str, main_domains: Iterable[str],
                   slug: Optional[str] = None) -> Optional[Tenant]:
    """Map a request host to a tenant.

    Order: path slug on a main domain, custom domain, subdomain.  Returns
    None when the host names no store and raises NotFoundError when it
    names one that does not exist.
    """
    if slug and host in main_domains:
        tenant = Tenant.query.filter_by(subdomain=slug.strip().lower()).first()
        if tenant is None:
            raise NotFoundError("Tenant not found", details={"subdomain": slug})
        return tenant

    tenant = find_by_custom_domain(host)
    if tenant is not None:
        return tenant
    if host in main_domains:
        return None

    subdomain = extract_subdomain(host)
    if not subdomain:
        return None
    tenant = Tenant.query.filter_by(subdomain=subdomain).first()
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"subdomain": subdomain})
    return tenant


def resolve_request_tenant() -> Optional[Tenant]:
    host = normalize_host(
        request.headers.get("X-Original-Host") or request.headers.get("Host")
    )
    if not host:
        abort(400, description="Host header is required")
    main_domains = current_app.config["APP_CONFIG"].main_domains
    return resolve_tenant(host, main_domains, request.headers.get(TENANT_SLUG_HEADER))


class StoreInactive(Exception):
    def __init__(self, tenant: Tenant):
        super().__init__("Store is currently inactive")
        self.tenant = tenant


def subscription_warning(tenant: Tenant, now: Optional[datetime] = None) -> Optional[dict]:
    """Advisory notice for storefronts of cancelled subscriptions."""
    sub = tenant.subscription
    if sub is None or sub.status != SUBSCRIPTION_CANCELLED:
        return None
    now = now or utc_now()
    period_end = as_utc(sub.current_period_end)
    if period_end < now:
        return {"expired": True, "periodEnd": isoformat(period_end)}
    return {
        "cancelled": True,
        "periodEnd": isoformat(period_end),
        "daysRemaining": days_until(period_end, now),
    }


def check_storefront_access(tenant: Tenant, now: Optional[datetime] = None) -> Optional[dict]:
    """Return the subscription warning, or None; raises if the store is inactive.

    Only ``tenant.is_active`` decides access; tenants without a
    subscription are served.
    """
    if not tenant.is_active:
        raise StoreInactive(tenant)
    return subscription_warning(tenant, now)


def admin_tenant_required(f):
    """Resolve the tenant for dashboard routes.

    Inactive tenants and tenants without a subscription are let through
    so their owners can pay.  ``g.current_tenant`` may be None on a bare
    main domain.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        g.current_tenant = resolve_request_tenant()
        g.subscription_warning = None
        return f(*args, **kwargs)

    return decorated


def storefront_tenant_required(f):
    """Resolve the tenant for public storefront routes; inactive stores get 403."""

    @wraps(f)
    def decorated(*args, **kwargs):
        tenant = resolve_request_tenant()
        if tenant is None:
            raise NotFoundError("Store not found")
        try:
            g.subscription_warning = check_storefront_access(tenant)
        except StoreInactive:
            logger.info("Storefront request for inactive tenant %s refused", tenant.subdomain)
            return jsonify(api_error(
                "Store is currently inactive",
                {"subdomain": tenant.subdomain, "is_active": False},
            )), 403
        g.current_tenant = tenant
        return f(*args, **kwargs)

    return decorated
