"""Authentication and authorization services."""

from __future__ import annotations

import logging
import re
import secrets
from functools import wraps
from typing import Optional

from flask import g, jsonify
from werkzeug.security import check_password_hash, generate_password_hash

from errors import ConflictError, ValidationError
from extensions import db
from models import PAYMENT_TYPE_SETUP_FEE, ROLE_PLATFORM_ADMIN, ROLE_STORE_OWNER, Tenant, User
from utils import api_error

logger = logging.getLogger(__name__)

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def login_required(f):
    """Decorator that answers 401 if the user is not authenticated."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            return jsonify(api_error("Authentication required")), 401
        return f(*args, **kwargs)

    return decorated


def platform_admin_required(f):
    """Decorator restricting a view to platform administrators."""

    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify(api_error("Authentication required")), 401
        if not user.is_platform_admin:
            return jsonify(api_error("Platform admin access required")), 403
        return f(*args, **kwargs)

    return decorated


def owner_required(f):
    """Decorator that checks the user owns ``g.current_tenant``.

    Must run after the tenant gate has resolved the tenant.  Platform
    admins pass for every tenant.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify(api_error("Authentication required")), 401
        tenant = getattr(g, "current_tenant", None)
        if user.is_platform_admin:
            return f(*args, **kwargs)
        if tenant is None:
            return jsonify(api_error("Tenant ID is required")), 400
        if tenant.owner_id != user.id:
            return jsonify(api_error("Access denied: not the store owner")), 403
        return f(*args, **kwargs)

    return decorated


def authenticate(email: str, password: str) -> Optional[User]:
    """Return the active user matching *email*/*password*, or None."""
    user = User.query.filter_by(email=(email or "").strip().lower()).first()
    if not user or not user.is_active:
        return None
    if not check_password_hash(user.password_hash, password or ""):
        return None
    return user


def register_store_owner(
    email: str,
    password: str,
    tenant_name: str,
    subdomain: str,
    first_name: str = "",
    last_name: str = "",
):
    """Create a store owner, their inactive tenant and its pending setup fee.

    Returns ``(user, tenant, payment)``.  The tenant stays inactive until
    the setup fee settles.
    """
    from services.billing import get_ledger

    email = (email or "").strip().lower()
    subdomain = (subdomain or "").strip().lower()
    tenant_name = (tenant_name or "").strip()
    errors = {}
    if not EMAIL_RE.match(email):
        errors["email"] = "A valid email is required"
    if len(password or "") < MIN_PASSWORD_LENGTH:
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if not tenant_name:
        errors["tenant_name"] = "Store name is required"
    if not SUBDOMAIN_RE.match(subdomain):
        errors["subdomain"] = "Subdomain may contain lowercase letters, digits and hyphens"
    if errors:
        raise ValidationError("Validation failed", details=errors)

    if User.query.filter_by(email=email).first():
        raise ConflictError("User with this email already exists")
    if Tenant.query.filter_by(subdomain=subdomain).first():
        raise ConflictError("Subdomain already taken")

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=first_name or None,
        last_name=last_name or None,
        role=ROLE_STORE_OWNER,
    )
    db.session.add(user)
    db.session.flush()
    tenant = Tenant(name=tenant_name, subdomain=subdomain, owner_id=user.id, is_active=False)
    db.session.add(tenant)
    db.session.commit()
    logger.info("Registered store owner %s with tenant %s", user.id, subdomain)

    payment = get_ledger().create_payment(tenant.id, user.id, PAYMENT_TYPE_SETUP_FEE)
    return user, tenant, payment


def ensure_platform_admin():
    """Create a default platform admin if none exists."""
    if User.query.filter_by(role=ROLE_PLATFORM_ADMIN).count() == 0:
        password = secrets.token_urlsafe(12)
        admin = User(
            email="admin@localhost",
            password_hash=generate_password_hash(password),
            role=ROLE_PLATFORM_ADMIN,
        )
        db.session.add(admin)
        db.session.commit()
        # Print to stdout only, never log credentials to persistent log files
        print(
            f"Created default platform admin admin@localhost. Initial password: {password} "
            "(change immediately after first login)"
        )
