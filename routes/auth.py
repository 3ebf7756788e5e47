"""Authentication and store-owner onboarding routes."""

from flask import Blueprint, jsonify, request, session
from flask_wtf.csrf import generate_csrf

from extensions import limiter
from services.auth import authenticate, get_current_user, login_required, register_store_owner
from services.ledger import payment_to_dict
from utils import api_error, api_success, isoformat

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def user_to_dict(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
    }


def tenant_to_dict(tenant) -> dict:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "subdomain": tenant.subdomain,
        "custom_domain": tenant.custom_domain,
        "is_active": tenant.is_active,
        "created_at": isoformat(tenant.created_at),
    }


def _start_session(user):
    session.clear()
    session["user_id"] = user.id
    session.permanent = True


@auth_bp.route("/register", methods=["POST"])
@limiter.limit("5 per minute")
def register():
    """Create a store owner with an inactive store and its pending setup fee."""
    data = request.get_json(silent=True) or {}
    user, tenant, payment = register_store_owner(
        email=data.get("email", ""),
        password=data.get("password", ""),
        tenant_name=data.get("tenant_name", ""),
        subdomain=data.get("subdomain", ""),
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
    )
    _start_session(user)
    return jsonify(api_success(
        {
            "user": user_to_dict(user),
            "tenant": tenant_to_dict(tenant),
            "payment": payment_to_dict(payment),
        },
        "Registration successful. Pay the setup fee to activate your store.",
    )), 201


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    data = request.get_json(silent=True) or {}
    user = authenticate(data.get("email", ""), data.get("password", ""))
    if user is None:
        return jsonify(api_error("Invalid email or password")), 401
    _start_session(user)
    return jsonify(api_success(user_to_dict(user), "Login successful"))


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify(api_success(None, "Logged out"))


@auth_bp.route("/me")
@login_required
def me():
    user = get_current_user()
    data = user_to_dict(user)
    data["tenants"] = [tenant_to_dict(t) for t in user.owned_tenants]
    return jsonify(api_success(data))


@auth_bp.route("/csrf-token")
def csrf_token():
    """Token for the ``X-CSRFToken`` header on session-authenticated POSTs."""
    return jsonify(api_success({"csrf_token": generate_csrf()}))
