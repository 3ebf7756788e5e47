"""SQLAlchemy models and billing enumerations."""

from __future__ import annotations

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Enumerations (persisted names are part of the external contract)
# ---------------------------------------------------------------------------

PAYMENT_TYPE_SETUP_FEE = "SETUP_FEE"
PAYMENT_TYPE_MONTHLY = "MONTHLY_SUBSCRIPTION"
VALID_PAYMENT_TYPES = {PAYMENT_TYPE_SETUP_FEE, PAYMENT_TYPE_MONTHLY}

PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"
VALID_PAYMENT_STATUSES = {PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED}
TERMINAL_PAYMENT_STATUSES = {PAYMENT_PAID, PAYMENT_FAILED}

VALID_PAYMENT_METHODS = {"MOCK", "BOG"}

SUBSCRIPTION_TRIAL = "TRIAL"
SUBSCRIPTION_ACTIVE = "ACTIVE"
SUBSCRIPTION_CANCELLED = "CANCELLED"
SUBSCRIPTION_EXPIRED = "EXPIRED"
VALID_SUBSCRIPTION_STATUSES = {
    SUBSCRIPTION_TRIAL,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
}

ROLE_STORE_OWNER = "STORE_OWNER"
ROLE_PLATFORM_ADMIN = "PLATFORM_ADMIN"
VALID_ROLES = [ROLE_STORE_OWNER, ROLE_PLATFORM_ADMIN]


# ---------------------------------------------------------------------------
# Users & tenants
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(120))
    last_name = db.Column(db.String(120))
    role = db.Column(db.String(30), nullable=False, default=ROLE_STORE_OWNER)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    owned_tenants = db.relationship("Tenant", back_populates="owner")

    @property
    def is_platform_admin(self) -> bool:
        return self.role == ROLE_PLATFORM_ADMIN


class Tenant(db.Model):
    """A store, reachable through its subdomain or custom domain."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    subdomain = db.Column(db.String(63), unique=True, nullable=False)
    custom_domain = db.Column(db.String(255), unique=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    owner = db.relationship("User", back_populates="owned_tenants")
    subscription = db.relationship(
        "Subscription", back_populates="tenant", uselist=False, cascade="all, delete-orphan"
    )


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """The single recurring-billing record governing a tenant's access."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=SUBSCRIPTION_ACTIVE)
    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False)
    next_billing_date = db.Column(db.DateTime, nullable=False)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant = db.relationship("Tenant", back_populates="subscription")

    __table_args__ = (
        db.Index("ix_subscription_status_period_end", "status", "current_period_end"),
    )


class Payment(db.Model):
    """One payment attempt; settles to PAID or FAILED exactly once."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="GEL")
    status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_method = db.Column(db.String(30), default="MOCK")
    transaction_id = db.Column(db.String(120), unique=True)
    # "metadata" is reserved on declarative classes
    payment_metadata = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user = db.relationship("User")
    tenant = db.relationship("Tenant")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
