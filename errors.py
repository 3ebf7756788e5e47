"""Billing error taxonomy.

Every error raised on the request path derives from :class:`BillingError`
and carries the HTTP status it maps to.  ``create_app`` registers a single
handler that renders them as ``{"success": false, "error": ...}``.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing errors surfaced to HTTP callers."""

    http_status = 400

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(BillingError):
    """Malformed payment request or payload."""

    http_status = 400


class NotFoundError(BillingError):
    """Unknown payment, subscription or tenant."""

    http_status = 404


class ConflictError(BillingError):
    """Duplicate transaction id or competing settlement."""

    http_status = 409


class StateError(BillingError):
    """Transition not allowed from the current subscription/payment state."""

    http_status = 409


class GatewayError(BillingError):
    """Payment provider failure."""

    http_status = 502


class SignatureError(GatewayError):
    """Webhook signature did not verify."""

    http_status = 401
