"""Billing service wiring for the current Flask application."""

from __future__ import annotations

from flask import current_app

from config_models import BillingConfig, BogConfig
from extensions import db
from services.bog_gateway import BogGateway
from services.ledger import PaymentLedger
from services.subscription import SubscriptionLifecycle
from services.webhook import WebhookIngestor, make_verifier


def get_billing_config() -> BillingConfig:
    return current_app.config["BILLING_CONFIG"]


def get_bog_config() -> BogConfig:
    return current_app.config["BOG_CONFIG"]


def get_lifecycle() -> SubscriptionLifecycle:
    return SubscriptionLifecycle(db.session, get_billing_config())


def get_ledger() -> PaymentLedger:
    return PaymentLedger(db.session, get_billing_config(), get_lifecycle())


def get_gateway() -> BogGateway:
    """Return the app-wide BOG client so its token cache is shared."""
    gateway = current_app.extensions.get("bog_gateway")
    if gateway is None:
        gateway = BogGateway(get_bog_config())
        current_app.extensions["bog_gateway"] = gateway
    return gateway


def get_webhook_ingestor() -> WebhookIngestor:
    return WebhookIngestor(get_ledger(), make_verifier(get_bog_config()))
