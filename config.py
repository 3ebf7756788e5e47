"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets
from decimal import Decimal, InvalidOperation

import yaml

from config_models import AppConfig, BillingConfig, BogConfig

logger = logging.getLogger(__name__)

DEFAULT_SETUP_FEE = Decimal("1.00")
DEFAULT_MONTHLY_SUBSCRIPTION = Decimal("49.00")
DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_SCHEDULER_INTERVAL_MS = 60 * 60 * 1000
DEFAULT_MAIN_DOMAINS = ["shopu.ge", "localhost", "127.0.0.1"]

# Sandbox endpoints; production uses oauth2.bog.ge / api.bog.ge
DEFAULT_BOG_OAUTH_URL = (
    "https://oauth2-sandbox.bog.ge/auth/realms/bog/protocol/openid-connect/token"
)
DEFAULT_BOG_API_URL = "https://api-sandbox.bog.ge/payments/v1"


def _as_bool(value) -> bool:
    return str(value).lower() in ("true", "1", "yes")


def _as_decimal(value, default: Decimal) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Invalid amount %r in configuration, using %s", value, default)
        return default


def _as_positive_int(value, default: int, name: str) -> int:
    try:
        parsed = int(value)
    except (ValueError, TypeError):
        logger.warning("Invalid %s %r, using default %s", name, value, default)
        return default
    if parsed <= 0:
        logger.warning("%s must be positive (got %s), using default %s", name, parsed, default)
        return default
    return parsed


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, BogConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    bog_cfg = raw.get("bog", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    main_domains = os.environ.get("MAIN_DOMAINS")
    if main_domains:
        domains = [d.strip().lower() for d in main_domains.split(",") if d.strip()]
    else:
        domains = [d.lower() for d in app_cfg.get("main_domains", DEFAULT_MAIN_DOMAINS)]

    return (
        AppConfig(
            name=app_cfg.get("name", "Shopu"),
            secret_key=secret_key,
            main_domains=domains,
        ),
        BillingConfig(
            setup_fee=_as_decimal(
                os.environ.get("SETUP_FEE", billing_cfg.get("setup_fee", DEFAULT_SETUP_FEE)),
                DEFAULT_SETUP_FEE,
            ),
            monthly_subscription=_as_decimal(
                os.environ.get(
                    "MONTHLY_SUBSCRIPTION",
                    billing_cfg.get("monthly_subscription", DEFAULT_MONTHLY_SUBSCRIPTION),
                ),
                DEFAULT_MONTHLY_SUBSCRIPTION,
            ),
            grace_period_days=_as_positive_int(
                os.environ.get(
                    "SUBSCRIPTION_GRACE_PERIOD_DAYS",
                    billing_cfg.get("grace_period_days", DEFAULT_GRACE_PERIOD_DAYS),
                ),
                DEFAULT_GRACE_PERIOD_DAYS,
                "SUBSCRIPTION_GRACE_PERIOD_DAYS",
            ),
            scheduler_interval_ms=_as_positive_int(
                os.environ.get(
                    "SUBSCRIPTION_JOB_INTERVAL_MS",
                    billing_cfg.get("scheduler_interval_ms", DEFAULT_SCHEDULER_INTERVAL_MS),
                ),
                DEFAULT_SCHEDULER_INTERVAL_MS,
                "SUBSCRIPTION_JOB_INTERVAL_MS",
            ),
            scheduler_enabled=_as_bool(
                os.environ.get(
                    "SUBSCRIPTION_JOB_ENABLED", billing_cfg.get("scheduler_enabled", True)
                )
            ),
            currency=billing_cfg.get("currency", "GEL"),
        ),
        BogConfig(
            enabled=_as_bool(os.environ.get("BOG_ENABLED", bog_cfg.get("enabled", False))),
            client_id=os.environ.get("BOG_CLIENT_ID", bog_cfg.get("client_id", "")),
            client_secret=os.environ.get("BOG_CLIENT_SECRET", bog_cfg.get("client_secret", "")),
            oauth_url=os.environ.get("BOG_OAUTH_URL", bog_cfg.get("oauth_url", DEFAULT_BOG_OAUTH_URL)),
            api_url=os.environ.get("BOG_API_URL", bog_cfg.get("api_url", DEFAULT_BOG_API_URL)),
            callback_url=os.environ.get("BOG_CALLBACK_URL", bog_cfg.get("callback_url", "")),
            success_url=os.environ.get("BOG_SUCCESS_URL", bog_cfg.get("success_url", "")),
            fail_url=os.environ.get("BOG_FAIL_URL", bog_cfg.get("fail_url", "")),
            verify_signatures=_as_bool(
                os.environ.get("BOG_VERIFY_SIGNATURES", bog_cfg.get("verify_signatures", False))
            ),
            public_key=os.environ.get("BOG_CALLBACK_PUBLIC_KEY", bog_cfg.get("public_key", "")),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///storefront.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
