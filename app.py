"""Application factory: clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, session
from sqlalchemy import event, text
from werkzeug.exceptions import HTTPException

from billing_cli import register_billing_commands
from config import enable_sqlite_fks, load_config
from errors import BillingError
from extensions import csrf, db, limiter
from models import User
from routes import register_blueprints
from services.auth import ensure_platform_admin
from services.reconciliation import ReconciliationScheduler
from utils import api_error, api_success

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, bog_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["BOG_CONFIG"] = bog_cfg
    app.config["RATELIMIT_ENABLED"] = (
        os.environ.get("RATELIMIT_ENABLED", "true").lower() in ("true", "1", "yes")
    )

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        ensure_platform_admin()

    register_blueprints(app)
    register_billing_commands(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_user():
        """Set ``g.current_user`` from the session."""
        g.current_user = None
        g.current_tenant = None
        g.subscription_warning = None
        user_id = session.get("user_id")
        if not user_id:
            return
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            session.clear()
            return
        g.current_user = user

    @app.route("/health")
    def health():
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return jsonify(api_error("Database unavailable")), 503
        scheduler = app.extensions.get("reconciliation_scheduler")
        return jsonify(api_success({
            "status": "ok",
            "scheduler_running": bool(scheduler and scheduler.running),
        }))

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # X-XSS-Protection "0" is recommended; the filter is deprecated
        # and can introduce vulnerabilities in older browsers
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = (
            "strict-origin-when-cross-origin"
        )
        response.headers["Permissions-Policy"] = (
            "geolocation=(), camera=(), microphone=()"
        )
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        if error.http_status >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        return jsonify(api_error(error.message, error.details)), error.http_status

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify(api_error(error.description or error.name)), error.code

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify(api_error("Too many attempts. Try again later.")), 429

    @app.errorhandler(500)
    def server_error(_error):
        return jsonify(api_error("Internal server error")), 500

    # ------------------------------------------------------------------
    # Reconciliation scheduler
    # ------------------------------------------------------------------

    if billing_cfg.scheduler_enabled and not app.config.get("TESTING"):
        scheduler = ReconciliationScheduler(app, billing_cfg.scheduler_interval_ms / 1000)
        app.extensions["reconciliation_scheduler"] = scheduler
        scheduler.start()
    else:
        logger.info("Subscription reconciliation scheduler disabled")

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
