"""Blueprint registration."""

from routes.admin import admin_bp
from routes.auth import auth_bp
from routes.bog import bog_bp
from routes.payments import payments_bp
from routes.storefront import storefront_bp

ALL_BLUEPRINTS = [
    auth_bp,
    payments_bp,
    bog_bp,
    storefront_bp,
    admin_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
