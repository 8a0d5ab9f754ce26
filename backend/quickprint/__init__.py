# backend/quickprint/__init__.py
from flask import Flask, request

from .config import Config, IdentitySettings
from .extensions import SERVICES_KEY, db, migrate
from .logging_config import configure_logging


def create_app(config_object=None, **collaborators) -> Flask:
    """
    Application factory.

    collaborators override the components built from config
    (sms_channel, email_channel, webauthn_verifier, google_verifier,
    event_bus); tests pass fakes here.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.container import build_services
    settings = IdentitySettings.from_mapping(app.config)
    app.extensions[SERVICES_KEY] = build_services(settings, **collaborators)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.passkey import passkey_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(passkey_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            app.config["FRONTEND_URL"].rstrip("/"),
            app.config["RP_ORIGIN"].rstrip("/"),
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
