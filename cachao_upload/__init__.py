"""Flask application factory for the Cachao uploader."""

import os

from flask import Flask

from cachao_upload.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Load configuration
    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024 * 1024  # 16 GB max upload
    app.config["SETTINGS"] = settings

    # Register blueprints
    from cachao_upload.routes.events import events_bp
    from cachao_upload.routes.logs import logs_bp
    from cachao_upload.routes.settings import settings_bp
    from cachao_upload.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/queues")
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    # Log application startup
    from cachao_upload.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version()},
    )

    return app
