"""
SAP MIGO Proxy
Flask Application Factory.

Usage:
    from migo_proxy import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
import traceback

from flask import Flask, abort, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from migo_proxy.config import SapSettings, config
from migo_proxy.core.exceptions import ProxyError, UpstreamBusinessError
from migo_proxy.integrations.sap_gateway import SapGateway
from migo_proxy.middleware.diagnostics import run_startup_diagnostics
from migo_proxy.middleware.logging_config import configure_logging
from migo_proxy.middleware.timing import init_request_timing
from migo_proxy.services.credentials_service import AUTH_HEADER, ENVIRONMENT_HEADER
from migo_proxy.utils.errors import E, api_error

logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-CSRF-Token",
    AUTH_HEADER,
    ENVIRONMENT_HEADER,
]
CORS_METHODS = ["GET", "POST", "OPTIONS"]


def _init_cors(app: Flask):
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = "*"
    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        allow_headers=CORS_ALLOW_HEADERS,
        methods=CORS_METHODS,
        expose_headers=["X-Request-ID", "X-Request-Duration-Ms"],
        send_wildcard=origins == "*",
    )


def _register_error_handlers(app: Flask):
    @app.errorhandler(ProxyError)
    def handle_proxy_error(exc: ProxyError):
        status = exc.http_status
        log = logger.error if status >= 500 else logger.warning
        log("%s (%d): %s", type(exc).__name__, status, exc.message,
            extra={"path": request.path, "status": status})
        extra = dict(exc.extra) if isinstance(exc, UpstreamBusinessError) else None
        return api_error(exc.code, exc.message, status=status, details=exc.details, extra=extra)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        code = E.NOT_FOUND if exc.code == 404 else E.BAD_REQUEST
        extra = {"path": request.path} if exc.code == 404 else None
        return api_error(code, exc.description or exc.name, status=exc.code, extra=extra)

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logger.error("Unhandled error on %s: %s", request.path, exc, exc_info=exc)
        extra = None
        if app.config.get("EXPOSE_STACKTRACES"):
            extra = {"stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))}
        return api_error(E.INTERNAL, "Internal server error", status=500, details=str(exc), extra=extra)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── SAP settings + gateway (one per process, immutable) ──────────────
    settings = SapSettings.from_env()
    app.extensions["sap_settings"] = settings
    app.extensions["sap_gateway"] = SapGateway(verify_tls=settings.verify_tls)

    # ── CORS (preflight for every /api route) ────────────────────────────
    _init_cors(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method == "POST" and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Blueprints ───────────────────────────────────────────────────────
    from migo_proxy.blueprints.batch_bp import batch_bp
    from migo_proxy.blueprints.health_bp import health_bp
    from migo_proxy.blueprints.migo_bp import migo_bp

    app.register_blueprint(migo_bp)
    app.register_blueprint(batch_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers (JSON envelope everywhere) ────────────────────────
    _register_error_handlers(app)

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app, settings)

    return app
