"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — SAP configuration summary (no upstream calls)
"""

from flask import Blueprint, current_app, jsonify

from migo_proxy.blueprints import sap_settings
from migo_proxy.middleware.diagnostics import collect_config_issues

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Configuration-level liveness check.

    SAP itself is never called: a probe would need caller credentials.
    """
    settings = sap_settings()
    return jsonify({
        "status": "healthy",
        "checks": {
            "sap": settings.summary(),
            "warnings": collect_config_issues(settings),
            "app": {
                "name": "SAP MIGO Proxy",
                "debug": current_app.debug,
                "testing": current_app.testing,
            },
        },
    }), 200
