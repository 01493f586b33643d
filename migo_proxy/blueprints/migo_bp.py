"""
MIGO goods movement blueprint.

Endpoints:
    GET  /api/migo/metadata       — MIGO service $metadata (direct backend, XML)
    POST /api/migo/check          — validate a transfer (test run)
    POST /api/migo/post           — execute a transfer
    GET  /api/migo/gateway/csrf   — CSRF token + cookies from API Management
    POST /api/migo/gateway/post   — post with a frontend-held CSRF token

All endpoints read SAP credentials from X-User-Auth and the environment from
X-User-Environment. Failures are raised as ProxyError and rendered by the
app-level error handler.
"""

from flask import Blueprint, Response, jsonify, request

from migo_proxy.blueprints import current_caller, sap_gateway, sap_settings
from migo_proxy.services import migo_service

migo_bp = Blueprint("migo", __name__, url_prefix="/api/migo")


@migo_bp.route("/metadata", methods=["GET"])
def metadata():
    """Return the OData $metadata document of the MIGO service."""
    caller = current_caller()
    document = migo_service.fetch_metadata(sap_settings(), sap_gateway(), caller)
    return Response(document, mimetype="application/xml")


@migo_bp.route("/check", methods=["POST"])
def check_transfer():
    """Validate a transfer against SAP without posting it."""
    caller = current_caller()
    body = request.get_json(silent=True)
    result = migo_service.submit_transfer(
        sap_settings(), sap_gateway(), caller, body, mode=migo_service.CHECK
    )
    return jsonify(result)


@migo_bp.route("/post", methods=["POST"])
def post_transfer():
    """Post a transfer (creates the material document)."""
    caller = current_caller()
    body = request.get_json(silent=True)
    result = migo_service.submit_transfer(
        sap_settings(), sap_gateway(), caller, body, mode=migo_service.POST
    )
    return jsonify(result)


# ══════════════════════════════════════════════════════════════════
# API Management gateway (frontend-driven handshake)
# ══════════════════════════════════════════════════════════════════


@migo_bp.route("/gateway/csrf", methods=["GET"])
def gateway_csrf():
    caller = current_caller()
    return jsonify(migo_service.gateway_csrf(sap_settings(), sap_gateway(), caller))


@migo_bp.route("/gateway/post", methods=["POST"])
def gateway_post():
    caller = current_caller()
    body = request.get_json(silent=True) or {}
    return jsonify(migo_service.gateway_post(sap_settings(), sap_gateway(), caller, body))
