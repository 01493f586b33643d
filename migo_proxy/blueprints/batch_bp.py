"""
Batch information blueprint.

Endpoints:
    GET /api/BatchInfo/<batch_number>         — direct backend, caller credentials
    GET /api/BatchInfoGateway/<batch_number>  — API Management (prd: caller, dev: service account)
    GET /api/batch/300/<batch_number>         — production gateway pass-through
"""

from flask import Blueprint, g, jsonify, request

from migo_proxy.blueprints import current_caller, sap_gateway, sap_settings
from migo_proxy.services import batch_service
from migo_proxy.services.credentials_service import ENVIRONMENT_HEADER, require_auth_header
from migo_proxy.services.environment_service import PRD, normalize_environment

batch_bp = Blueprint("batch", __name__, url_prefix="/api")


@batch_bp.route("/BatchInfo/<batch_number>", methods=["GET"])
def batch_info(batch_number):
    """First BatchInfoSet row for the batch, from the caller's SAP system."""
    caller = current_caller()
    row = batch_service.get_batch_info(sap_settings(), sap_gateway(), caller, batch_number)
    return jsonify(row)


@batch_bp.route("/BatchInfoGateway/<batch_number>", methods=["GET"])
def batch_info_gateway(batch_number):
    """First BatchInfoSet row for the batch, through API Management."""
    settings = sap_settings()
    environment = request.headers.get(ENVIRONMENT_HEADER) or settings.default_environment
    g.sap_environment = environment

    # Development reads use the service account; only production needs the caller
    caller = current_caller() if normalize_environment(environment) == PRD else None
    row = batch_service.get_batch_info_gateway(
        settings, sap_gateway(), environment, batch_number, caller=caller
    )
    return jsonify(row)


@batch_bp.route("/batch/300/<batch_number>", methods=["GET"])
def batch_300(batch_number):
    """Production batch lookup; SAP's status and body are passed through."""
    encoded_auth = require_auth_header(request.headers)
    g.sap_environment = PRD
    body, status = batch_service.get_batch_300(
        sap_settings(), sap_gateway(), encoded_auth, batch_number
    )
    return jsonify(body), status
