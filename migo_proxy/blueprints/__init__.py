"""
SAP MIGO Proxy
Blueprint registry and request helpers shared by the route modules.
"""

from flask import current_app, g, request

from migo_proxy.config import SapSettings
from migo_proxy.integrations.sap_gateway import SapGateway
from migo_proxy.services.credentials_service import CallerIdentity, extract_caller


def sap_settings() -> SapSettings:
    """SapSettings built once at app creation."""
    return current_app.extensions["sap_settings"]


def sap_gateway() -> SapGateway:
    """The app-wide SapGateway (replaced by a mock-backed one in tests)."""
    return current_app.extensions["sap_gateway"]


def current_caller() -> CallerIdentity:
    """Decode the caller from request headers and tag the request log with its environment."""
    caller = extract_caller(request.headers, sap_settings().default_environment)
    g.sap_environment = caller.environment
    return caller
