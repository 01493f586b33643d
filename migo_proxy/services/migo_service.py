"""
MIGO transfer service — goods movement check/post against SAP.

Business rules:
  - Validation always runs before any SAP call (credentials are checked by
    the caller before this service is entered).
  - Production: API Management gateway only. A missing CSRF token is
    terminal (HTTP 400) and the transfer is never posted.
  - Development: gateway first with a short probe timeout. When the gateway
    step fails, the whole CSRF-then-POST sequence is repeated exactly once
    against the direct backend (``sap-client`` query parameter, same caller
    credentials). There is no further fallback.
  - The gateway step fails when the probe returns no token, an error status
    or no answer at all, or when the gateway POST fails at transport level.
    A POST that SAP answers with an error status is a business failure and
    is never retried.
  - SAP error statuses are passed through as UpstreamBusinessError with the
    message found in the SAP body.

The raw API Management routes (``gateway_csrf`` / ``gateway_post``) let the
frontend run the two handshake steps itself.
"""

from __future__ import annotations

import logging
from typing import Any

from migo_proxy.config import SapSettings
from migo_proxy.core.exceptions import (
    ConfigurationError,
    CsrfUnavailable,
    UpstreamBusinessError,
    UpstreamTimeout,
    UpstreamUnreachable,
    ValidationError,
)
from migo_proxy.integrations.sap_gateway import GatewayResult, SapGateway
from migo_proxy.services.credentials_service import CallerIdentity
from migo_proxy.services.environment_service import EnvironmentRoute, resolve_environment
from migo_proxy.services.response_normalizer import (
    XML_SUCCESS_MESSAGE,
    extract_error_message,
    normalize_response,
)
from migo_proxy.services.transfer_validation import validate_transfer

logger = logging.getLogger(__name__)

CHECK = "check"
POST = "post"

_COMPLETION_MESSAGES = {
    CHECK: "Check completed",
    POST: "Post completed",
}

GATEWAY_NO_TOKEN_MESSAGE = "No CSRF token returned by SAP API Management"
DIRECT_NO_TOKEN_MESSAGE = "No CSRF token returned by SAP"


class _GatewayProbeRejected(Exception):
    """The development gateway answered the probe with an error status."""


# Gateway step failures that trigger the one-time direct fallback
_GATEWAY_FALLBACK_ERRORS = (_GatewayProbeRejected, CsrfUnavailable, UpstreamTimeout, UpstreamUnreachable)


# ── Transfer dispatch ─────────────────────────────────────────────────────


def _post_transfer(
    gateway: SapGateway,
    caller: CallerIdentity,
    csrf_url: str,
    post_url: str,
    body: dict,
    *,
    probe_timeout: float,
    timeout: float,
    params: dict | None = None,
    missing_token_message: str,
    reject_error_probe: bool = False,
) -> GatewayResult:
    """Acquire a fresh CSRF session on ``csrf_url`` and POST ``body`` to ``post_url``."""
    csrf = gateway.fetch_csrf_session(
        csrf_url,
        caller.auth,
        timeout=probe_timeout,
        params=params,
        missing_token_message=missing_token_message,
    )
    if reject_error_probe and csrf.status_code >= 400:
        raise _GatewayProbeRejected(f"CSRF probe returned status {csrf.status_code}")
    return gateway.send(
        "POST",
        post_url,
        caller.auth,
        csrf=csrf,
        json_body=body,
        params=params,
        timeout=timeout,
    )


def _dispatch_production(
    settings: SapSettings, gateway: SapGateway, caller: CallerIdentity, route: EnvironmentRoute, body: dict
) -> GatewayResult:
    logger.info("MIGO via production gateway csrf=%s post=%s", route.csrf_url, route.post_url)
    return _post_transfer(
        gateway,
        caller,
        route.csrf_url,
        route.post_url,
        body,
        probe_timeout=settings.request_timeout,
        timeout=settings.request_timeout,
        missing_token_message=GATEWAY_NO_TOKEN_MESSAGE,
    )


def _dispatch_development(
    settings: SapSettings, gateway: SapGateway, caller: CallerIdentity, route: EnvironmentRoute, body: dict
) -> GatewayResult:
    try:
        return _post_transfer(
            gateway,
            caller,
            route.csrf_url,
            route.post_url,
            body,
            probe_timeout=settings.gateway_probe_timeout,
            timeout=settings.request_timeout,
            missing_token_message=GATEWAY_NO_TOKEN_MESSAGE,
            reject_error_probe=True,
        )
    except _GATEWAY_FALLBACK_ERRORS as exc:
        logger.warning(
            "API Management unavailable (%s: %s); falling back to direct SAP connection",
            type(exc).__name__, exc,
        )

    return _post_transfer(
        gateway,
        caller,
        route.direct_csrf_url,
        route.direct_post_url,
        body,
        probe_timeout=settings.request_timeout,
        timeout=settings.request_timeout,
        params={"sap-client": route.sap_client},
        missing_token_message=DIRECT_NO_TOKEN_MESSAGE,
    )


def submit_transfer(
    settings: SapSettings,
    gateway: SapGateway,
    caller: CallerIdentity,
    body: Any,
    *,
    mode: str,
) -> dict:
    """Validate and submit a MIGO transfer (test run or real posting).

    Args:
        settings: Immutable SAP endpoint configuration.
        gateway:  SapGateway used for every SAP call.
        caller:   Credentials and environment of the inbound request.
        body:     Transfer request, forwarded to SAP unchanged.
        mode:     ``"check"`` or ``"post"``; selects the completion message.

    Returns:
        Normalized envelope ``{success, message, data, error?}``.

    Raises:
        ValidationError:       Missing fields (no SAP call made).
        CsrfUnavailable:       No token from the terminal CSRF endpoint.
        UpstreamBusinessError: SAP answered the POST with status >= 400.
        UpstreamTimeout / UpstreamUnreachable: transport failures.
    """
    if mode not in _COMPLETION_MESSAGES:
        raise ValueError(f"Unknown transfer mode: {mode!r}")

    validate_transfer(body)
    route = resolve_environment(settings, caller.environment)
    logger.info(
        "MIGO %s user=%s environment=%s sap-client=%s",
        mode, caller.username, route.environment, route.sap_client,
        extra={"sap_environment": route.environment, "sap_user": caller.username},
    )

    if route.is_production:
        result = _dispatch_production(settings, gateway, caller, route, body)
    else:
        result = _dispatch_development(settings, gateway, caller, route, body)

    if not result.ok:
        message = extract_error_message(result.body, result.status_code)
        logger.warning("MIGO %s rejected by SAP status=%d: %s", mode, result.status_code, message)
        raise UpstreamBusinessError(result.status_code, message, raw=result.body)

    normalized = normalize_response(result.body, result.status_code, _COMPLETION_MESSAGES[mode])
    return normalized.to_dict()


# ── Service metadata ──────────────────────────────────────────────────────


def fetch_metadata(settings: SapSettings, gateway: SapGateway, caller: CallerIdentity) -> str:
    """Return the MIGO service ``$metadata`` document from the direct backend.

    Any SAP error status is reported as HTTP 500.
    """
    route = resolve_environment(settings, caller.environment)
    result = gateway.send(
        "GET",
        route.metadata_url,
        caller.auth,
        params={"sap-client": route.sap_client},
        accept="application/xml",
        timeout=settings.request_timeout,
    )
    if not result.ok:
        raise UpstreamBusinessError(
            500, extract_error_message(result.body, result.status_code), raw=result.body
        )
    return result.text


# ── Raw API Management handshake ──────────────────────────────────────────


def _require_api_management(settings: SapSettings, url: str | None, name: str) -> str:
    if not settings.api_mgmt_url:
        raise ConfigurationError("SAP API Management URL not configured")
    if not url:
        raise ConfigurationError(f"{name} not configured")
    return url


def gateway_csrf(settings: SapSettings, gateway: SapGateway, caller: CallerIdentity) -> dict:
    """Fetch a CSRF token and session cookies from API Management for the frontend."""
    service_root = _require_api_management(
        settings, settings.api_mgmt_migo_url, "SAP_API_MGMT_MIGO_URL"
    )
    csrf = gateway.fetch_csrf_session(
        f"{service_root.rstrip('/')}/",
        caller.auth,
        timeout=settings.request_timeout,
        missing_token_message="No X-CSRF-Token returned by SAP API Management",
    )
    return {"success": True, "csrfToken": csrf.token, "cookies": csrf.cookies}


def gateway_post(settings: SapSettings, gateway: SapGateway, caller: CallerIdentity, body: Any) -> dict:
    """POST a transfer to API Management with a token the frontend fetched earlier.

    The body carries ``csrfToken``, ``cookies``, ``transferData`` and
    ``isTestRun``. SAP is asked for XML; the reply is normalized and returned
    with HTTP 200 whatever SAP answered, failures flagged by ``success``.
    """
    post_url = _require_api_management(
        settings, settings.api_mgmt_migo_post_url, "SAP_API_MGMT_MIGO_POST_URL"
    )
    payload = body if isinstance(body, dict) else {}
    csrf_token = payload.get("csrfToken")
    transfer_data = payload.get("transferData")
    if not csrf_token:
        raise ValidationError("CSRF token is required")
    if not transfer_data:
        raise ValidationError("Transfer data is required")

    headers = {"X-CSRF-Token": csrf_token}
    if payload.get("cookies"):
        headers["Cookie"] = payload["cookies"]

    logger.info(
        "MIGO gateway post user=%s test_run=%s",
        caller.username, bool(payload.get("isTestRun", False)),
        extra={"sap_user": caller.username},
    )
    result = gateway.send(
        "POST",
        post_url,
        caller.auth,
        json_body=transfer_data,
        accept="application/xml",
        extra_headers=headers,
        timeout=settings.request_timeout,
    )

    if not result.ok and result.data is not None:
        message = extract_error_message(result.data, result.status_code)
        return {"success": False, "message": message, "error": message}
    if result.ok:
        default_message = XML_SUCCESS_MESSAGE
    else:
        default_message = extract_error_message(result.text, result.status_code)
    return normalize_response(result.text, result.status_code, default_message).to_dict()
