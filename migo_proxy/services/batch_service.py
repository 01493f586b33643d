"""
Batch information service — BatchInfoSet reads against SAP.

Three read paths exist:

  get_batch_info          Direct backend, caller credentials, ``Charg`` filter.
  get_batch_info_gateway  API Management. Production uses caller credentials
                          and a best-effort CSRF session, filters on
                          ``BatchNumber`` and retries once with ``Charg`` when
                          SAP rejects the filter (400). Development uses the
                          configured service account.
  get_batch_300           Production gateway pass-through: the caller's raw
                          ``X-User-Auth`` value becomes the Basic credential
                          and SAP's status and body are returned unchanged.

Batch numbers are user input: they are placed in ``$filter`` as escaped
OData string literals, never interpolated raw.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, urlencode

from migo_proxy.config import SapSettings
from migo_proxy.core.exceptions import (
    ConfigurationError,
    CsrfUnavailable,
    InvalidCredentials,
    NotFoundError,
    UpstreamBusinessError,
    UpstreamTimeout,
    UpstreamUnreachable,
    ValidationError,
)
from migo_proxy.integrations.sap_gateway import CsrfSession, GatewayResult, SapGateway
from migo_proxy.services.credentials_service import CallerIdentity
from migo_proxy.services.environment_service import base_url_for, resolve_environment
from migo_proxy.services.response_normalizer import extract_error_message

logger = logging.getLogger(__name__)

BATCH_NOT_FOUND_MESSAGE = "Batch not found"
_ENTITY_SET = "BatchInfoSet"


# ── OData query helpers ───────────────────────────────────────────────────


def odata_string_literal(value: str) -> str:
    """Quote a value as an OData string literal (``'`` doubled)."""
    return "'" + value.replace("'", "''") + "'"


def batch_filter(field_name: str, batch_number: str) -> str:
    return f"{field_name} eq {odata_string_literal(batch_number)}"


def build_query(params: dict[str, str]) -> str:
    """Percent-encode query parameters, keeping OData's ``$`` and quotes readable."""
    return urlencode(params, quote_via=quote, safe="$'")


def _with_query(url: str, params: dict[str, str]) -> str:
    return f"{url}?{build_query(params)}"


def _require_batch_number(batch_number: str) -> str:
    batch_number = (batch_number or "").strip()
    if not batch_number:
        raise ValidationError("Batch number is required")
    return batch_number


def _first_row(payload: Any, *, allow_bare_entity: bool = False) -> Any:
    """First entry of ``d.results``.

    With ``allow_bare_entity`` a body without ``d.results`` (a bare entity
    object, or a non-JSON text body) is returned as the row itself.

    Raises:
        NotFoundError: No rows, or an empty body.
    """
    results = None
    if isinstance(payload, dict):
        d = payload.get("d")
        if isinstance(d, dict):
            results = d.get("results")
    if results is None and allow_bare_entity and payload not in (None, ""):
        results = [payload]
    if not results:
        raise NotFoundError(BATCH_NOT_FOUND_MESSAGE)
    return results[0] if isinstance(results, list) else results


# ── Direct backend ────────────────────────────────────────────────────────


def get_batch_info(
    settings: SapSettings, gateway: SapGateway, caller: CallerIdentity, batch_number: str
) -> Any:
    """Fetch one batch from the direct backend of the caller's environment.

    Returns:
        The first ``d.results`` row, verbatim.

    Raises:
        InvalidCredentials:    SAP rejected the caller's credentials (401).
        UpstreamBusinessError: Any other non-200 answer, status passed through.
        NotFoundError:         Zero rows.
    """
    batch_number = _require_batch_number(batch_number)
    route = resolve_environment(settings, caller.environment)
    service_root = f"{base_url_for(settings, route.environment).rstrip('/')}{settings.bsp_service_path}"
    url = _with_query(
        f"{service_root}/{_ENTITY_SET}",
        {
            "$filter": batch_filter("Charg", batch_number),
            "$format": "json",
            "sap-client": route.sap_client,
        },
    )
    logger.info(
        "Fetching batch %s user=%s environment=%s", batch_number, caller.username, route.environment,
        extra={"sap_environment": route.environment, "sap_user": caller.username},
    )

    result = gateway.send("GET", url, caller.auth, timeout=settings.request_timeout)
    if result.status_code == 401:
        raise InvalidCredentials("Unauthorized. Check SAP credentials.")
    if result.status_code != 200:
        raise UpstreamBusinessError(
            result.status_code,
            "Error fetching batch info from SAP",
            raw=result.body,
            extra={"data": result.body},
        )
    return _first_row(result.data)


# ── API Management gateway ────────────────────────────────────────────────


def _service_root(entity_set_url: str) -> str:
    """``.../batch/BatchInfoSet?x`` → ``.../batch``."""
    url = entity_set_url.split("?", 1)[0]
    suffix = f"/{_ENTITY_SET}"
    if url.endswith(suffix):
        url = url[: -len(suffix)]
    return url


def _optional_csrf(
    settings: SapSettings, gateway: SapGateway, url: str, auth: tuple[str, str]
) -> CsrfSession | None:
    """Best-effort CSRF session for a read; ``None`` when SAP hands out none."""
    try:
        return gateway.fetch_csrf_session(url, auth, timeout=settings.request_timeout)
    except (CsrfUnavailable, UpstreamTimeout, UpstreamUnreachable) as exc:
        logger.info("Continuing batch read without CSRF token: %s", exc.message)
        return None


def _gateway_batch_failure(result: GatewayResult, message: str) -> UpstreamBusinessError:
    body = result.body
    return UpstreamBusinessError(
        result.status_code,
        message,
        raw=body,
        extra={
            "status": result.status_code,
            "data": body,
            "message": extract_error_message(body, result.status_code),
        },
    )


def _production_batch(
    settings: SapSettings, gateway: SapGateway, caller: CallerIdentity, batch_number: str
) -> Any:
    entity_set_url = settings.prd_batch_url.split("?", 1)[0]
    csrf = _optional_csrf(settings, gateway, _service_root(entity_set_url), caller.auth)

    def query(field_name: str) -> GatewayResult:
        url = _with_query(entity_set_url, {"$filter": batch_filter(field_name, batch_number)})
        return gateway.send(
            "GET",
            url,
            caller.auth,
            csrf=csrf,
            timeout=settings.request_timeout,
            allow_redirects=False,
        )

    result = query("BatchNumber")
    if result.status_code == 200:
        return _first_row(result.body, allow_bare_entity=True)

    if result.status_code == 400:
        # Some BatchInfoSet versions name the key Charg instead of BatchNumber
        logger.info("BatchNumber filter rejected; retrying with Charg")
        retry = query("Charg")
        if retry.status_code == 200:
            return _first_row(retry.body, allow_bare_entity=True)
        logger.info("Charg filter also failed status=%d", retry.status_code)

    raise _gateway_batch_failure(result, "Error from SAP API")


def _development_batch(settings: SapSettings, gateway: SapGateway, batch_number: str) -> Any:
    if not (settings.service_user and settings.service_password):
        raise ConfigurationError("SAP service account (SAP_USER / SAP_PASS) not configured")
    url = _with_query(
        f"{settings.api_mgmt_batch_url.rstrip('/')}/{_ENTITY_SET}",
        {"$filter": batch_filter("Charg", batch_number), "$format": "json"},
    )
    result = gateway.send(
        "GET",
        url,
        (settings.service_user, settings.service_password),
        timeout=settings.request_timeout,
    )
    if result.status_code == 200:
        return _first_row(result.data)
    raise _gateway_batch_failure(result, "Error from SAP API Management")


def get_batch_info_gateway(
    settings: SapSettings,
    gateway: SapGateway,
    environment: str,
    batch_number: str,
    caller: CallerIdentity | None = None,
) -> Any:
    """Fetch one batch through API Management.

    Args:
        environment: Environment tag of the request.
        caller:      Required in production; development uses the service account.

    Raises:
        NotFoundError:         Zero rows.
        UpstreamBusinessError: SAP error status, passed through with
                               ``status``, ``data`` and ``message``.
    """
    batch_number = _require_batch_number(batch_number)
    route = resolve_environment(settings, environment)
    logger.info(
        "Fetching batch %s via API Management environment=%s", batch_number, route.environment,
        extra={"sap_environment": route.environment},
    )
    if route.is_production:
        if caller is None:
            raise ValueError("Production batch reads need caller credentials")
        return _production_batch(settings, gateway, caller, batch_number)
    return _development_batch(settings, gateway, batch_number)


def get_batch_300(
    settings: SapSettings, gateway: SapGateway, encoded_auth: str, batch_number: str
) -> tuple[Any, int]:
    """Query the production gateway with the caller's encoded credentials.

    Returns:
        ``(body, status)`` exactly as SAP answered.
    """
    batch_number = _require_batch_number(batch_number)
    url = _with_query(
        settings.prd_batch_url.split("?", 1)[0],
        {"$filter": batch_filter("BatchNumber", batch_number)},
    )
    result = gateway.send(
        "GET",
        url,
        None,
        extra_headers={
            "Authorization": f"Basic {encoded_auth}",
            "Content-Type": "application/json",
        },
        timeout=settings.request_timeout,
    )
    return result.body, result.status_code
