"""Standardised API error responses.

Usage
-----
    from migo_proxy.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Batch not found")
    return api_error(E.VALIDATION_REQUIRED, "CSRF token is required")
    return api_error(E.UPSTREAM_BUSINESS, msg, status=502, extra={"raw": body})
"""

from __future__ import annotations

from typing import Any

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    CSRF_UNAVAILABLE = "ERR_CSRF_UNAVAILABLE"

    # Credentials – HTTP 401
    AUTH_REQUIRED = "ERR_AUTH_REQUIRED"
    AUTH_INVALID = "ERR_AUTH_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Other HTTP-level rejections (405, 413, 415)
    BAD_REQUEST = "ERR_BAD_REQUEST"

    # Upstream SAP
    UPSTREAM_TIMEOUT = "ERR_UPSTREAM_TIMEOUT"
    UPSTREAM_BUSINESS = "ERR_UPSTREAM_BUSINESS"
    UPSTREAM_UNREACHABLE = "ERR_UPSTREAM_UNREACHABLE"

    # Server – HTTP 500
    CONFIGURATION = "ERR_CONFIGURATION"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.CSRF_UNAVAILABLE: 400,
    E.AUTH_REQUIRED: 401,
    E.AUTH_INVALID: 401,
    E.NOT_FOUND: 404,
    E.BAD_REQUEST: 400,
    E.UPSTREAM_TIMEOUT: 408,
    E.UPSTREAM_BUSINESS: 502,
    E.UPSTREAM_UNREACHABLE: 500,
    E.CONFIGURATION: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: Any = None,
    extra: dict | None = None,
):
    """Return the standard JSON failure envelope.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation shown by the frontend.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : Any, optional
        Diagnostic payload (upstream status, field breakdown, ...).
    extra : dict, optional
        Additional top-level keys (``raw`` upstream body, ``stack``).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "success": False,
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
    if extra:
        body.update(extra)

    return jsonify(body), http_status
