"""
Proxy-wide exception hierarchy.

Every failure the proxy can report to the frontend is one of the types
below. Services raise them; the single app-level error handler registered in
``create_app`` turns them into the JSON envelope ``{success: false, error}``
with the status code carried by the exception. Blueprints never build error
responses for these conditions themselves.

Usage:
    from migo_proxy.core.exceptions import CsrfUnavailable, ValidationError

    raise ValidationError("Missing required fields: MATNR, QTY")
    raise CsrfUnavailable("No CSRF token returned by SAP", status_code=403)
"""

from __future__ import annotations

from typing import Any


class ProxyError(Exception):
    """Base class for errors rendered as a JSON envelope.

    Attributes:
        http_status: HTTP status returned to the frontend.
        code:        Machine-readable error code (``utils.errors.E``).
        details:     Optional diagnostic payload (string or dict).
    """

    http_status = 500
    code = "ERR_INTERNAL"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class CredentialsRequired(ProxyError):
    """The ``X-User-Auth`` header is missing. Maps to HTTP 401."""

    http_status = 401
    code = "ERR_AUTH_REQUIRED"

    def __init__(self, message: str = "User credentials required") -> None:
        super().__init__(message)


class InvalidCredentials(ProxyError):
    """The ``X-User-Auth`` header is not base64 ``username:password``. HTTP 401."""

    http_status = 401
    code = "ERR_AUTH_INVALID"

    def __init__(self, message: str = "Invalid user credentials") -> None:
        super().__init__(message)


class ValidationError(ProxyError):
    """Request body failed validation before any SAP call. HTTP 400.

    Args:
        message: Combined human-readable message (all deficiencies).
        details: Field-level breakdown, e.g. ``{"Item 2": ["Batch", "QTY"]}``.
    """

    http_status = 400
    code = "ERR_VALIDATION_REQUIRED"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, details or {})


class NotFoundError(ProxyError):
    """The SAP query returned no rows. HTTP 404."""

    http_status = 404
    code = "ERR_NOT_FOUND"


class ConfigurationError(ProxyError):
    """A route needs an endpoint that is not configured. HTTP 500."""

    http_status = 500
    code = "ERR_CONFIGURATION"


class CsrfUnavailable(ProxyError):
    """SAP answered the fetch-token probe without an ``x-csrf-token`` header.

    Raised regardless of the HTTP status of the probe: the API Management
    gateway can reply 200 and still drop the header. Maps to HTTP 400.

    Args:
        message:     Human-readable explanation.
        status_code: Upstream status observed on the probe.
        body:        Excerpt of the probe response body.
    """

    http_status = 400
    code = "ERR_CSRF_UNAVAILABLE"

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        details = f"Status: {status_code}"
        if body:
            details += f", Response: {body}"
        super().__init__(message, details)


class UpstreamTimeout(ProxyError):
    """SAP did not answer within the configured timeout. HTTP 408."""

    http_status = 408
    code = "ERR_UPSTREAM_TIMEOUT"


class UpstreamUnreachable(ProxyError):
    """Connection-level failure talking to SAP (DNS, refused, TLS, reset)."""

    http_status = 500
    code = "ERR_UPSTREAM_UNREACHABLE"


class UpstreamBusinessError(ProxyError):
    """SAP answered with an error status; the status is passed through.

    Args:
        status_code: Upstream HTTP status, reused as the response status.
        message:     Error text extracted from the SAP body.
        raw:         Parsed upstream body, returned to the caller for diagnosis.
        extra:       Top-level response keys; defaults to ``{"raw": raw}``.
    """

    code = "ERR_UPSTREAM_BUSINESS"

    def __init__(
        self,
        status_code: int,
        message: str,
        raw: Any = None,
        *,
        extra: dict | None = None,
    ) -> None:
        self.status_code = status_code
        self.raw = raw
        self.extra = extra if extra is not None else {"raw": raw}
        super().__init__(message)

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return self.status_code


class MalformedUpstreamPayload(Exception):
    """An upstream body matched no known shape.

    Internal to the response normalizer: decoders raise it, the normalizer
    catches it and degrades to a generic envelope. Never reaches a caller.
    """
