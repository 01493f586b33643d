"""
Caller identity extraction.

The frontend logs in once, keeps ``base64(username:password)`` and sends it
on every call in ``X-User-Auth``, together with the SAP environment in
``X-User-Environment``. The proxy forwards those credentials to SAP as
basic auth; they are decoded per request and never stored.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Mapping

from werkzeug.datastructures import Headers

from migo_proxy.core.exceptions import CredentialsRequired, InvalidCredentials

AUTH_HEADER = "X-User-Auth"
ENVIRONMENT_HEADER = "X-User-Environment"


@dataclass(frozen=True)
class CallerIdentity:
    """SAP credentials and target environment of one inbound request."""

    username: str
    password: str = field(repr=False)
    environment: str

    @property
    def auth(self) -> tuple[str, str]:
        """``(username, password)`` in the form requests expects."""
        return (self.username, self.password)


def _as_headers(headers: Mapping[str, str] | Headers) -> Headers:
    # Case-insensitive lookup for plain dicts as well as Flask request headers
    return headers if isinstance(headers, Headers) else Headers(headers)


def require_auth_header(headers: Mapping[str, str] | Headers) -> str:
    """Return the raw encoded ``X-User-Auth`` value, or raise CredentialsRequired."""
    value = (_as_headers(headers).get(AUTH_HEADER) or "").strip()
    if not value:
        raise CredentialsRequired()
    return value


def decode_credentials(encoded: str) -> tuple[str, str]:
    """Decode ``base64(username:password)``.

    The password is everything after the first colon.

    Raises:
        InvalidCredentials: Malformed base64, non UTF-8 bytes, no separator,
            empty username or empty password.
    """
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        raise InvalidCredentials() from None

    username, sep, password = decoded.partition(":")
    if not sep or not username or not password:
        raise InvalidCredentials()
    return username, password


def extract_caller(
    headers: Mapping[str, str] | Headers,
    default_environment: str = "110",
) -> CallerIdentity:
    """Build the CallerIdentity for a request from its headers.

    Args:
        headers:             Inbound request headers.
        default_environment: Environment tag when ``X-User-Environment`` is absent.

    Raises:
        CredentialsRequired: ``X-User-Auth`` missing.
        InvalidCredentials:  ``X-User-Auth`` not decodable.
    """
    hdrs = _as_headers(headers)
    username, password = decode_credentials(require_auth_header(hdrs))
    environment = (hdrs.get(ENVIRONMENT_HEADER) or "").strip() or default_environment
    return CallerIdentity(username=username, password=password, environment=environment)
