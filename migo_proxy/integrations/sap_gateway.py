"""
SAP OData gateway — every outbound call to SAP goes through this class.

Direct `requests` calls in services or blueprints are FORBIDDEN.

Protocol:
  - SAP stateful OData write endpoints require a CSRF token obtained from a
    read-only probe carrying ``X-CSRF-Token: Fetch``. The probe answer also
    sets session cookies; the token is only valid together with them.
  - The probe is tried as HEAD first and as GET when the transport rejects
    the HEAD verb. Strategies are tried in order and each one produces a
    typed ``CsrfFetchAttempt``; exceptions are not used for control flow.
  - A probe answer without ``x-csrf-token`` is a failure whatever its HTTP
    status: the API Management gateway can reply 200 and drop the header.
  - Tokens are never cached. Each write acquires a fresh CsrfSession.

Transport failures surface as ``UpstreamTimeout`` / ``UpstreamUnreachable``.
HTTP error statuses are NOT raised here: ``send`` returns a GatewayResult and
the service decides whether a status is a business failure.

Testability: pass a mock `session` to SapGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

import requests
import urllib3

from migo_proxy.core.exceptions import CsrfUnavailable, UpstreamTimeout, UpstreamUnreachable

logger = logging.getLogger(__name__)

# ── CSRF handshake ─────────────────────────────────────────────────────────
_CSRF_FETCH_STRATEGY = ("HEAD", "GET")
_CSRF_FETCH_HEADERS = {
    "X-CSRF-Token": "Fetch",
    "Accept": "application/json",
    "X-Requested-With": "XMLHttpRequest",
}

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30

# Upstream bodies are truncated to this length in errors and logs
_EXCERPT_CHARS = 500

TIMEOUT_MESSAGE = "Request timeout - SAP server is not responding"
UNREACHABLE_MESSAGE = "Failed to connect to SAP API"


@dataclass(frozen=True)
class CsrfSession:
    """A CSRF token plus the session cookies issued with it.

    Valid only for the call that immediately follows, against the same
    service root. Request-scoped: never stored beyond one inbound request.
    """

    token: str
    cookies: str
    status_code: int

    def as_headers(self) -> dict[str, str]:
        headers = {"X-CSRF-Token": self.token}
        if self.cookies:
            headers["Cookie"] = self.cookies
        return headers


@dataclass(frozen=True)
class CsrfFetchAttempt:
    """Outcome of one fetch-token strategy step.

    ``status_code`` is None when the request never produced an HTTP answer
    (connection refused, verb rejected, timeout); ``error`` then says why.
    """

    method: str
    status_code: int | None = None
    token: str | None = None
    cookies: str = ""
    body_excerpt: str = ""
    error: str | None = None
    timed_out: bool = False

    @property
    def reached_server(self) -> bool:
        return self.status_code is not None


class GatewayResult:
    """Structured return value from SapGateway.send.

    Attributes:
        status_code:  Upstream HTTP status.
        headers:      Upstream response headers.
        text:         Raw response body.
        data:         Parsed JSON body, or None when the body is not JSON.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        status_code: int,
        headers: Any,
        text: str,
        data: Any,
        duration_ms: int,
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self.text = text
        self.data = data
        self.duration_ms = duration_ms

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def body(self) -> Any:
        """Parsed JSON when available, the raw text otherwise."""
        return self.data if self.data is not None else self.text

    @classmethod
    def from_response(cls, resp: requests.Response, duration_ms: int) -> "GatewayResult":
        text = resp.text or ""
        return cls(
            status_code=resp.status_code,
            headers=resp.headers,
            text=text,
            data=_parse_json(text),
            duration_ms=duration_ms,
        )


def _parse_json(text: str) -> Any:
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _excerpt(text: str | None) -> str:
    return (text or "").strip()[:_EXCERPT_CHARS]


def join_session_cookies(set_cookie_values: Iterable[str]) -> str:
    """Reduce ``Set-Cookie`` values to ``name=value`` pairs joined by ``"; "``.

    Attributes such as Path, Expires, Secure and HttpOnly are dropped; the
    result is ready to be sent back as a single ``Cookie`` header.
    """
    pairs = []
    for raw in set_cookie_values:
        pair = raw.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


def _set_cookie_values(resp: requests.Response) -> list[str]:
    """Return every Set-Cookie header of the response, unmerged.

    ``resp.headers`` folds repeated Set-Cookie headers into one
    comma-separated value, which is ambiguous because Expires contains a
    comma. The urllib3 header dict keeps them apart.
    """
    raw_headers = getattr(resp.raw, "headers", None)
    getlist = getattr(raw_headers, "getlist", None)
    if callable(getlist):
        values = list(getlist("Set-Cookie"))
        if values:
            return values
    single = resp.headers.get("Set-Cookie")
    return [single] if single else []


class SapGateway:
    """SAP OData gateway (API Management or direct backend).

    Instantiate once per app (stored in ``app.extensions["sap_gateway"]``).
    The gateway holds no per-request state: credentials and CSRF sessions are
    passed in on every call.

    Usage:
        gateway = SapGateway(verify_tls=False)
        csrf = gateway.fetch_csrf_session(csrf_url, ("user", "pass"), timeout=30)
        result = gateway.send("POST", post_url, ("user", "pass"), csrf=csrf, json_body=body)
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        verify_tls: bool | str = False,
    ) -> None:
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session
        self.verify_tls = verify_tls
        if verify_tls is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── CSRF handshake ───────────────────────────────────────────────────────

    def _attempt_csrf_fetch(
        self,
        method: str,
        url: str,
        auth: tuple[str, str] | None,
        *,
        timeout: float,
        params: dict | None,
    ) -> CsrfFetchAttempt:
        """Run one fetch-token strategy step. Never raises."""
        try:
            resp = self.session.request(
                method,
                url,
                auth=auth,
                headers=dict(_CSRF_FETCH_HEADERS),
                params=params,
                timeout=timeout,
                verify=self.verify_tls,
            )
        except requests.Timeout as exc:
            return CsrfFetchAttempt(method=method, error=str(exc)[:_EXCERPT_CHARS], timed_out=True)
        except requests.RequestException as exc:
            return CsrfFetchAttempt(method=method, error=str(exc)[:_EXCERPT_CHARS])

        return CsrfFetchAttempt(
            method=method,
            status_code=resp.status_code,
            token=resp.headers.get("x-csrf-token") or None,
            cookies=join_session_cookies(_set_cookie_values(resp)),
            body_excerpt=_excerpt(resp.text),
        )

    def _run_csrf_strategy(
        self,
        url: str,
        auth: tuple[str, str] | None,
        *,
        timeout: float,
        params: dict | None,
    ) -> CsrfFetchAttempt:
        """Try each strategy step in order; return the first that reached SAP, else the last."""
        *fallible, last = _CSRF_FETCH_STRATEGY
        for method in fallible:
            attempt = self._attempt_csrf_fetch(method, url, auth, timeout=timeout, params=params)
            if attempt.reached_server:
                return attempt
            logger.info(
                "CSRF fetch via %s failed at transport level url=%s error=%s",
                method, url, attempt.error,
                extra={"upstream_url": url},
            )
        return self._attempt_csrf_fetch(last, url, auth, timeout=timeout, params=params)

    def fetch_csrf_session(
        self,
        url: str,
        auth: tuple[str, str] | None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        params: dict | None = None,
        missing_token_message: str = "No CSRF token returned by SAP",
    ) -> CsrfSession:
        """Acquire a fresh CSRF token and session cookies from ``url``.

        Tries HEAD, then GET when HEAD produced no HTTP answer at all. An
        HTTP answer of any status ends the strategy list.

        Args:
            url:      OData service root (or entity set) to probe.
            auth:     ``(username, password)`` for basic authentication.
            timeout:  Per-attempt timeout in seconds.
            params:   Extra query parameters (``sap-client`` on direct hosts).
            missing_token_message: Error text when SAP omits the token.

        Returns:
            CsrfSession with token, joined cookies and the probe status.

        Raises:
            CsrfUnavailable:     SAP answered without ``x-csrf-token``.
            UpstreamTimeout:     Every strategy timed out (last one did).
            UpstreamUnreachable: Every strategy failed at transport level.
        """
        attempt = self._run_csrf_strategy(url, auth, timeout=timeout, params=params)
        if not attempt.reached_server:
            if attempt.timed_out:
                raise UpstreamTimeout(TIMEOUT_MESSAGE, details=attempt.error)
            raise UpstreamUnreachable(UNREACHABLE_MESSAGE, details=attempt.error)

        if not attempt.token:
            logger.error(
                "CSRF token fetch failed method=%s status=%s url=%s",
                attempt.method, attempt.status_code, url,
                extra={"upstream_url": url, "upstream_status": attempt.status_code},
            )
            raise CsrfUnavailable(
                missing_token_message,
                status_code=attempt.status_code,
                body=attempt.body_excerpt,
            )

        logger.debug(
            "CSRF token retrieved via %s status=%s token=%s...",
            attempt.method, attempt.status_code, attempt.token[:8],
        )
        return CsrfSession(
            token=attempt.token,
            cookies=attempt.cookies,
            status_code=attempt.status_code,
        )

    # ── Authenticated calls ──────────────────────────────────────────────────

    def send(
        self,
        method: str,
        url: str,
        auth: tuple[str, str] | None,
        *,
        csrf: CsrfSession | None = None,
        json_body: Any = None,
        params: dict | None = None,
        accept: str = "application/json",
        extra_headers: dict | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        allow_redirects: bool = True,
    ) -> GatewayResult:
        """Execute one authenticated SAP call; no retry logic here.

        Returns:
            GatewayResult for any HTTP answer, including 4xx/5xx.

        Raises:
            UpstreamTimeout:     The call exceeded ``timeout``.
            UpstreamUnreachable: Any other transport-level failure.
        """
        headers = {"Accept": accept, "X-Requested-With": "XMLHttpRequest"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        if csrf is not None:
            headers.update(csrf.as_headers())
        if extra_headers:
            headers.update(extra_headers)

        kwargs: dict[str, Any] = {
            "auth": auth,
            "headers": headers,
            "timeout": timeout,
            "verify": self.verify_tls,
            "allow_redirects": allow_redirects,
        }
        if json_body is not None:
            kwargs["json"] = json_body
        if params:
            kwargs["params"] = params

        t0 = time.perf_counter()
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.Timeout as exc:
            logger.warning("SAP %s timed out after %ss url=%s", method, timeout, url,
                           extra={"upstream_url": url})
            raise UpstreamTimeout(TIMEOUT_MESSAGE, details=str(exc)[:_EXCERPT_CHARS]) from exc
        except requests.RequestException as exc:
            logger.warning("SAP %s network error url=%s error=%s", method, url, exc,
                           extra={"upstream_url": url})
            raise UpstreamUnreachable(UNREACHABLE_MESSAGE, details=str(exc)[:_EXCERPT_CHARS]) from exc

        duration_ms = int((time.perf_counter() - t0) * 1000)
        logger.info(
            "SAP %s %s -> %d (%dms)", method, url, resp.status_code, duration_ms,
            extra={"upstream_url": url, "upstream_status": resp.status_code},
        )
        return GatewayResult.from_response(resp, duration_ms)
