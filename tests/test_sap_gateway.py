"""Tests for SapGateway: CSRF handshake strategy and authenticated calls.

The gateway is built on a MagicMock session; no network is used.
"""

from unittest.mock import MagicMock

import pytest
import requests

from migo_proxy.core.exceptions import CsrfUnavailable, UpstreamTimeout, UpstreamUnreachable
from migo_proxy.integrations.sap_gateway import (
    CsrfSession,
    GatewayResult,
    SapGateway,
    join_session_cookies,
)
from sap_fakes import JOINED_COOKIES, calls, csrf_response, fake_response

URL = "https://apim.example.test/bsp/migo"
AUTH = ("jdoe", "s3cret")


@pytest.fixture()
def session():
    return MagicMock()


@pytest.fixture()
def gateway(session):
    return SapGateway(session=session)


class TestJoinSessionCookies:
    def test_keeps_name_value_pairs_only(self):
        values = [
            "SAP_SESSIONID_DEV_110=abc123; path=/; secure; HttpOnly",
            "sap-usercontext=sap-client=110; path=/; Expires=Wed, 01 Jan 2031 00:00:00 GMT",
        ]
        assert join_session_cookies(values) == "SAP_SESSIONID_DEV_110=abc123; sap-usercontext=sap-client=110"

    def test_no_cookies(self):
        assert join_session_cookies([]) == ""


class TestFetchCsrfSession:
    def test_head_success_returns_token_and_cookies(self, gateway, session):
        session.request.side_effect = [csrf_response("tok-123")]

        csrf = gateway.fetch_csrf_session(URL, AUTH, timeout=10)

        assert csrf == CsrfSession(token="tok-123", cookies=JOINED_COOKIES, status_code=200)
        method, url, kwargs = calls(session)[0]
        assert (method, url) == ("HEAD", URL)
        assert kwargs["headers"]["X-CSRF-Token"] == "Fetch"
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["auth"] == AUTH
        assert kwargs["timeout"] == 10
        assert kwargs["verify"] is False

    def test_falls_back_to_get_when_head_fails_at_transport_level(self, gateway, session):
        session.request.side_effect = [
            requests.ConnectionError("HEAD not allowed by proxy"),
            csrf_response("tok-get"),
        ]

        csrf = gateway.fetch_csrf_session(URL, AUTH)

        assert csrf.token == "tok-get"
        assert [c[0] for c in calls(session)] == ["HEAD", "GET"]

    def test_http_error_status_does_not_trigger_get(self, gateway, session):
        session.request.side_effect = [fake_response(405, text="Method Not Allowed")]

        with pytest.raises(CsrfUnavailable) as exc_info:
            gateway.fetch_csrf_session(URL, AUTH)

        assert session.request.call_count == 1
        assert exc_info.value.status_code == 405
        assert exc_info.value.details == "Status: 405, Response: Method Not Allowed"

    def test_missing_token_on_2xx_is_a_failure(self, gateway, session):
        session.request.side_effect = [fake_response(200)]

        with pytest.raises(CsrfUnavailable) as exc_info:
            gateway.fetch_csrf_session(URL, AUTH, missing_token_message="No CSRF token returned by SAP API Management")

        assert exc_info.value.message == "No CSRF token returned by SAP API Management"
        assert exc_info.value.details == "Status: 200"
        assert exc_info.value.http_status == 400

    def test_token_with_error_status_is_returned_with_status(self, gateway, session):
        session.request.side_effect = [csrf_response("tok", status_code=403)]
        assert gateway.fetch_csrf_session(URL, AUTH).status_code == 403

    def test_both_strategies_timing_out_raises_timeout(self, gateway, session):
        session.request.side_effect = [requests.Timeout("t1"), requests.Timeout("t2")]

        with pytest.raises(UpstreamTimeout) as exc_info:
            gateway.fetch_csrf_session(URL, AUTH)

        assert exc_info.value.http_status == 408
        assert exc_info.value.message == "Request timeout - SAP server is not responding"

    def test_both_strategies_unreachable(self, gateway, session):
        session.request.side_effect = [requests.ConnectionError("refused"), requests.ConnectionError("refused")]

        with pytest.raises(UpstreamUnreachable):
            gateway.fetch_csrf_session(URL, AUTH)
        assert session.request.call_count == 2

    def test_last_strategy_decides_the_transport_error(self, gateway, session):
        session.request.side_effect = [requests.Timeout("head timed out"), requests.ConnectionError("reset")]

        with pytest.raises(UpstreamUnreachable) as exc_info:
            gateway.fetch_csrf_session(URL, AUTH)

        assert exc_info.value.details == "reset"
        assert [c[0] for c in calls(session)] == ["HEAD", "GET"]

    def test_sap_client_param_is_forwarded(self, gateway, session):
        session.request.side_effect = [csrf_response()]
        gateway.fetch_csrf_session(URL, AUTH, params={"sap-client": "110"})
        assert calls(session)[0][2]["params"] == {"sap-client": "110"}

    def test_cookies_fall_back_to_merged_header(self, gateway, session):
        resp = fake_response(200, headers={"x-csrf-token": "tok", "Set-Cookie": "SID=1; path=/"})
        resp.raw.headers.getlist.return_value = []
        session.request.side_effect = [resp]

        assert gateway.fetch_csrf_session(URL, AUTH).cookies == "SID=1"


class TestSend:
    def test_post_carries_csrf_cookie_and_json(self, gateway, session):
        session.request.side_effect = [fake_response(201, json_body={"d": {"Success": True}})]
        csrf = CsrfSession(token="tok", cookies="SID=1", status_code=200)

        result = gateway.send("POST", f"{URL}/TransferHeaderSet", AUTH, csrf=csrf, json_body={"a": 1}, timeout=30)

        assert isinstance(result, GatewayResult)
        assert result.ok
        assert result.data == {"d": {"Success": True}}
        method, _, kwargs = calls(session)[0]
        assert method == "POST"
        assert kwargs["json"] == {"a": 1}
        assert kwargs["headers"]["X-CSRF-Token"] == "tok"
        assert kwargs["headers"]["Cookie"] == "SID=1"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert kwargs["timeout"] == 30

    def test_error_status_is_returned_not_raised(self, gateway, session):
        session.request.side_effect = [fake_response(500, text="<html>boom</html>")]

        result = gateway.send("GET", URL, AUTH)

        assert not result.ok
        assert result.data is None
        assert result.body == "<html>boom</html>"

    def test_empty_cookie_is_not_sent(self, gateway, session):
        session.request.side_effect = [fake_response(200)]
        gateway.send("POST", URL, AUTH, csrf=CsrfSession("tok", "", 200), json_body={})
        assert "Cookie" not in calls(session)[0][2]["headers"]

    def test_timeout_maps_to_upstream_timeout(self, gateway, session):
        session.request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(UpstreamTimeout):
            gateway.send("POST", URL, AUTH, json_body={})

    def test_connection_error_maps_to_unreachable(self, gateway, session):
        session.request.side_effect = requests.ConnectionError("reset")
        with pytest.raises(UpstreamUnreachable) as exc_info:
            gateway.send("GET", URL, AUTH)
        assert exc_info.value.http_status == 500

    def test_ca_bundle_is_passed_as_verify(self, session):
        gateway = SapGateway(session=session, verify_tls="/etc/ssl/sap-ca.pem")
        session.request.side_effect = [fake_response(200)]
        gateway.send("GET", URL, AUTH)
        assert calls(session)[0][2]["verify"] == "/etc/ssl/sap-ca.pem"
