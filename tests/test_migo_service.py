"""Tests for MIGO transfer dispatch: production gateway, development fallback."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import requests

from migo_proxy.config import SapSettings
from migo_proxy.core.exceptions import (
    ConfigurationError,
    CsrfUnavailable,
    UpstreamBusinessError,
    UpstreamTimeout,
    ValidationError,
)
from migo_proxy.integrations.sap_gateway import SapGateway
from migo_proxy.services import migo_service
from migo_proxy.services.credentials_service import CallerIdentity
from sap_fakes import (
    JOINED_COOKIES,
    POSTED_DOCUMENT,
    TEST_SETTINGS,
    VALID_ITEM,
    VALID_LEGACY_TRANSFER,
    calls,
    csrf_response,
    fake_response,
)

SETTINGS = SapSettings()
DIRECT_URL = "https://10.200.11.37:44300/sap/opu/odata/sap/ZUM_BSP_MIGO_SRV/TransferHeaderSet"
TRANSFER = {"TransferItemSet": [VALID_ITEM]}


@pytest.fixture()
def session():
    return MagicMock()


@pytest.fixture()
def gateway(session):
    return SapGateway(session=session)


def _caller(environment="110"):
    return CallerIdentity(username="jdoe", password="s3cret", environment=environment)


def _submit(gateway, environment="110", body=TRANSFER, mode=migo_service.POST, settings=SETTINGS):
    return migo_service.submit_transfer(settings, gateway, _caller(environment), body, mode=mode)


class TestValidationFirst:
    def test_invalid_body_makes_no_sap_call(self, gateway, session):
        with pytest.raises(ValidationError):
            _submit(gateway, body={"TransferItemSet": [{"Material": "MAT-001"}]})
        session.request.assert_not_called()

    def test_unknown_mode_is_a_programming_error(self, gateway):
        with pytest.raises(ValueError):
            _submit(gateway, mode="simulate")


class TestProduction:
    def test_posts_through_production_gateway(self, gateway, session):
        session.request.side_effect = [csrf_response(), fake_response(201, json_body=POSTED_DOCUMENT)]

        result = _submit(gateway, environment="300")

        assert result["success"] is True
        assert result["data"]["materialDocument"] == "4900000001"
        (probe_method, probe_url, probe_kwargs), (post_method, post_url, post_kwargs) = calls(session)
        assert (probe_method, probe_url) == ("HEAD", SETTINGS.prd_migo_csrf_url)
        assert probe_kwargs["timeout"] == 30
        assert (post_method, post_url) == ("POST", SETTINGS.prd_migo_post_url)
        assert post_kwargs["headers"]["X-CSRF-Token"] == "tok-123"
        assert post_kwargs["headers"]["Cookie"] == JOINED_COOKIES
        assert post_kwargs["json"] == TRANSFER
        assert "params" not in post_kwargs

    def test_missing_token_is_terminal_and_nothing_is_posted(self, gateway, session):
        session.request.return_value = fake_response(200, text="")

        with pytest.raises(CsrfUnavailable) as exc_info:
            _submit(gateway, environment="prd")

        assert exc_info.value.message == "No CSRF token returned by SAP API Management"
        assert exc_info.value.details == "Status: 200"
        assert all(method in ("HEAD", "GET") for method, _, _ in calls(session))
        assert all(url == SETTINGS.prd_migo_csrf_url for _, url, _ in calls(session))

    def test_unreachable_gateway_is_not_retried_elsewhere(self, gateway, session):
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(UpstreamTimeout):
            _submit(gateway, environment="300")

        assert [m for m, _, _ in calls(session)] == ["HEAD", "GET"]


class TestDevelopmentFallback:
    def test_gateway_success_skips_direct_path(self, gateway, session):
        session.request.side_effect = [csrf_response(), fake_response(201, json_body=POSTED_DOCUMENT)]

        result = _submit(gateway, environment="dev", mode=migo_service.CHECK)

        assert result["success"] is True
        assert result["message"] == "Material document 4900000001 posted"
        urls = [url for _, url, _ in calls(session)]
        assert urls == [SETTINGS.dev_migo_csrf_url, SETTINGS.dev_migo_post_url]
        assert calls(session)[0][2]["timeout"] == 10

    def test_missing_gateway_token_falls_back_to_direct_once(self, gateway, session):
        session.request.side_effect = [
            fake_response(200),                               # gateway probe: no token
            csrf_response("direct-tok"),                      # direct probe
            fake_response(201, json_body=POSTED_DOCUMENT),    # direct post
        ]

        result = _submit(gateway)

        assert result["success"] is True
        seen = calls(session)
        assert [(m, u) for m, u, _ in seen] == [
            ("HEAD", SETTINGS.dev_migo_csrf_url),
            ("HEAD", DIRECT_URL),
            ("POST", DIRECT_URL),
        ]
        assert seen[1][2]["params"] == {"sap-client": "110"}
        assert seen[2][2]["params"] == {"sap-client": "110"}
        assert seen[2][2]["headers"]["X-CSRF-Token"] == "direct-tok"
        assert seen[2][2]["auth"] == ("jdoe", "s3cret")
        assert seen[2][2]["timeout"] == 30

    def test_gateway_probe_error_status_falls_back(self, gateway, session):
        session.request.side_effect = [
            csrf_response("gw-tok", status_code=403),
            csrf_response("direct-tok"),
            fake_response(201, json_body=POSTED_DOCUMENT),
        ]

        _submit(gateway)

        assert calls(session)[2][1] == DIRECT_URL

    def test_gateway_post_transport_failure_falls_back(self, gateway, session):
        session.request.side_effect = [
            csrf_response(),
            requests.ConnectionError("reset by peer"),
            csrf_response("direct-tok"),
            fake_response(201, json_body=POSTED_DOCUMENT),
        ]

        assert _submit(gateway)["success"] is True
        assert session.request.call_count == 4

    def test_direct_failure_after_fallback_is_terminal(self, gateway, session):
        session.request.return_value = fake_response(200)

        with pytest.raises(CsrfUnavailable) as exc_info:
            _submit(gateway)

        assert exc_info.value.message == "No CSRF token returned by SAP"
        assert [u for _, u, _ in calls(session)] == [SETTINGS.dev_migo_csrf_url, DIRECT_URL]

    def test_gateway_business_error_is_not_retried(self, gateway, session):
        error = {"error": {"code": "M7/021", "message": {"value": "Deficit of stock"}}}
        session.request.side_effect = [csrf_response(), fake_response(400, json_body=error)]

        with pytest.raises(UpstreamBusinessError) as exc_info:
            _submit(gateway)

        assert exc_info.value.http_status == 400
        assert exc_info.value.message == "Deficit of stock"
        assert exc_info.value.extra == {"raw": error}
        assert session.request.call_count == 2

    def test_legacy_body_is_forwarded_unchanged(self, gateway, session):
        session.request.side_effect = [csrf_response(), fake_response(200, json_body={})]

        result = _submit(gateway, body=dict(VALID_LEGACY_TRANSFER), mode=migo_service.CHECK)

        assert result["success"] is True
        assert result["message"] == "Check completed"
        assert calls(session)[1][2]["json"] == VALID_LEGACY_TRANSFER


class TestGatewayHandshakeRoutes:
    def test_gateway_csrf_requires_api_management(self, gateway):
        with pytest.raises(ConfigurationError) as exc_info:
            migo_service.gateway_csrf(SETTINGS, gateway, _caller())
        assert exc_info.value.message == "SAP API Management URL not configured"

    def test_gateway_csrf_returns_token_and_cookies(self, gateway, session):
        session.request.side_effect = [csrf_response("apim-tok")]

        result = migo_service.gateway_csrf(TEST_SETTINGS, gateway, _caller())

        assert result == {"success": True, "csrfToken": "apim-tok", "cookies": JOINED_COOKIES}
        assert calls(session)[0][1] == "https://apim.example.test/bsp/migo/"

    def test_gateway_csrf_without_token(self, gateway, session):
        session.request.side_effect = [fake_response(200)]
        with pytest.raises(CsrfUnavailable) as exc_info:
            migo_service.gateway_csrf(TEST_SETTINGS, gateway, _caller())
        assert exc_info.value.message == "No X-CSRF-Token returned by SAP API Management"

    def test_gateway_post_requires_post_url(self, gateway):
        settings = replace(TEST_SETTINGS, api_mgmt_migo_post_url=None)
        with pytest.raises(ConfigurationError):
            migo_service.gateway_post(settings, gateway, _caller(), {"csrfToken": "t", "transferData": TRANSFER})

    def test_gateway_post_sends_frontend_token_and_asks_for_xml(self, gateway, session):
        xml = "<entry><content><m:properties><d:Success>true</d:Success><d:MatDoc>4900000009</d:MatDoc></m:properties></content></entry>"
        session.request.side_effect = [fake_response(201, text=xml)]
        body = {"csrfToken": "front-tok", "cookies": "SID=1", "transferData": TRANSFER, "isTestRun": True}

        result = migo_service.gateway_post(TEST_SETTINGS, gateway, _caller(), body)

        assert result["success"] is True
        assert result["data"]["materialDocument"] == "4900000009"
        method, url, kwargs = calls(session)[0]
        assert (method, url) == ("POST", TEST_SETTINGS.api_mgmt_migo_post_url)
        assert kwargs["headers"]["Accept"] == "application/xml"
        assert kwargs["headers"]["X-CSRF-Token"] == "front-tok"
        assert kwargs["headers"]["Cookie"] == "SID=1"
        assert kwargs["json"] == TRANSFER

    def test_gateway_post_json_error_becomes_failure_envelope(self, gateway, session):
        session.request.side_effect = [fake_response(403, json_body={"error": {"message": "CSRF token validation failed"}})]
        body = {"csrfToken": "stale", "transferData": TRANSFER}

        result = migo_service.gateway_post(TEST_SETTINGS, gateway, _caller(), body)

        assert result == {
            "success": False,
            "message": "CSRF token validation failed",
            "error": "CSRF token validation failed",
        }


    def test_gateway_post_empty_error_body_reports_the_status(self, gateway, session):
        session.request.side_effect = [fake_response(502, text="")]
        body = {"csrfToken": "tok", "transferData": TRANSFER}

        result = migo_service.gateway_post(TEST_SETTINGS, gateway, _caller(), body)

        assert result["success"] is False
        assert result["message"] == "SAP API returned status 502"
        assert result["error"] == "SAP API returned status 502"

    def test_gateway_post_xml_error_document_message(self, gateway, session):
        xml = "<error><code>M7/021</code><message>Deficit of SL Unrestricted-use</message></error>"
        session.request.side_effect = [fake_response(400, text=xml)]
        body = {"csrfToken": "tok", "transferData": TRANSFER}

        result = migo_service.gateway_post(TEST_SETTINGS, gateway, _caller(), body)

        assert result["success"] is False
        assert result["message"] == "Deficit of SL Unrestricted-use"


class TestMetadata:
    def test_fetches_metadata_from_direct_backend(self, gateway, session):
        session.request.side_effect = [fake_response(200, text="<edmx:Edmx/>")]

        document = migo_service.fetch_metadata(SETTINGS, gateway, _caller("300"))

        assert document == "<edmx:Edmx/>"
        _, url, kwargs = calls(session)[0]
        assert url == "https://10.200.10.115:44300/sap/opu/odata/sap/ZUM_BSP_MIGO_SRV/$metadata"
        assert kwargs["params"] == {"sap-client": "300"}
        assert kwargs["headers"]["Accept"] == "application/xml"

    def test_error_status_is_reported_as_500(self, gateway, session):
        session.request.side_effect = [fake_response(401, text="Unauthorized")]
        with pytest.raises(UpstreamBusinessError) as exc_info:
            migo_service.fetch_metadata(SETTINGS, gateway, _caller())
        assert exc_info.value.http_status == 500
        assert exc_info.value.message == "SAP API returned status 401"
