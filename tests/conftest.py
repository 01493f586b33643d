"""
Shared pytest fixtures for the SAP MIGO Proxy test suite.

Provides:
    - app: Flask application (session-scoped)
    - client: Flask test client (function-scoped)
    - test_settings: deterministic SapSettings installed on the app (autouse)
    - sap_session: MagicMock requests.Session behind the app's SapGateway (autouse)

No test talks to a real SAP system.
"""

from unittest.mock import MagicMock

import pytest

from migo_proxy import create_app
from migo_proxy.integrations.sap_gateway import SapGateway
from sap_fakes import TEST_SETTINGS


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def test_settings(app):
    """Install SAP settings independent of the host environment."""
    original = app.extensions["sap_settings"]
    app.extensions["sap_settings"] = TEST_SETTINGS
    yield TEST_SETTINGS
    app.extensions["sap_settings"] = original


@pytest.fixture(autouse=True)
def sap_session(app):
    """Mocked requests.Session injected into the app's SapGateway."""
    session = MagicMock()
    original = app.extensions["sap_gateway"]
    app.extensions["sap_gateway"] = SapGateway(session=session)
    yield session
    app.extensions["sap_gateway"] = original
