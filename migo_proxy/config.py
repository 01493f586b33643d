"""
SAP MIGO Proxy
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

SAP endpoint settings live in ``SapSettings``: an immutable object built once
at app creation (``SapSettings.from_env()``) and passed explicitly to the
resolver and services. Nothing downstream reads ``os.environ`` directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

# ── Default SAP endpoints ──────────────────────────────────────────────────
_DEV_GATEWAY_MIGO_URL = "https://devspace.test.apimanagement.eu10.hana.ondemand.com/bsp/migo"
_PRD_GATEWAY_MIGO_URL = "https://prdspace.prod01.apimanagement.eu10.hana.ondemand.com/bsp/prd/migo"
_DEV_GATEWAY_BATCH_URL = "https://devspace.test.apimanagement.eu10.hana.ondemand.com/bsp/batch"
_PRD_GATEWAY_BATCH_URL = (
    "https://prdspace.prod01.apimanagement.eu10.hana.ondemand.com/bsp/prd/batch/BatchInfoSet"
)
_DEV_BASE_URL = "https://10.200.11.37:44300"
_PRD_BASE_URL = "https://10.200.10.115:44300"
_MIGO_SERVICE_PATH = "/sap/opu/odata/sap/ZUM_BSP_MIGO_SRV"
_BSP_SERVICE_PATH = "/sap/opu/odata/sap/ZUM_BSP_BATCH_INFORMATION_SRV"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SapSettings:
    """Immutable SAP endpoint configuration, loaded once per process.

    Attributes:
        api_mgmt_url:            API Management host; gates the raw
                                 ``/gateway/*`` routes when unset.
        api_mgmt_migo_url:       Gateway MIGO service root for ``/gateway/csrf``.
        api_mgmt_migo_post_url:  Gateway TransferHeaderSet for ``/gateway/post``.
        dev_migo_csrf_url:       Development gateway service root (CSRF fetch).
        dev_migo_post_url:       Development gateway TransferHeaderSet.
        prd_migo_csrf_url:       Production gateway service root (CSRF fetch).
        prd_migo_post_url:       Production gateway TransferHeaderSet.
        base_urls:               Direct SAP backend host per environment.
        migo_service_path:       OData service path of the MIGO service.
        bsp_service_path:        OData service path of the batch service.
        api_mgmt_batch_url:      Development gateway batch service root.
        prd_batch_url:           Production gateway BatchInfoSet URL.
        service_user:            Technical account for the dev batch gateway.
        service_password:        Password of the technical account.
        default_environment:     Environment tag used when the caller sends none.
        verify_tls:              ``False``, ``True`` or a CA bundle path.
        request_timeout:         Seconds for every production / direct call.
        gateway_probe_timeout:   Seconds for the development gateway CSRF probe.
    """

    api_mgmt_url: str | None = None
    api_mgmt_migo_url: str | None = None
    api_mgmt_migo_post_url: str | None = None
    dev_migo_csrf_url: str = _DEV_GATEWAY_MIGO_URL
    dev_migo_post_url: str = f"{_DEV_GATEWAY_MIGO_URL}/TransferHeaderSet"
    prd_migo_csrf_url: str = _PRD_GATEWAY_MIGO_URL
    prd_migo_post_url: str = f"{_PRD_GATEWAY_MIGO_URL}/TransferHeaderSet"
    base_urls: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({"dev": _DEV_BASE_URL, "prd": _PRD_BASE_URL})
    )
    migo_service_path: str = _MIGO_SERVICE_PATH
    bsp_service_path: str = _BSP_SERVICE_PATH
    api_mgmt_batch_url: str = _DEV_GATEWAY_BATCH_URL
    prd_batch_url: str = _PRD_GATEWAY_BATCH_URL
    service_user: str | None = None
    service_password: str | None = None
    default_environment: str = "110"
    verify_tls: bool | str = False
    request_timeout: float = 30.0
    gateway_probe_timeout: float = 10.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SapSettings":
        """Build settings from process environment variables (or a given mapping)."""
        env = os.environ if environ is None else environ

        api_mgmt_migo_url = env.get("SAP_API_MGMT_MIGO_URL") or None
        api_mgmt_migo_post_url = env.get("SAP_API_MGMT_MIGO_POST_URL") or None

        ca_bundle = env.get("SAP_CA_BUNDLE")
        if ca_bundle:
            verify: bool | str = ca_bundle
        else:
            raw_verify = env.get("SAP_VERIFY_TLS", "false")
            verify = raw_verify.strip().lower() in ("1", "true", "yes", "on")

        return cls(
            api_mgmt_url=env.get("SAP_API_MGMT_URL") or None,
            api_mgmt_migo_url=api_mgmt_migo_url,
            api_mgmt_migo_post_url=api_mgmt_migo_post_url,
            dev_migo_csrf_url=(
                env.get("DEV_MIGO_CSRF_URL") or api_mgmt_migo_url or _DEV_GATEWAY_MIGO_URL
            ),
            dev_migo_post_url=(
                env.get("DEV_MIGO_POST_URL")
                or api_mgmt_migo_post_url
                or f"{_DEV_GATEWAY_MIGO_URL}/TransferHeaderSet"
            ),
            prd_migo_csrf_url=env.get("PRD_MIGO_CSRF_URL") or _PRD_GATEWAY_MIGO_URL,
            prd_migo_post_url=(
                env.get("PRD_MIGO_POST_URL") or f"{_PRD_GATEWAY_MIGO_URL}/TransferHeaderSet"
            ),
            base_urls=MappingProxyType({
                "dev": env.get("SAP_BASE_URL") or _DEV_BASE_URL,
                "prd": env.get("PRD_SAP_BASE_URL") or _PRD_BASE_URL,
            }),
            migo_service_path=env.get("MIGO_SERVICE_PATH") or _MIGO_SERVICE_PATH,
            bsp_service_path=env.get("BSP_SERVICE_PATH") or _BSP_SERVICE_PATH,
            api_mgmt_batch_url=env.get("SAP_API_MGMT_BATCH_URL") or _DEV_GATEWAY_BATCH_URL,
            prd_batch_url=env.get("PRD_300_BATCH_URL") or _PRD_GATEWAY_BATCH_URL,
            service_user=env.get("SAP_USER") or None,
            service_password=env.get("SAP_PASS") or None,
            default_environment=env.get("SAP_DEFAULT_ENVIRONMENT") or "110",
            verify_tls=verify,
            request_timeout=float(env.get("SAP_REQUEST_TIMEOUT") or 30),
            gateway_probe_timeout=float(env.get("SAP_GATEWAY_PROBE_TIMEOUT") or 10),
        )

    def summary(self) -> dict:
        """Non-secret view of the settings for health checks and startup logs."""
        if self.verify_tls is True:
            tls = "system CA"
        elif self.verify_tls:
            tls = f"CA bundle {self.verify_tls}"
        else:
            tls = "disabled"
        return {
            "api_management": bool(self.api_mgmt_url),
            "dev_gateway": self.dev_migo_csrf_url,
            "prd_gateway": self.prd_migo_csrf_url,
            "direct_hosts": dict(self.base_urls),
            "migo_service_path": self.migo_service_path,
            "bsp_service_path": self.bsp_service_path,
            "service_account": bool(self.service_user and self.service_password),
            "default_environment": self.default_environment,
            "tls_verification": tls,
        }


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # Comma-separated origin list, or "*"
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Request bodies are transfer documents, never uploads
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024

    # Include Python stack traces in JSON error bodies
    EXPOSE_STACKTRACES = False


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    EXPOSE_STACKTRACES = _env_flag("EXPOSE_STACKTRACES", True)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    EXPOSE_STACKTRACES = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    EXPOSE_STACKTRACES = False


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
