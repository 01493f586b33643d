"""
Startup diagnostics — runs once when the Flask app starts.

Summarises the SAP endpoint configuration and logs a banner, plus a warning
for every setting that will make a route fail at request time.
"""

import logging
import sys

from flask import Flask

from migo_proxy.config import SapSettings

logger = logging.getLogger(__name__)


def collect_config_issues(settings: SapSettings) -> list[str]:
    """Return human-readable problems with the SAP configuration."""
    issues: list[str] = []
    if not settings.api_mgmt_url:
        issues.append("SAP_API_MGMT_URL not set — /api/migo/gateway/* routes will return 500")
    elif not (settings.api_mgmt_migo_url and settings.api_mgmt_migo_post_url):
        issues.append("SAP_API_MGMT_MIGO_URL / SAP_API_MGMT_MIGO_POST_URL incomplete")
    if not (settings.service_user and settings.service_password):
        issues.append("SAP_USER / SAP_PASS not set — development BatchInfoGateway calls will be rejected")
    if settings.verify_tls is False:
        issues.append("TLS verification toward SAP is DISABLED (self-signed hosts)")
    return issues


def run_startup_diagnostics(app: Flask, settings: SapSettings):
    """Log the configuration banner during app startup."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    summary = settings.summary()
    hosts = ", ".join(f"{k}={v}" for k, v in summary["direct_hosts"].items())

    banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  SAP MIGO Proxy — Startup Diagnostics                        ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  API Mgmt    : {'configured' if summary['api_management'] else 'NOT SET':<46s}║
║  Default env : {summary['default_environment']:<46s}║
║  TLS verify  : {summary['tls_verification'][:46]:<46s}║
║  Timeouts    : {f'{settings.request_timeout:.0f}s / probe {settings.gateway_probe_timeout:.0f}s':<46s}║
╚══════════════════════════════════════════════════════════════╝"""
    logger.info(banner)
    logger.info("Direct SAP hosts: %s", hosts)

    issues = collect_config_issues(settings)
    if issues:
        logger.warning("Startup issues detected:")
        for issue in issues:
            logger.warning("  ⚠ %s", issue)
    else:
        logger.info("✅ All startup checks passed")
