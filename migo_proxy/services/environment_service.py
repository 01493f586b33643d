"""
Environment resolution: logical SAP environment → concrete endpoints.

Two SAP systems exist. Development (tag ``dev`` or client ``110``) and
production (tag ``prd`` or client ``300``). Any other tag is treated as a
custom client code served by the development landscape.

Pure configuration lookup on an immutable SapSettings; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass

from migo_proxy.config import SapSettings

DEV = "dev"
PRD = "prd"

_ALIASES = {
    "110": DEV,
    DEV: DEV,
    "300": PRD,
    PRD: PRD,
}

_SAP_CLIENTS = {
    DEV: "110",
    PRD: "300",
}


@dataclass(frozen=True)
class EnvironmentRoute:
    """Endpoints and client code for one request's environment.

    ``direct_csrf_url`` / ``direct_post_url`` are the fallback pair used when
    the development gateway cannot hand out a CSRF token; they are ``None``
    in production, where the gateway is the only path.
    """

    environment: str
    sap_client: str
    is_production: bool
    base_url: str
    csrf_url: str
    post_url: str
    direct_csrf_url: str | None
    direct_post_url: str | None
    metadata_url: str


def normalize_environment(tag: str) -> str:
    """Map ``110``/``dev`` → ``dev`` and ``300``/``prd`` → ``prd``.

    Any other value is returned unchanged. Idempotent.
    """
    return _ALIASES.get(tag, tag)


def sap_client_for(tag: str) -> str:
    """Return the numeric sap-client for an environment tag."""
    env = normalize_environment(tag)
    return _SAP_CLIENTS.get(env, env)


def base_url_for(settings: SapSettings, tag: str) -> str:
    """Direct backend host for the environment; unknown tags use development."""
    env = normalize_environment(tag)
    return settings.base_urls.get(env) or settings.base_urls[DEV]


def resolve_environment(settings: SapSettings, tag: str) -> EnvironmentRoute:
    """Resolve an environment tag into its MIGO endpoints."""
    env = normalize_environment(tag)
    is_production = env == PRD
    base_url = base_url_for(settings, env).rstrip("/")
    service_root = f"{base_url}{settings.migo_service_path}"

    if is_production:
        return EnvironmentRoute(
            environment=env,
            sap_client=sap_client_for(env),
            is_production=True,
            base_url=base_url,
            csrf_url=settings.prd_migo_csrf_url,
            post_url=settings.prd_migo_post_url,
            direct_csrf_url=None,
            direct_post_url=None,
            metadata_url=f"{service_root}/$metadata",
        )

    direct_url = f"{service_root}/TransferHeaderSet"
    return EnvironmentRoute(
        environment=env,
        sap_client=sap_client_for(env),
        is_production=False,
        base_url=base_url,
        csrf_url=settings.dev_migo_csrf_url,
        post_url=settings.dev_migo_post_url,
        direct_csrf_url=direct_url,
        direct_post_url=direct_url,
        metadata_url=f"{service_root}/$metadata",
    )
