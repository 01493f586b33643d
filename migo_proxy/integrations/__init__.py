"""migo_proxy.integrations — outbound SAP gateway.

All outbound HTTP calls to SAP (API Management gateway or direct backend)
go through ``sap_gateway.SapGateway``, never via bare ``requests`` calls in
services or blueprints. The gateway owns:
  - Basic authentication with the caller's own SAP credentials
  - The CSRF fetch-token handshake (HEAD, then GET)
  - Session cookie propagation from the handshake to the following call
  - Timeouts and TLS verification policy
  - Mapping transport failures to UpstreamTimeout / UpstreamUnreachable
"""
