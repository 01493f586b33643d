"""
Response normalization for SAP MIGO replies.

SAP answers the same transfer call in several shapes depending on the path
taken (API Management gateway or direct backend) and the Accept header:

    PlainJson       {"Success": true, "MatDoc": "...", ...}
    ODataJson       {"d": {"Success": true, "MatDoc": "...", ...}}
    ODataXml        <entry><content><m:properties><d:MatDoc>...</d:MatDoc>...
    HtmlErrorPage   <!DOCTYPE html>... (gateway / ICF error page)
    OpaqueText      any other text (plain-text gateway errors)

``detect_payload_shape`` classifies a body into exactly one of these,
each shape has one decoder, and ``normalize_response`` dispatches on the
detected shape. The result is always the same envelope:

    {"success": bool, "message": str,
     "data": {"materialDocument": str | None, "documentYear": str | None, "raw": ...}}

Normalization never raises: a body that matches no decoder degrades to a
generic envelope.

Known risk: a JSON reply with HTTP 200 and no explicit
``Success`` flag is treated as success, even though SAP could return 200
with a failure payload lacking the flag.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from lxml import etree

from migo_proxy.core.exceptions import MalformedUpstreamPayload

logger = logging.getLogger(__name__)

XML_SUCCESS_MESSAGE = "Operation completed successfully"
XML_FAILURE_MESSAGE = "Operation failed"
HTML_ERROR_MESSAGE = "SAP API Management returned HTML error page"
UNRECOGNISED_MESSAGE = "Unrecognised response from SAP"

# Entity properties can sit at any of these depths in an Atom/XML reply
_PROPERTIES_PATHS: tuple[tuple[str, ...], ...] = (
    ("entry", "content", "properties"),
    ("content", "properties"),
    ("properties",),
)

# No DTDs, no external entities, no network: SAP replies are data, not documents
_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False)
# Second pass for fragments whose only fault is an undeclared prefix (d:, m:)
_XML_PREFIX_TOLERANT_PARSER = etree.XMLParser(
    resolve_entities=False, no_network=True, load_dtd=False, recover=True
)


# ═════════════════════════════════════════════════════════════════════════
# Payload shapes
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PlainJson:
    payload: dict


@dataclass(frozen=True)
class ODataJson:
    payload: dict

    @property
    def entity(self) -> dict:
        d = self.payload.get("d")
        return d if isinstance(d, dict) else {}


@dataclass(frozen=True)
class ODataXml:
    tree: dict
    text: str


@dataclass(frozen=True)
class HtmlErrorPage:
    text: str


@dataclass(frozen=True)
class OpaqueText:
    text: str


PayloadShape = Union[PlainJson, ODataJson, ODataXml, HtmlErrorPage, OpaqueText]


@dataclass(frozen=True)
class NormalizedResponse:
    """Stable envelope returned to the frontend whatever SAP replied."""

    success: bool
    message: str
    material_document: str | None = None
    document_year: str | None = None
    raw: Any = None

    def to_dict(self) -> dict:
        body: dict = {
            "success": self.success,
            "message": self.message,
            "data": {
                "materialDocument": self.material_document,
                "documentYear": self.document_year,
                "raw": self.raw,
            },
        }
        if not self.success:
            body["error"] = self.message
        return body


# ═════════════════════════════════════════════════════════════════════════
# XML helpers
# ═════════════════════════════════════════════════════════════════════════


def _local_name(tag: str) -> str:
    """``{uri}properties`` / ``m:properties`` / ``properties`` → ``properties``."""
    if tag.startswith("{"):
        tag = tag.split("}", 1)[1]
    return tag.rsplit(":", 1)[-1]


def _element_to_tree(element: etree._Element) -> Any:
    """Convert an element into an attribute-merged, non-array-forced tree.

    Attributes and child elements become keys (by local name). A child that
    occurs once is a scalar or dict; repeated children become a list. Text of
    an element that also has attributes or children is stored under ``"_"``.
    """
    children = [child for child in element if isinstance(child.tag, str)]
    attrs = {_local_name(key): value for key, value in element.attrib.items()}
    text = (element.text or "").strip()
    if not children and not attrs:
        return text

    node: dict[str, Any] = dict(attrs)
    for child in children:
        key = _local_name(child.tag)
        value = _element_to_tree(child)
        if key not in node:
            node[key] = value
        elif isinstance(node[key], list):
            node[key].append(value)
        else:
            node[key] = [node[key], value]
    if text:
        node["_"] = text
    return node


def _is_namespace_error(err) -> bool:
    return err.domain == etree.ErrorDomains.NAMESPACE or "Namespace prefix" in (err.message or "")


def _only_namespace_errors(exc: etree.XMLSyntaxError) -> bool:
    errors = [err for err in (getattr(exc, "error_log", None) or ()) if err.level_name != "WARNING"]
    if not errors:
        return "Namespace prefix" in str(exc)
    return all(_is_namespace_error(err) for err in errors)


def parse_xml_tree(text: str) -> dict:
    """Parse XML text into ``{root_local_name: tree}``.

    Undeclared namespace prefixes (``<d:MatDoc>`` without ``xmlns:d``) are
    tolerated; gateways strip declarations from fragments.

    Raises:
        MalformedUpstreamPayload: The text is not well-formed XML.
    """
    data = text.encode("utf-8")
    try:
        root = etree.fromstring(data, parser=_XML_PARSER)
    except etree.XMLSyntaxError as exc:
        if not _only_namespace_errors(exc):
            raise MalformedUpstreamPayload(f"Invalid XML: {exc}") from exc
        root = etree.fromstring(data, parser=_XML_PREFIX_TOLERANT_PARSER)
    if root is None:
        raise MalformedUpstreamPayload("Empty XML document")
    return {_local_name(root.tag): _element_to_tree(root)}


def _dig(tree: Any, path: tuple[str, ...]) -> Any:
    node = tree
    for key in path:
        if isinstance(node, list):
            node = node[0] if node else None
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _scalar(value: Any) -> Any:
    """Text of a tree node; ``None`` for empty or ``m:null`` elements."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("_")
    if value == "":
        return None
    return value


def _property(properties: dict, name: str) -> Any:
    """Read ``X`` or its ``EvX`` export-parameter spelling."""
    value = _scalar(properties.get(name))
    if value is None:
        value = _scalar(properties.get(f"Ev{name}"))
    return value


# ═════════════════════════════════════════════════════════════════════════
# Shape detection
# ═════════════════════════════════════════════════════════════════════════


def _is_html(text: str) -> bool:
    head = text.lstrip()[:16].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def _json_shape(payload: Any) -> PayloadShape:
    if not isinstance(payload, dict):
        raise MalformedUpstreamPayload(f"Expected a JSON object, got {type(payload).__name__}")
    if isinstance(payload.get("d"), dict):
        return ODataJson(payload)
    return PlainJson(payload)


def detect_payload_shape(body: Any) -> PayloadShape:
    """Classify an upstream body (parsed JSON, text or bytes).

    HTML is recognised before any XML parsing is attempted.

    Raises:
        MalformedUpstreamPayload: Parsed JSON that is not an object.
    """
    if body is None:
        return PlainJson({})
    if isinstance(body, (dict, list)):
        return _json_shape(body)
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str):
        raise MalformedUpstreamPayload(f"Unsupported body type {type(body).__name__}")

    text = body.strip()
    if not text:
        return PlainJson({})
    if _is_html(text):
        return HtmlErrorPage(text)
    if text.startswith("<"):
        try:
            return ODataXml(parse_xml_tree(text), text)
        except MalformedUpstreamPayload:
            return OpaqueText(text)
    try:
        payload = json.loads(text)
    except ValueError:
        return OpaqueText(text)
    return _json_shape(payload)


# ═════════════════════════════════════════════════════════════════════════
# Decoders (one per shape)
# ═════════════════════════════════════════════════════════════════════════


def _first_truthy(layers: list[dict], key: str) -> Any:
    for layer in layers:
        value = layer.get(key)
        if value:
            return value
    return None


def _decode_json_layers(
    layers: list[dict], raw: Any, status_code: int | None, default_message: str
) -> NormalizedResponse:
    flag_present = any("Success" in layer for layer in layers)
    success = any(layer.get("Success") is True for layer in layers) or (
        status_code == 200 and not flag_present
    )
    return NormalizedResponse(
        success=success,
        message=_first_truthy(layers, "Message") or default_message,
        material_document=_first_truthy(layers, "MatDoc"),
        document_year=_first_truthy(layers, "MatDocYear"),
        raw=raw,
    )


def _decode_plain_json(shape: PlainJson, status_code: int | None, default_message: str) -> NormalizedResponse:
    return _decode_json_layers([shape.payload], shape.payload, status_code, default_message)


def _decode_odata_json(shape: ODataJson, status_code: int | None, default_message: str) -> NormalizedResponse:
    return _decode_json_layers([shape.entity, shape.payload], shape.payload, status_code, default_message)


def _decode_odata_xml(shape: ODataXml, status_code: int | None, default_message: str) -> NormalizedResponse:
    tree = shape.tree
    if "error" in tree:
        message = _scalar(_dig(tree, ("error", "message"))) or "Unknown SAP error"
        return NormalizedResponse(success=False, message=str(message), raw=shape.text)

    properties = None
    for path in _PROPERTIES_PATHS:
        properties = _dig(tree, path)
        if properties is not None:
            break
    if not isinstance(properties, dict):
        return NormalizedResponse(success=True, message=XML_SUCCESS_MESSAGE, raw=shape.text)

    raw_success = _property(properties, "Success")
    success = raw_success is True or str(raw_success).strip().lower() == "true"
    message = _property(properties, "Message") or (
        XML_SUCCESS_MESSAGE if success else XML_FAILURE_MESSAGE
    )
    return NormalizedResponse(
        success=success,
        message=str(message),
        material_document=_property(properties, "MatDoc"),
        document_year=_property(properties, "MatDocYear"),
        raw=shape.text,
    )


def _decode_html(shape: HtmlErrorPage, status_code: int | None, default_message: str) -> NormalizedResponse:
    return NormalizedResponse(success=False, message=HTML_ERROR_MESSAGE, raw=shape.text)


def _decode_opaque_text(shape: OpaqueText, status_code: int | None, default_message: str) -> NormalizedResponse:
    return NormalizedResponse(success=False, message=shape.text, raw=shape.text)


_DECODERS: dict[type, Callable[..., NormalizedResponse]] = {
    PlainJson: _decode_plain_json,
    ODataJson: _decode_odata_json,
    ODataXml: _decode_odata_xml,
    HtmlErrorPage: _decode_html,
    OpaqueText: _decode_opaque_text,
}


def normalize_response(
    body: Any,
    status_code: int | None = None,
    default_message: str = XML_SUCCESS_MESSAGE,
) -> NormalizedResponse:
    """Normalize any SAP reply into a NormalizedResponse. Never raises.

    Args:
        body:            Parsed JSON, or raw text/bytes of the reply.
        status_code:     Upstream HTTP status (drives the implicit-success rule).
        default_message: Message used when a JSON reply carries none.
    """
    try:
        shape = detect_payload_shape(body)
        return _DECODERS[type(shape)](shape, status_code, default_message)
    except MalformedUpstreamPayload as exc:
        logger.warning("Unrecognised SAP payload (%s); degrading to generic envelope", exc)
        success = status_code == 200
        return NormalizedResponse(
            success=success,
            message=default_message if success else UNRECOGNISED_MESSAGE,
            raw=body,
        )


def extract_error_message(body: Any, status_code: int) -> str:
    """Find the SAP error text in a failed reply.

    Looks at ``error.message.value``, ``error.message``, ``message`` and, for
    XML replies, the ``<error><message>`` node.
    """
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, dict) and message.get("value"):
                return str(message["value"])
            if isinstance(message, str) and message:
                return message
        if isinstance(body.get("message"), str) and body["message"]:
            return body["message"]
    elif isinstance(body, str) and body.strip().startswith("<") and not _is_html(body):
        try:
            tree = parse_xml_tree(body.strip())
        except MalformedUpstreamPayload:
            tree = {}
        message = _scalar(_dig(tree, ("error", "message")))
        if message:
            return str(message)
    return f"SAP API returned status {status_code}"
