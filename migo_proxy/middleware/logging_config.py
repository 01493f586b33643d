"""
Logging setup for the proxy.

Two output formats share one record layout:

  json     one object per line, request and SAP context grouped under
           ``request`` / ``sap`` keys (production default)
  console  one coloured line, SAP environment and upstream status inline
           (development and testing default)

``LOG_FORMAT`` forces either format, ``LOG_LEVEL`` the level.

Credentials must not reach the log. Code logs usernames and environments
only, and ``SecretMaskingFilter`` masks any Basic credential, CSRF token or
SAP session cookie that slips into a message anyway.
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone

REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")
SAP_FIELDS = ("sap_environment", "sap_user", "upstream_url", "upstream_status")

MASK = "***"

_SECRET_PATTERNS = (
    re.compile(r"(?i)(authorization:\s*basic\s+)[A-Za-z0-9+/=]+"),
    re.compile(r"(?i)(x-csrf-token[\"']?\s*[:=]\s*[\"']?)(?!fetch\b)[^\s,;\"']+"),
    re.compile(r"(?i)((?:sap_sessionid|mysapsso2|sap-usercontext)[^=\s]*=)[^;\s]+"),
)


def mask_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(rf"\g<1>{MASK}", text)
    return text


class SecretMaskingFilter(logging.Filter):
    """Rewrite the rendered message with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


def _collect(record: logging.LogRecord, fields: tuple) -> dict:
    values = {}
    for key in fields:
        value = getattr(record, key, None)
        if value is not None and value != "":
            values[key] = value
    return values


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        request_ctx = _collect(record, REQUEST_FIELDS)
        if request_ctx:
            entry["request"] = request_ctx
        sap_ctx = _collect(record, SAP_FIELDS)
        if sap_ctx:
            entry["sap"] = sap_ctx
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line coloured output for a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        parts = [self.formatTime(record, self.datefmt), level, f"{record.name}:"]
        env = getattr(record, "sap_environment", None)
        if env:
            parts.append(f"<{env}>")
        parts.append(record.getMessage())
        upstream = getattr(record, "upstream_status", None)
        if upstream is not None:
            parts.append(f"(SAP {upstream})")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")

        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pick_format(app) -> str:
    forced = os.getenv("LOG_FORMAT", "").strip().lower()
    if forced in ("json", "console"):
        return forced
    if app.config.get("DEBUG") or app.config.get("TESTING"):
        return "console"
    return "json"


def configure_logging(app):
    """Install one stderr handler on the root logger for this app.

    Repeated calls (one per ``create_app`` in tests) replace the handler.
    """
    fmt = _pick_format(app)
    default_level = "INFO" if fmt == "json" else "DEBUG"
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(SecretMaskingFilter())
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(use_color=sys.stderr.isatty()))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "flask_cors"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
