"""Logging setup for the gateway: text or JSON records on stdout, keys masked."""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from ai_gateway.core.config import settings

# Extra fields copied into JSON records when a log call passes them via extra={}
_CONTEXT_FIELDS = ("provider", "capability", "model", "request_id", "cache_key")

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_QUIET_LOGGERS = ("httpx", "httpcore")

# Bearer tokens and vendor-style secret keys that may leak through exception text
_SECRET_PATTERN = re.compile(r"(Bearer\s+|\b(?:sk|xai)[-_]|\bAIza)([A-Za-z0-9_\-]{8,})")


def mask_key(api_key: str | None) -> str:
    """Render an API key safe for logs: only the last 4 characters survive."""
    if not api_key:
        return "<none>"
    if len(api_key) <= 4:
        return "****"
    return f"****{api_key[-4:]}"


def _scrub(text: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: m.group(1) + mask_key(m.group(2)), text)


class SecretMaskingFilter(logging.Filter):
    """Masks anything that looks like an API key in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = _scrub(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with dispatch context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update({name: getattr(record, name) for name in _CONTEXT_FIELDS if hasattr(record, name)})
        return json.dumps(entry, ensure_ascii=False, default=str)


def _build_handler(level: int, use_json: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(SecretMaskingFilter())
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Replace the root handlers with a single stdout handler.

    Arguments override ``settings.log_level`` / ``settings.log_json``.
    """
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    use_json = settings.log_json if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(log_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(_build_handler(log_level, use_json))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
