"""Logging for the access portal core.

- ``setup_logging()``: one stream handler on the root logger, level and
  format taken from PortalConfig
- ``PortalLogFormatter``: JSON or plain lines stamped with the acting
  identity, ``extra`` fields previewed and scrubbed
- ``get_actor_logger()``: adapter that binds ``actor_id`` / ``request_id``
- ``safe_preview()`` / ``redact_secrets()`` / ``safe_log_value()``

Identity tokens and the HMAC shared secret must never reach a log line;
everything written by the formatter passes through ``redact_secrets``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from .config import LogLevel, PortalConfig

# Credentials in key/value form, bearer headers, identity-token headers,
# serialized identity tokens (kid.payload.signature) and long hex digests
_SECRET_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r'(?:password|passwd|pwd|secret|token|key|api[_-]?key|auth[_-]?token)\s*[:=]\s*["\']?[^"\'\s]+',
        r"(?:bearer|basic)\s+[a-z0-9+/=._-]+",
        r'(?:x-api-key|x-identity-token)\s*[:=]\s*["\']?[^"\'\s]+',
        r"\b[\w-]+\.[a-z0-9_-]{16,}={0,2}\.[a-z0-9_-]*={0,2}",
        r"\b[a-f0-9]{32,}\b",
    )
)

_CONTEXT_KEYS = ("actor_id", "request_id")

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
    *_CONTEXT_KEYS,
}

_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


def safe_preview(value: Any, limit: int = 240) -> str:
    """Single-line text of ``value``, at most ``limit`` characters.

    Dicts and lists are rendered as JSON; longer output ends with "…".
    """
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        try:
            text = json.dumps(value, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            text = str(value)
    else:
        text = value if isinstance(value, str) else str(value)

    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def redact_secrets(text: str, replacement: str = "[REDACTED]") -> str:
    """Replace credentials and identity tokens in ``text``."""
    if not isinstance(text, str):
        return text
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def safe_log_value(value: Any, limit: int = 240, redact: bool = True) -> str:
    preview = safe_preview(value, limit=limit)
    return redact_secrets(preview) if redact else preview


class PortalLogFormatter(logging.Formatter):
    """JSON (default) or plain-text formatter.

    Both forms carry ``actor_id`` / ``request_id`` when the record has them.
    JSON output also includes every ``extra`` field as a safe preview.
    """

    def __init__(
        self,
        include_context: bool = True,
        json_format: bool = True,
        redact_secrets: bool = True,
        *args: Any,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.include_context = include_context
        self.json_format = json_format
        self.redact_secrets = redact_secrets

    def _context(self, record: logging.LogRecord) -> dict[str, Any]:
        if not self.include_context:
            return {}
        return {key: getattr(record, key) for key in _CONTEXT_KEYS if getattr(record, key, None)}

    def _extras(self, record: logging.LogRecord) -> dict[str, str]:
        return {
            key: safe_log_value(value, redact=self.redact_secrets)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        }

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if self.redact_secrets:
            message = redact_secrets(message)
        timestamp = self.formatTime(record, self.datefmt)
        context = self._context(record)

        if not self.json_format:
            line = f"[{timestamp}] {record.levelname} {record.name}"
            if "actor_id" in context:
                line += f" actor={context['actor_id']}"
            if "request_id" in context:
                line += f" request={context['request_id']}"
            line += f": {message}"
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line

        entry: dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": message,
            **context,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(self._extras(record))
        return json.dumps(entry, default=str, ensure_ascii=False)


class ActorLoggerAdapter(logging.LoggerAdapter):
    """Stamps records with the acting identity.

    ``actor_id`` / ``request_id`` may also be passed per call to override
    the bound values.
    """

    def __init__(
        self,
        logger: logging.Logger,
        actor_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(logger, {})
        self.actor_id = actor_id
        self.request_id = request_id

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        bound = {
            "actor_id": kwargs.pop("actor_id", self.actor_id),
            "request_id": kwargs.pop("request_id", self.request_id),
        }
        extra = dict(kwargs.get("extra") or {})
        extra.update({key: value for key, value in bound.items() if value})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    config: Optional[PortalConfig] = None,
    json_format: Optional[bool] = None,
    redact_secrets: bool = True,
) -> None:
    """Install the portal formatter on the root logger.

    Existing root handlers are replaced. ``json_format`` overrides
    ``config.log_json``; without a config one is loaded from the environment.
    """
    if config is None:
        from .config import load_config_from_env

        config = load_config_from_env()

    level = _LEVELS.get(config.log_level, logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        PortalLogFormatter(
            json_format=config.log_json if json_format is None else json_format,
            redact_secrets=redact_secrets,
        )
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    if config.service_name:
        logging.getLogger(config.service_name).setLevel(level)


def get_actor_logger(
    name: str,
    actor_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> ActorLoggerAdapter:
    """Logger adapter bound to the acting identity.

    Example:
        log = get_actor_logger(__name__, actor_id=caller.uid)
        log.info("Request %s approved", request_id)
    """
    return ActorLoggerAdapter(logging.getLogger(name), actor_id=actor_id, request_id=request_id)


__all__ = [
    "ActorLoggerAdapter",
    "PortalLogFormatter",
    "get_actor_logger",
    "redact_secrets",
    "safe_log_value",
    "safe_preview",
    "setup_logging",
]
