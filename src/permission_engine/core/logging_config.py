"""Log setup for the permission engine.

Records are stamped with the actor whose session is active. When a call
site passes ``extra={"evaluation_key": key}``, the record also carries the
decision's ``resource`` so log queries can filter by it. Session tokens are
masked in messages, tracebacks and secret-named extra fields before any
handler writes them.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from ..keys import resource_of
from .config import settings as default_settings


# Set by PermissionEngine.login()/logout().
actor_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("actor_id", default="")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(actor_id)s] %(message)s"

_LOG_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_REDACTED = "***REDACTED***"

# group(1), when present, is kept as a prefix.
_TOKEN_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)\S{16,}"),
    re.compile(r"\beyJ[\w-]{10,}\.[\w-]{10,}\.[\w-]+"),
    re.compile(r"(?i)((?:api_token|token|secret|password)\s*[=:]\s*)[^\s,'\"]{8,}"),
)
_SECRET_FIELD = re.compile(r"(?i)token|secret|password|authorization")


def _mask(text: str) -> str:
    for pattern in _TOKEN_PATTERNS:
        text = pattern.sub(lambda m: (m.group(1) if m.lastindex else "") + _REDACTED, text)
    return text


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _LOG_RECORD_ATTRS}


class _EngineContextFilter(logging.Filter):
    """Attach the session actor and the evaluated resource to a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        actor = actor_id_var.get()
        if actor and not hasattr(record, "actor_id"):
            record.actor_id = actor
        key = getattr(record, "evaluation_key", None)
        if key and not hasattr(record, "resource"):
            record.resource = resource_of(key)
        return True


class _SecretFilter(logging.Filter):
    """Mask bearer tokens, JWTs and ``token=...`` pairs.

    The message is rendered first so secrets passed as ``%s`` arguments are
    caught too. Tracebacks are rendered and masked here as well, since a
    formatter would otherwise render them afterwards from ``exc_info``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg, record.args = record.getMessage(), None
        record.msg = _mask(str(record.msg))
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = _mask(record.exc_text)
        for name, value in _extra_fields(record).items():
            if isinstance(value, str) and _SECRET_FIELD.search(name):
                setattr(record, name, _REDACTED)
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields land at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in _extra_fields(record).items():
            payload.setdefault(key, value)
        if record.exc_info or record.exc_text:
            payload["exception"] = record.exc_text or self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install the engine's handler on the root logger.

    Args:
        log_level: Level name; ``Settings.log_level`` when omitted.
        log_format: ``"json"`` or ``"text"``; ``Settings.log_format`` when omitted.
    """
    level = (log_level or default_settings.log_level).upper()
    fmt = (log_format or default_settings.log_format).lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_EngineContextFilter())
    handler.addFilter(_SecretFilter())
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, defaults={"actor_id": "-"}))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured", extra={"log_level": level, "log_format": fmt})
