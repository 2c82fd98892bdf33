"""Structured logging for lectern (structlog over stdlib logging) and secret masking."""

import json
import logging
import re
import sys
from typing import Any

import structlog

# Secret shapes that can reach log fields: provider keys, auth headers and
# the ``key=`` query parameter of Gemini REST URLs.
_SECRET_PATTERNS = [
    re.compile(r"AIza[A-Za-z0-9_-]{20,}"),
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),
    re.compile(r"Bearer\s+[A-Za-z0-9_\-.]{10,}"),
    re.compile(r"(?<=[?&]key=)[A-Za-z0-9_-]{10,}"),
]

# LiteLLM and the HTTP stack log every request at INFO.
_CHATTY_LOGGERS = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx", "httpcore")


def mask_secret(value: str) -> str:
    """Mask a secret value, keeping first 4 and last 4 chars visible.

    >>> mask_secret("AIzaSyA1234567890abcdefghij")
    'AIza****ghij'
    """
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def mask_in(text: str, secret: str | None) -> str:
    """Replace every occurrence of *secret* in *text* with its masked form."""
    if not secret or secret not in text:
        return text
    return text.replace(secret, mask_secret(secret))


def redact(value: str) -> str:
    """Replace any secret-looking substrings in *value*."""
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda m: mask_secret(m.group(0)), value)
    return value


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {k: _redact_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(v) for v in value)
    return value


def _redact_event(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Structlog processor that redacts secrets from string values, including nested ones."""
    for key, val in event_dict.items():
        event_dict[key] = _redact_value(val)
    return event_dict


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog with stdlib logging backend.

    Turn fields bound through ``structlog.contextvars`` (conversation, turn and
    request ids) are merged into every event. Below DEBUG the LiteLLM and
    httpx loggers are held at WARNING.

    Args:
        json_output: If True, output JSON lines; otherwise human-readable console output.
        level: Log level for the ``lectern`` logger hierarchy.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_event,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer(serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, **kw))
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    log_level = getattr(logging, level.upper())
    root = logging.getLogger("lectern")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(log_level if log_level <= logging.DEBUG else logging.WARNING)


def get_logger(name: str = "lectern") -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger for the given name."""
    return structlog.get_logger(name)
