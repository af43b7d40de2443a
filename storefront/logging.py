"""structlog setup shared by every module.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Each event carries the id of the request that produced it.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, List, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# substrings of event keys whose values must never reach the log sink
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "api_key", "phone")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_request_id() -> Optional[str]:
    return _request_id.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Use the caller's request id, or mint one, for the current context."""
    value = request_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _attach_request_id(_, __, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id and "request_id" not in event:
        event["request_id"] = request_id
    return event


def _mask_sensitive(_, __, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key, value in event.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            event[key] = f"{value[:2]}***{value[-2:]}"
    return event


def _truthy(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev: bool = False) -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _attach_request_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy("LOG_JSON", "true"),
    dev=_truthy("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
