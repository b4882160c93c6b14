"""structlog setup shared by every authcore module.

Log lines are event names plus keyword fields. A correlation id bound with
``correlation_scope`` rides along in structlog's context variables, so every
line written while one gateway operation runs (store, pool and broker
included) carries the same ``correlation_id``.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse, urlunparse

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings of field names whose string values are masked
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email", "code")


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of one operation.

    An id the caller already bound (usually the transport layer, per inbound
    request) is kept, so nested operations log under the same request. An
    explicit ``correlation_id`` always wins.
    """

    current = get_correlation_id()
    if current and correlation_id is None:
        yield current
        return
    cid = correlation_id or uuid.uuid4().hex
    with structlog.contextvars.bound_contextvars(correlation_id=cid):
        yield cid


def _mask(value: str) -> str:
    return value[:2] + "***" + value[-2:]


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: one JSON object per line when True
        development_mode: coloured console output, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # psycopg_pool reports through the standard library
    logging.getLogger("psycopg.pool").setLevel(level)


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for safe logging.

    Example: postgresql://app:hunter2@db:5432/chat -> postgresql://app:***@db:5432/chat
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )
