"""
Structured logging for the rewards services.

structlog is configured on top of the stdlib ``logging`` package so library
and uvicorn records go through the same processors and renderer.

    from core.logging import setup_logging, get_logger

    setup_logging()              # once at process start
    log = get_logger(__name__)
    log.info("lot_granted", owner="0xabc", amount="144.0")

Environment:
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
- LOG_FORMAT: "json" (default) or "console"
"""

import logging
import os
from typing import IO, Any, Dict, Iterable, Optional

import structlog
from structlog.contextvars import merge_contextvars


REDACT_KEYS = {"authorization", "token_secret", "password", "secret", "api_key"}


def _redact_secrets(_: logging.Logger, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k in list(event_dict.keys()):
        if k.lower() in REDACT_KEYS and event_dict[k] is not None:
            event_dict[k] = "***"
    return event_dict


def _base_processors(service_name: str) -> Iterable:
    yield structlog.stdlib.add_log_level
    yield structlog.processors.TimeStamper(fmt="iso", utc=True)
    yield merge_contextvars
    yield structlog.processors.StackInfoRenderer()
    yield structlog.processors.format_exc_info
    yield _redact_secrets
    yield structlog.processors.UnicodeDecoder()

    def _ensure_service(_: logging.Logger, __: str, ev: Dict[str, Any]) -> Dict[str, Any]:
        ev.setdefault("service", service_name)
        return ev

    yield _ensure_service


def setup_logging(
    *,
    service_name: str = "lp-rewards",
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> None:
    """Configure structlog and stdlib logging. Safe to call more than once.

    structlog events are handed to the stdlib handler unrendered; its
    ``ProcessorFormatter`` renders them together with foreign records, so
    each event is serialized exactly once.
    """
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_format = (log_format or os.getenv("LOG_FORMAT") or "json").lower()

    processors = list(_base_processors(service_name))
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False, sort_keys=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *processors],
        )
    )

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.propagate = False
        lg.setLevel(level)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def bind_context(**kv: Any) -> None:
    """Bind key/values (request id, period day, actor) into every later event."""
    structlog.contextvars.bind_contextvars(**kv)


def clear_context(*keys: str) -> None:
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()


__all__ = ["setup_logging", "get_logger", "bind_context", "clear_context"]
