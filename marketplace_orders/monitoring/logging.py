"""
Logging setup for the order service.

structlog renders every event; stdlib records (uvicorn, SQLAlchemy, Stripe)
go through python-json-logger so one process emits one JSON stream.
Payment tokens and secrets are masked before rendering.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from marketplace_orders.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {"payment_token", "card_number", "cvc", "stripe_secret_key", "authorization"}
)
_VISIBLE_SUFFIX = 4

_QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "stripe": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "redis": logging.WARNING,
}


def mask(value: Any) -> str:
    """Keep only the last few characters of a sensitive value."""
    text = str(value)
    if len(text) <= _VISIBLE_SUFFIX:
        return "****"
    return "****" + text[-_VISIBLE_SUFFIX:]


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = mask(event_dict[key])
    return event_dict


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def _renderer(settings: Settings) -> Any:
    if settings.log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root stdlib logger. Safe to call more than once."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            redact_sensitive_fields,
            _renderer(settings),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.log_level)

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, log_format=settings.log_format
    )
