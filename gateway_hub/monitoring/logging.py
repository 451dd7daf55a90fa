"""
Logging setup for the API and the retry worker.

Events are structlog key/value pairs rendered as one JSON object per line.
Card data and credentials must never reach a log line, so a redaction step
runs before rendering.
"""
import logging
import sys
from typing import Any, Dict, Iterable, Optional, TextIO

import structlog
from pythonjsonlogger import jsonlogger

from gateway_hub.config import Settings, get_settings

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "card_number",
        "cvv",
        "cvc",
        "authorization",
        "api_key",
        "x-api-key",
        "client_secret",
        "tokenization_key",
        "stripe_secret_key",
        "paypal_client_secret",
    }
)

# third-party loggers and the level they are capped at
LIBRARY_LEVELS: Dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "stripe": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
}


class AppContext:
    """Stamp every event with the service name and environment."""

    def __init__(self, app_name: str, app_env: str):
        self.app_name = app_name
        self.app_env = app_env

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app_name", self.app_name)
        event_dict.setdefault("app_env", self.app_env)
        return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace sensitive values, including inside nested dicts such as
    request headers or provider payloads.
    """
    return _redact(event_dict)


def _redact(value: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
            cleaned[key] = REDACTED
        elif isinstance(item, dict):
            cleaned[key] = _redact(item)
        else:
            cleaned[key] = item
    return cleaned


def build_processors(settings: Settings) -> list:
    """structlog processor chain, ending in the JSON renderer."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        AppContext(settings.app_name, settings.app_env),
        redact_sensitive,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(
    settings: Optional[Settings] = None,
    stream: Optional[TextIO] = None,
    library_levels: Optional[Dict[str, int]] = None,
) -> None:
    """
    Configure structlog and the root handler.

    Args:
        settings: Application settings; defaults to the cached settings
        stream: Output stream, stdout unless given
        library_levels: Overrides for ``LIBRARY_LEVELS``
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    # structlog has already rendered JSON; plain stdlib records get wrapped
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    _cap_library_levels({**LIBRARY_LEVELS, **(library_levels or {})}.items())

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )


def _cap_library_levels(levels: Iterable) -> None:
    for name, level in levels:
        logging.getLogger(name).setLevel(level)
