"""
Structured logging configuration.

structlog builds the event dict (request id from contextvars, app context,
masked payer data) and hands the fields to the stdlib root logger as
``extra``; python-json-logger writes each record as one JSON line.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from crowdpay.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {"api_key", "api_secret", "client_secret", "secret_key", "authorization", "password"}
)
PHONE_KEYS = frozenset({"phone", "phone_number", "payer"})

NOISY_LOGGERS = {"httpx": logging.WARNING, "httpcore": logging.WARNING, "stripe": logging.INFO}


def mask_phone(value: str) -> str:
    """Keep the calling code and last two digits: 22890123456 -> 228******56."""
    if len(value) <= 5:
        return "*" * len(value)
    return value[:3] + "*" * (len(value) - 5) + value[-2:]


def redact_payment_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask payer phone numbers and drop credentials before anything is written."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS:
            event_dict[key] = "[redacted]"
        elif lowered in PHONE_KEYS and isinstance(event_dict[key], str):
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def app_context(settings: Settings) -> Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]:
    static = {"app_name": settings.app_name, "app_env": settings.app_env}

    def add(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.update(static)
        return event_dict

    return add


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the JSON root handler. Safe to call more than once."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.format_exc_info,
            app_context(settings),
            redact_payment_data,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(message)s %(name)s",
            rename_fields={"message": "event", "name": "logger_name"},
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.log_level)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)
