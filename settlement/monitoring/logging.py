"""
Structured logging configuration.

structlog renders every event as JSON; the standard library root logger
uses python-json-logger so SQLAlchemy, Stripe and uvicorn lines share the
same shape. Every event carries the process component (api, release-worker,
reconciliation-worker) so one log stream can hold all three.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from settlement.config import get_settings

# Event fields that may carry processor credentials or buyer-facing secrets
SECRET_FIELDS = frozenset(
    {
        "client_secret",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_signature",
        "authorization",
    }
)
REDACTED = "[redacted]"


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential fields before rendering."""
    for key in SECRET_FIELDS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    return event_dict


def setup_logging(component: str = "api") -> None:
    """
    Configure structured logging for one process.

    Args:
        component: Process role bound to every event of this process

    Request-scoped fields (request_id, method, path) bound through
    structlog.contextvars by the API middleware are merged in as well.
    """
    settings = get_settings()

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
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(component=component)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
            static_fields={"component": component},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level))

    for noisy, level in (
        ("urllib3", logging.WARNING),
        ("stripe", logging.INFO),
        ("sqlalchemy.engine", logging.WARNING),
        ("uvicorn.access", logging.WARNING),
    ):
        logging.getLogger(noisy).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
    )
