"""
Structured logging configuration using structlog.

Every line is one JSON object. Request-scoped fields (request_id, tenant_id,
actor_id) come from structlog contextvars bound by the middleware and the
auth dependency; service and environment are added to every line.
"""
import logging
import sys

import structlog

from orderflow.config import settings


def _add_service_context(logger, method_name, event_dict):
    event_dict.setdefault("service", settings.APP_NAME.lower())
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def configure_logging():
    """Configure structlog for JSON output at settings.LOG_LEVEL."""
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Delivery outcomes are logged by the dispatcher itself
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True)
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(tenant_id=tenant_id, order_id=order_id)
        log.info("order_accepted", actor_id=actor_id)
    """
    return logger.bind(**context)
