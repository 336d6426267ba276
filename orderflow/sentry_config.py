"""
Sentry configuration for error tracking.

Captures unhandled exceptions and failed transactions with tenant context.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from orderflow.config import settings

logger = structlog.get_logger()


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", dsn_prefix=dsn[:20])


def add_context(event, hint):
    """
    Tag error events with the tenant bound in the structlog context.

    The auth dependency binds tenant_id per request, so an event raised
    while serving a request carries the affected tenant.
    """
    tenant_id = structlog.contextvars.get_contextvars().get("tenant_id")
    if tenant_id:
        event.setdefault("tags", {})["tenant_id"] = tenant_id
    return event


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception as exc:
            capture_exception(exc)
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)

