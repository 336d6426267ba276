"""
ARQ Background Worker for OrderFlow.

Runs the acceptance sweep on a cron schedule and delivers tenant events
enqueued by other processes. Start with: arq orderflow.worker.WorkerSettings
"""
import asyncio

from arq import cron
from arq.connections import RedisSettings

from orderflow.config import settings
from orderflow.errors import ValidationError
from orderflow.logging_config import configure_logging, get_logger
from orderflow.sentry_config import configure_sentry
from orderflow.services.acceptance_sweeper import AcceptanceSweeper
from orderflow.services.webhook_service import WebhookDispatcher


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    ctx["dispatcher"] = WebhookDispatcher()
    get_logger(worker="arq").info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict) -> None:
    dispatcher = ctx.get("dispatcher")
    if dispatcher is not None:
        await dispatcher.drain()
    get_logger(worker="arq").info("worker_stopped")


async def run_acceptance_sweep(ctx: dict) -> dict:
    """Auto-accept every order whose acceptance deadline has passed."""
    dispatcher = ctx.get("dispatcher")
    processed = await AcceptanceSweeper(dispatcher=dispatcher).run()
    if dispatcher is not None:
        # Deliveries must finish before arq considers the job done
        await dispatcher.drain()
    return {"processed": processed, "count": len(processed)}


async def dispatch_event(ctx: dict, tenant_id: str, event_type: str, data: dict) -> dict:
    """Fan one tenant event out to its subscribed webhooks."""
    dispatcher = ctx.get("dispatcher") or WebhookDispatcher()
    try:
        result = await dispatcher.dispatch(tenant_id, event_type, data)
    except ValidationError as exc:
        # Bad input never becomes valid on retry
        get_logger(tenant_id=tenant_id, event_type=event_type).error("dispatch_rejected", error=exc.detail)
        return {"webhooks_triggered": 0, "error": exc.detail}
    return {
        "webhooks_triggered": result.webhooks_triggered,
        "succeeded": sum(1 for r in result.results if r.success),
    }


# Register functions for ARQ
ARQ_FUNCTIONS = [
    dispatch_event,
    run_acceptance_sweep,
]


async def enqueue_dispatch(tenant_id: str, event_type: str, data: dict) -> bool:
    """Enqueue a tenant event for delivery by the worker."""
    from arq import create_pool

    log = get_logger(tenant_id=tenant_id, event_type=event_type)
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
    except (OSError, ConnectionError) as exc:
        log.error("enqueue_failed", error=str(exc))
        return False

    try:
        await redis.enqueue_job("dispatch_event", tenant_id, event_type, data)
    finally:
        await redis.close()

    log.info("event_enqueued")
    return True


async def main():
    """Run the worker using arq cli."""
    log = get_logger()
    log.info("use_arq_cli", command="arq orderflow.worker.WorkerSettings", redis=settings.REDIS_URL)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq orderflow.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 3
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(run_acceptance_sweep, second=settings.ACCEPTANCE_SWEEP_SECONDS, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())
