"""
Webhook Service

Outbound delivery engine. Fans a tenant's domain events out to every
subscribed webhook, records each attempt, and keeps per-webhook counters.
"""
import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from orderflow.config import settings
from orderflow.database import AsyncSessionLocal, unit_of_work
from orderflow.errors import ConflictError, DeliveryFailure, NotFoundError, ValidationError
from orderflow.events import EventType, is_known_event
from orderflow.logging_config import get_logger
from orderflow.models.base import utcnow
from orderflow.models.webhook import DeliveryStatus, Webhook, WebhookDelivery
from orderflow.routes.metrics import track_webhook_delivery
from orderflow.sentry_config import capture_exception
from orderflow.services.webhook_signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    canonical_json,
    current_timestamp_ms,
    sign_body,
)


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""
    success: bool
    webhook_id: str
    attempt_number: int
    delivery_id: str | None = None
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class DispatchResult:
    """Outcome of fanning one event out."""
    webhooks_triggered: int
    results: list[DeliveryResult] = field(default_factory=list)


def build_event_payload(tenant_id: str, event_type: str, data: dict, event_id: str | None = None) -> dict:
    """Envelope sent to every subscriber of an event."""
    return {
        "event_id": event_id or str(uuid.uuid4()),
        "event": event_type,
        "tenant_id": tenant_id,
        "timestamp": utcnow().isoformat(),
        "data": data,
    }


def truncate(text: str | None, limit: int | None = None) -> str | None:
    if text is None:
        return None
    limit = limit or settings.WEBHOOK_RESPONSE_BODY_LIMIT
    return text[:limit]


class WebhookDispatcher:
    """
    Delivers tenant events to subscribed webhooks.

    `schedule` is the fire-and-forget entry point used after a transaction
    commits: it hands the dispatch to a background task and returns at once.
    Every delivery opens its own session, so concurrent deliveries never
    share transactional state.
    """

    def __init__(self, session_factory=None, transport: httpx.AsyncBaseTransport | None = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.transport = transport
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Fire-and-forget
    # ------------------------------------------------------------------

    def schedule(self, tenant_id: str, event_type: str, data: dict) -> asyncio.Task:
        """Dispatch in the background. The caller never awaits delivery outcomes."""
        task = asyncio.create_task(self._dispatch_in_background(tenant_id, event_type, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch_in_background(self, tenant_id: str, event_type: str, data: dict) -> DispatchResult:
        try:
            return await self.dispatch(tenant_id, event_type, data)
        except Exception as exc:
            # Nobody awaits this task; the failure ends here
            get_logger(tenant_id=tenant_id, event_type=event_type).error(
                "webhook_dispatch_failed", error=str(exc), exc_info=True
            )
            capture_exception(exc)
            return DispatchResult(webhooks_triggered=0)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every scheduled dispatch to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, tenant_id: str, event_type: str, data: dict) -> DispatchResult:
        """
        Deliver one event to every active webhook of the tenant subscribed to it.

        Deliveries run concurrently and settle independently: one webhook's
        failure never affects another's delivery or the returned count.
        """
        if not event_type:
            raise ValidationError("event_type is required")
        if not is_known_event(event_type):
            raise ValidationError(f"Unknown event type: {event_type}")

        log = get_logger(tenant_id=tenant_id, event_type=event_type)

        async with self.session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.tenant_id == tenant_id,  # SECURITY: Enforce tenant isolation
                Webhook.is_active.is_(True)
            )
            result = await db.execute(stmt)
            webhooks = [w for w in result.scalars().all() if event_type in (w.events or [])]

        if not webhooks:
            log.info("webhook_dispatch_skipped", reason="no matching webhooks")
            return DispatchResult(webhooks_triggered=0)

        payload = build_event_payload(tenant_id, event_type, data)

        outcomes = await asyncio.gather(
            *(self.deliver(webhook, payload, attempt_number=1) for webhook in webhooks),
            return_exceptions=True
        )

        results = []
        for webhook, outcome in zip(webhooks, outcomes):
            if isinstance(outcome, Exception):
                log.error("webhook_delivery_not_recorded", webhook_id=webhook.id, error=str(outcome))
                continue
            results.append(outcome)

        log.info(
            "webhook_dispatched",
            event_id=payload["event_id"],
            webhooks_triggered=len(webhooks),
            succeeded=sum(1 for r in results if r.success)
        )
        return DispatchResult(webhooks_triggered=len(webhooks), results=results)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(
        self,
        webhook: Webhook,
        payload: dict,
        attempt_number: int = 1,
        delivery_id: str | None = None
    ) -> DeliveryResult:
        """
        POST a signed payload to one webhook and record the attempt.

        Never raises for transport problems: non-2xx, network errors and
        timeouts all produce a `failed` delivery row.

        Args:
            webhook: Target webhook
            payload: Event envelope; values JSON cannot encode are sent as strings
            attempt_number: Attempt number of this event on this webhook
            delivery_id: Reserved `pending` row to complete instead of inserting one

        Returns:
            DeliveryResult with the id of the recorded delivery row
        """
        body = canonical_json(payload)
        # The stored payload is exactly what was signed and sent
        snapshot = json.loads(body)
        timestamp = current_timestamp_ms()

        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(webhook.secret, timestamp, body),
            TIMESTAMP_HEADER: str(timestamp),
            "User-Agent": settings.WEBHOOK_USER_AGENT,
            **(webhook.headers or {}),
        }
        timeout = webhook.timeout_seconds or settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS

        status_code = None
        response_body = None
        error = None
        started = time.perf_counter()

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(webhook.url, content=body.encode("utf-8"), headers=headers)
            status_code = response.status_code
            response_body = truncate(response.text)
            if not response.is_success:
                raise DeliveryFailure(f"HTTP {status_code}", status_code, response_body)
        except DeliveryFailure as exc:
            error = exc.detail
        except httpx.TimeoutException:
            error = f"Timed out after {timeout}s"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = str(exc) or exc.__class__.__name__

        duration_seconds = time.perf_counter() - started
        result = DeliveryResult(
            success=error is None,
            webhook_id=webhook.id,
            attempt_number=attempt_number,
            status_code=status_code,
            response_body=response_body,
            error=truncate(error),
            duration_ms=int(duration_seconds * 1000),
        )

        result.delivery_id = await self._record(webhook, snapshot, result, delivery_id)

        status = DeliveryStatus.SUCCESS.value if result.success else DeliveryStatus.FAILED.value
        track_webhook_delivery(webhook.tenant_id, status, duration_seconds)
        log = get_logger(tenant_id=webhook.tenant_id, webhook_id=webhook.id, event_type=snapshot.get("event"))
        if result.success:
            log.info("webhook_delivered", status_code=status_code, attempt=attempt_number, duration_ms=result.duration_ms)
        else:
            log.warning("webhook_delivery_failed", status_code=status_code, attempt=attempt_number, error=result.error)

        return result

    async def _record(
        self,
        webhook: Webhook,
        payload: dict,
        result: DeliveryResult,
        delivery_id: str | None = None
    ) -> str:
        """Write the delivery outcome and bump the counters in one transaction."""
        now = utcnow()
        status = DeliveryStatus.SUCCESS.value if result.success else DeliveryStatus.FAILED.value
        outcome = {
            "status": status,
            "http_status_code": result.status_code,
            "response_body": result.response_body,
            "error_message": result.error,
            "duration_ms": result.duration_ms,
            "delivered_at": now if result.success else None,
        }

        if result.success:
            counters = {
                "total_deliveries": Webhook.total_deliveries + 1,
                "successful_deliveries": Webhook.successful_deliveries + 1,
                "last_triggered_at": now,
            }
        else:
            counters = {
                "total_deliveries": Webhook.total_deliveries + 1,
                "failed_deliveries": Webhook.failed_deliveries + 1,
            }

        async with self.session_factory() as db:
            async with unit_of_work(db):
                if delivery_id is None:
                    delivery = WebhookDelivery(
                        webhook_id=webhook.id,
                        tenant_id=webhook.tenant_id,
                        event_id=payload.get("event_id") or str(uuid.uuid4()),
                        event_type=payload.get("event"),
                        payload=payload,
                        attempt_number=result.attempt_number,
                        **outcome
                    )
                    db.add(delivery)
                    await db.flush()
                    delivery_id = delivery.id
                else:
                    await db.execute(
                        update(WebhookDelivery)
                        .where(WebhookDelivery.id == delivery_id)
                        .values(**outcome)
                        .execution_options(synchronize_session=False)
                    )
                await db.execute(
                    update(Webhook)
                    .where(Webhook.id == webhook.id)
                    .values(**counters)
                    .execution_options(synchronize_session=False)
                )
            return delivery_id

    # ------------------------------------------------------------------
    # Explicit operations
    # ------------------------------------------------------------------

    async def retry_delivery(self, delivery_id: str, tenant_id: str | None = None) -> DeliveryResult:
        """
        Re-send a failed delivery's original payload.

        The new attempt is appended as its own row with the same event_id and
        the next attempt number. Pass tenant_id to restrict the lookup to one
        tenant; None is reserved for super-admins.
        """
        async with self.session_factory() as db:
            stmt = select(WebhookDelivery).where(WebhookDelivery.id == delivery_id)
            if tenant_id is not None:
                stmt = stmt.where(WebhookDelivery.tenant_id == tenant_id)
            delivery = (await db.execute(stmt)).scalar_one_or_none()

            if not delivery:
                raise NotFoundError("Webhook delivery not found")

            webhook = (await db.execute(
                select(Webhook).where(Webhook.id == delivery.webhook_id)
            )).scalar_one_or_none()

            if not webhook:
                raise NotFoundError("Webhook not found")

            attempts = (await db.execute(
                select(WebhookDelivery.attempt_number, WebhookDelivery.status).where(
                    WebhookDelivery.webhook_id == webhook.id,
                    WebhookDelivery.event_id == delivery.event_id
                )
            )).all()

        if any(status == DeliveryStatus.SUCCESS.value for _, status in attempts):
            raise ValidationError("Event already delivered to this webhook")
        if any(status == DeliveryStatus.PENDING.value for _, status in attempts):
            raise ConflictError("Another retry of this delivery is already in progress")

        next_attempt = max([attempt for attempt, _ in attempts] + [delivery.attempt_number]) + 1
        max_attempts = 1 + (webhook.retry_attempts or 0)
        if next_attempt > max_attempts:
            raise ValidationError(f"Retry budget exhausted ({max_attempts} attempts)")

        # Claim the attempt number before sending; a concurrent retry of the
        # same event hits the unique (webhook, event, attempt) constraint
        reservation = WebhookDelivery(
            webhook_id=webhook.id,
            tenant_id=webhook.tenant_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            payload=delivery.payload,
            status=DeliveryStatus.PENDING.value,
            attempt_number=next_attempt,
        )
        async with self.session_factory() as db:
            db.add(reservation)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("Another retry of this delivery is already in progress")

        get_logger(tenant_id=webhook.tenant_id, webhook_id=webhook.id).info(
            "webhook_retry", delivery_id=delivery_id, attempt=next_attempt
        )
        return await self.deliver(
            webhook, delivery.payload, attempt_number=next_attempt, delivery_id=reservation.id
        )

    async def send_test(self, webhook_id: str, tenant_id: str | None = None) -> DeliveryResult:
        """Deliver a webhook.test event to one webhook, regardless of subscriptions."""
        async with self.session_factory() as db:
            stmt = select(Webhook).where(Webhook.id == webhook_id)
            if tenant_id is not None:
                stmt = stmt.where(Webhook.tenant_id == tenant_id)
            webhook = (await db.execute(stmt)).scalar_one_or_none()

        if not webhook:
            raise NotFoundError("Webhook not found")

        payload = build_event_payload(webhook.tenant_id, EventType.WEBHOOK_TEST.value, {
            "message": "This is a test webhook delivery",
            "webhook_id": webhook.id,
        })
        return await self.deliver(webhook, payload, attempt_number=1)
