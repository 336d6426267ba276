"""
Delivery engine: fan-out, signing on the wire, outcome recording and retry.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from orderflow.errors import ConflictError, NotFoundError, ValidationError
from orderflow.models import DeliveryStatus, Webhook, WebhookDelivery
from orderflow.services.webhook_service import WebhookDispatcher, build_event_payload
from orderflow.services.webhook_signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    canonical_json,
    generate_webhook_secret,
    verify_signature,
)


class Endpoint:
    """Programmable receiver behind httpx.MockTransport."""

    def __init__(self, status_code=200, body="ok", error=None):
        self.status_code = status_code
        self.body = body
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error(f"{self.error.__name__} while calling {request.url}", request=request)
        return httpx.Response(self.status_code, text=self.body)


async def add_webhook(session_factory, tenant_id, url="https://hooks.example.com/orders", events=("order.placed",), **fields):
    async with session_factory() as session:
        webhook = Webhook(
            tenant_id=tenant_id,
            name=fields.pop("name", "Orders hook"),
            url=url,
            secret=generate_webhook_secret(),
            events=list(events),
            headers=fields.pop("headers", {}),
            retry_attempts=fields.pop("retry_attempts", 3),
            timeout_seconds=fields.pop("timeout_seconds", 5),
            is_active=fields.pop("is_active", True),
            **fields
        )
        session.add(webhook)
        await session.commit()
        return webhook


async def reload(session_factory, model, row_id):
    async with session_factory() as session:
        return await session.get(model, row_id)


async def deliveries(session_factory, webhook_id):
    async with session_factory() as session:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.webhook_id == webhook_id)
            .order_by(WebhookDelivery.attempt_number)
        )
        return (await session.execute(stmt)).scalars().all()


def make_dispatcher(session_factory, endpoint):
    return WebhookDispatcher(session_factory=session_factory, transport=httpx.MockTransport(endpoint))


async def test_dispatch_without_matching_webhooks_makes_no_request(seed, session_factory):
    endpoint = Endpoint()
    await add_webhook(session_factory, seed.tenant_id, events=("order.status_changed",))
    await add_webhook(session_factory, seed.tenant_id, is_active=False)
    await add_webhook(session_factory, seed.other_tenant_id)

    result = await make_dispatcher(session_factory, endpoint).dispatch(
        seed.tenant_id, "order.placed", {"order_id": "o-1"}
    )

    assert result.webhooks_triggered == 0
    assert endpoint.requests == []


async def test_dispatch_rejects_unknown_or_missing_event(seed, session_factory):
    dispatcher = make_dispatcher(session_factory, Endpoint())

    with pytest.raises(ValidationError):
        await dispatcher.dispatch(seed.tenant_id, "order.teleported", {})
    with pytest.raises(ValidationError):
        await dispatcher.dispatch(seed.tenant_id, "", {})


async def test_successful_delivery_is_signed_and_counted(seed, session_factory):
    endpoint = Endpoint(status_code=202, body="accepted")
    webhook = await add_webhook(session_factory, seed.tenant_id, headers={"X-Store": "acme"})

    result = await make_dispatcher(session_factory, endpoint).dispatch(
        seed.tenant_id, "order.placed", {"order_id": "o-1", "total": "12.50"}
    )

    assert result.webhooks_triggered == 1
    assert result.results[0].success is True

    request = endpoint.requests[0]
    assert request.method == "POST"
    assert request.headers["content-type"] == "application/json"
    assert request.headers["x-store"] == "acme"
    assert request.headers["user-agent"].startswith("OrderFlow-Webhooks")
    assert verify_signature(
        webhook.secret,
        request.headers[TIMESTAMP_HEADER],
        request.content,
        request.headers[SIGNATURE_HEADER],
    )
    payload = json.loads(request.content)
    assert request.content.decode() == canonical_json(payload)
    assert payload["event"] == "order.placed"
    assert payload["tenant_id"] == seed.tenant_id
    assert payload["data"] == {"order_id": "o-1", "total": "12.50"}

    [delivery] = await deliveries(session_factory, webhook.id)
    assert delivery.status == DeliveryStatus.SUCCESS.value
    assert delivery.http_status_code == 202
    assert delivery.response_body == "accepted"
    assert delivery.delivered_at is not None
    assert delivery.attempt_number == 1
    assert delivery.event_id == payload["event_id"]

    stored = await reload(session_factory, Webhook, webhook.id)
    assert (stored.total_deliveries, stored.successful_deliveries, stored.failed_deliveries) == (1, 1, 0)
    assert stored.last_triggered_at is not None


async def test_timeout_records_failed_delivery(seed, session_factory):
    endpoint = Endpoint(error=httpx.ReadTimeout)
    webhook = await add_webhook(session_factory, seed.tenant_id)

    result = await make_dispatcher(session_factory, endpoint).dispatch(seed.tenant_id, "order.placed", {})

    assert result.webhooks_triggered == 1
    assert result.results[0].success is False

    [delivery] = await deliveries(session_factory, webhook.id)
    assert delivery.status == DeliveryStatus.FAILED.value
    assert delivery.delivered_at is None
    assert delivery.http_status_code is None
    assert "Timed out" in delivery.error_message

    stored = await reload(session_factory, Webhook, webhook.id)
    assert stored.failed_deliveries == 1
    assert stored.successful_deliveries == 0
    assert stored.total_deliveries == 1
    assert stored.last_triggered_at is None


async def test_non_2xx_and_network_errors_are_failures(seed, session_factory):
    rejecting = await add_webhook(session_factory, seed.tenant_id, url="https://a.example.com/hook")
    await make_dispatcher(session_factory, Endpoint(status_code=500, body="x" * 5000)).dispatch(
        seed.tenant_id, "order.placed", {}
    )
    [delivery] = await deliveries(session_factory, rejecting.id)
    assert delivery.status == "failed"
    assert delivery.http_status_code == 500
    assert delivery.error_message == "HTTP 500"
    assert len(delivery.response_body) == 1000

    async with session_factory() as session:
        await session.delete(await session.get(Webhook, rejecting.id))
        await session.commit()

    unreachable = await add_webhook(session_factory, seed.tenant_id, url="https://b.example.com/hook")
    await make_dispatcher(session_factory, Endpoint(error=httpx.ConnectError)).dispatch(
        seed.tenant_id, "order.placed", {}
    )
    [delivery] = await deliveries(session_factory, unreachable.id)
    assert delivery.status == "failed"
    assert "ConnectError" in delivery.error_message


async def test_partial_failure_does_not_affect_other_webhooks(seed, session_factory):
    good = await add_webhook(session_factory, seed.tenant_id, url="https://good.example.com/hook")
    bad = await add_webhook(session_factory, seed.tenant_id, url="https://bad.example.com/hook")

    def endpoint(request):
        if request.url.host == "bad.example.com":
            return httpx.Response(503, text="down")
        return httpx.Response(200, text="ok")

    dispatcher = WebhookDispatcher(session_factory=session_factory, transport=httpx.MockTransport(endpoint))
    result = await dispatcher.dispatch(seed.tenant_id, "order.placed", {"order_id": "o-9"})

    assert result.webhooks_triggered == 2
    outcomes = {r.webhook_id: r.success for r in result.results}
    assert outcomes == {good.id: True, bad.id: False}

    good_row = await reload(session_factory, Webhook, good.id)
    bad_row = await reload(session_factory, Webhook, bad.id)
    assert (good_row.successful_deliveries, good_row.failed_deliveries) == (1, 0)
    assert (bad_row.successful_deliveries, bad_row.failed_deliveries) == (0, 1)


async def test_non_json_values_are_stored_as_sent(seed, session_factory):
    endpoint = Endpoint()
    webhook = await add_webhook(session_factory, seed.tenant_id, events=("payment.received",))
    paid_at = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)

    result = await make_dispatcher(session_factory, endpoint).dispatch(
        seed.tenant_id, "payment.received", {"amount": Decimal("10.50"), "paid_at": paid_at}
    )

    assert result.results[0].success is True
    assert result.results[0].delivery_id is not None
    sent = json.loads(endpoint.requests[0].content)
    assert sent["data"] == {"amount": "10.50", "paid_at": str(paid_at)}

    [delivery] = await deliveries(session_factory, webhook.id)
    assert delivery.id == result.results[0].delivery_id
    assert delivery.payload == sent

    stored = await reload(session_factory, Webhook, webhook.id)
    assert (stored.total_deliveries, stored.successful_deliveries) == (1, 1)


async def test_concurrent_deliveries_keep_counters_consistent(seed, session_factory):
    calls = []

    def endpoint(request):
        calls.append(request)
        return httpx.Response(200 if len(calls) % 2 else 500, text="")

    webhook = await add_webhook(session_factory, seed.tenant_id)
    dispatcher = WebhookDispatcher(session_factory=session_factory, transport=httpx.MockTransport(endpoint))

    results = await asyncio.gather(*(
        dispatcher.deliver(webhook, build_event_payload(seed.tenant_id, "order.placed", {"i": i}))
        for i in range(6)
    ))

    assert sorted(r.success for r in results) == [False] * 3 + [True] * 3
    stored = await reload(session_factory, Webhook, webhook.id)
    assert stored.total_deliveries == 6
    assert stored.successful_deliveries + stored.failed_deliveries == 6
    assert stored.successful_deliveries == 3
    assert len(await deliveries(session_factory, webhook.id)) == 6


async def test_scheduled_dispatch_runs_in_background(seed, session_factory):
    endpoint = Endpoint()
    webhook = await add_webhook(session_factory, seed.tenant_id)
    dispatcher = make_dispatcher(session_factory, endpoint)

    dispatcher.schedule(seed.tenant_id, "order.placed", {"order_id": "o-2"})
    assert dispatcher.pending == 1
    await dispatcher.drain()

    assert dispatcher.pending == 0
    assert len(endpoint.requests) == 1
    assert len(await deliveries(session_factory, webhook.id)) == 1


async def test_scheduled_dispatch_swallows_invalid_events(seed, session_factory):
    dispatcher = make_dispatcher(session_factory, Endpoint())

    dispatcher.schedule(seed.tenant_id, "not.an.event", {})
    await dispatcher.drain()

    assert dispatcher.pending == 0


async def test_retry_appends_next_attempt_for_same_event(seed, session_factory):
    endpoint = Endpoint(status_code=500)
    webhook = await add_webhook(session_factory, seed.tenant_id)
    dispatcher = make_dispatcher(session_factory, endpoint)
    await dispatcher.dispatch(seed.tenant_id, "order.placed", {"order_id": "o-3"})
    [first] = await deliveries(session_factory, webhook.id)

    endpoint.status_code = 200
    result = await dispatcher.retry_delivery(first.id, seed.tenant_id)

    assert result.success is True
    assert result.attempt_number == 2
    rows = await deliveries(session_factory, webhook.id)
    assert [(r.attempt_number, r.status) for r in rows] == [(1, "failed"), (2, "success")]
    assert rows[1].id == result.delivery_id
    assert rows[0].event_id == rows[1].event_id
    assert rows[0].payload == rows[1].payload
    assert rows[0].delivered_at is None

    with pytest.raises(ValidationError):
        await dispatcher.retry_delivery(first.id, seed.tenant_id)

    stored = await reload(session_factory, Webhook, webhook.id)
    assert (stored.total_deliveries, stored.successful_deliveries, stored.failed_deliveries) == (2, 1, 1)


async def test_retry_budget_is_enforced(seed, session_factory):
    webhook = await add_webhook(session_factory, seed.tenant_id, retry_attempts=1)
    dispatcher = make_dispatcher(session_factory, Endpoint(status_code=500))
    await dispatcher.dispatch(seed.tenant_id, "order.placed", {})
    [first] = await deliveries(session_factory, webhook.id)

    second = await dispatcher.retry_delivery(first.id, seed.tenant_id)
    assert second.attempt_number == 2
    assert second.success is False

    with pytest.raises(ValidationError):
        await dispatcher.retry_delivery(second.delivery_id, seed.tenant_id)


async def test_retry_in_progress_is_rejected(seed, session_factory):
    endpoint = Endpoint(status_code=500)
    webhook = await add_webhook(session_factory, seed.tenant_id)
    dispatcher = make_dispatcher(session_factory, endpoint)
    await dispatcher.dispatch(seed.tenant_id, "order.placed", {})
    [first] = await deliveries(session_factory, webhook.id)

    async with session_factory() as session:
        session.add(WebhookDelivery(
            webhook_id=webhook.id, tenant_id=seed.tenant_id, event_id=first.event_id,
            event_type=first.event_type, payload=first.payload,
            status=DeliveryStatus.PENDING.value, attempt_number=2,
        ))
        await session.commit()

    with pytest.raises(ConflictError):
        await dispatcher.retry_delivery(first.id, seed.tenant_id)
    assert len(endpoint.requests) == 1


async def test_attempt_numbers_are_unique_per_event(seed, session_factory):
    webhook = await add_webhook(session_factory, seed.tenant_id)

    async with session_factory() as session:
        for _ in range(2):
            session.add(WebhookDelivery(
                webhook_id=webhook.id, tenant_id=seed.tenant_id, event_id="e-1",
                event_type="order.placed", payload={}, status="failed", attempt_number=2,
            ))
        with pytest.raises(IntegrityError):
            await session.commit()


async def test_concurrent_retries_send_each_attempt_once(seed, session_factory):
    endpoint = Endpoint(status_code=500)
    webhook = await add_webhook(session_factory, seed.tenant_id, retry_attempts=5)
    dispatcher = make_dispatcher(session_factory, endpoint)
    await dispatcher.dispatch(seed.tenant_id, "order.placed", {})
    [first] = await deliveries(session_factory, webhook.id)

    outcomes = await asyncio.gather(
        *(dispatcher.retry_delivery(first.id, seed.tenant_id) for _ in range(3)),
        return_exceptions=True,
    )

    sent = [o for o in outcomes if not isinstance(o, Exception)]
    assert all(isinstance(o, ConflictError) for o in outcomes if isinstance(o, Exception))
    rows = await deliveries(session_factory, webhook.id)
    attempts = [r.attempt_number for r in rows]
    assert len(attempts) == len(set(attempts)) == 1 + len(sent)
    assert DeliveryStatus.PENDING.value not in {r.status for r in rows}
    assert len(endpoint.requests) == 1 + len(sent)


async def test_retry_is_tenant_scoped(seed, session_factory):
    webhook = await add_webhook(session_factory, seed.tenant_id)
    dispatcher = make_dispatcher(session_factory, Endpoint(status_code=500))
    await dispatcher.dispatch(seed.tenant_id, "order.placed", {})
    [first] = await deliveries(session_factory, webhook.id)

    with pytest.raises(NotFoundError):
        await dispatcher.retry_delivery(first.id, seed.other_tenant_id)


async def test_send_test_ignores_subscriptions(seed, session_factory):
    endpoint = Endpoint()
    webhook = await add_webhook(session_factory, seed.tenant_id, events=("order.status_changed",))

    result = await make_dispatcher(session_factory, endpoint).send_test(webhook.id, seed.tenant_id)

    assert result.success is True
    assert json.loads(endpoint.requests[0].content)["event"] == "webhook.test"

    with pytest.raises(NotFoundError):
        await make_dispatcher(session_factory, endpoint).send_test(webhook.id, seed.other_tenant_id)
