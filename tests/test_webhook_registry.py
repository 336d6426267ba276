"""
Webhook registry: feature flag, quota, partial updates and tenant scoping.
"""
import asyncio

import pytest
from sqlalchemy import select, update

from orderflow.config import settings
from orderflow.errors import NotFoundError, ValidationError
from orderflow.models import TenantFeatureFlags, Webhook, WebhookDelivery
from orderflow.models.base import utcnow
from orderflow.services.tenant_service import TenantService
from orderflow.services.webhook_registry import WebhookCreate, WebhookRegistry, WebhookUpdate


def webhook_fields(name="Orders", url="https://hooks.example.com/orders", events=("order.placed",), **fields):
    return WebhookCreate(name=name, url=url, events=list(events), **fields)


@pytest.fixture
def registry(db):
    return WebhookRegistry(db)


async def test_register_generates_secret(registry, seed):
    webhook = await registry.register(seed.tenant_id, webhook_fields(headers={"X-Store": "acme"}, description="ERP sync"))

    assert len(webhook.secret) == 64
    int(webhook.secret, 16)
    assert webhook.is_active is True
    assert webhook.events == ["order.placed"]
    assert webhook.headers == {"X-Store": "acme"}
    assert webhook.retry_attempts == 3
    assert webhook.timeout_seconds == 30

    other = await registry.register(seed.tenant_id, webhook_fields(name="Second"))
    assert other.secret != webhook.secret


async def test_register_requires_feature_flag(registry, seed):
    with pytest.raises(ValidationError, match="not enabled"):
        await registry.register(seed.other_tenant_id, webhook_fields())


@pytest.mark.parametrize("bad", [
    {"name": "  "},
    {"url": ""},
    {"url": "ftp://hooks.example.com"},
    {"url": "not a url"},
    {"events": []},
    {"events": ["order.placed", "order.teleported"]},
    {"events": ["webhook.test"]},
])
async def test_register_validates_fields(registry, seed, bad):
    with pytest.raises(ValidationError):
        await registry.register(seed.tenant_id, webhook_fields(**bad))


async def test_quota_counts_active_webhooks_only(registry, seed):
    # Seeded max count for the tenant is 3
    hook_ids = [
        (await registry.register(seed.tenant_id, webhook_fields(name=f"hook-{i}"))).id for i in range(3)
    ]

    with pytest.raises(ValidationError, match="Maximum"):
        await registry.register(seed.tenant_id, webhook_fields(name="one too many"))

    await registry.deactivate(hook_ids[0], seed.tenant_id)
    await registry.register(seed.tenant_id, webhook_fields(name="replacement"))

    with pytest.raises(ValidationError, match="Maximum"):
        await registry.update(hook_ids[0], seed.tenant_id, WebhookUpdate(is_active=True))
    assert await registry.count_active(seed.tenant_id) == 3


async def test_concurrent_registrations_respect_quota(seed, session_factory):
    # Two slots left under the seeded max of 3
    async with session_factory() as session:
        await WebhookRegistry(session).register(seed.tenant_id, webhook_fields(name="existing"))

    async def register(name):
        async with session_factory() as session:
            return await WebhookRegistry(session).register(seed.tenant_id, webhook_fields(name=name))

    outcomes = await asyncio.gather(
        *(register(f"racer-{i}") for i in range(4)), return_exceptions=True
    )

    created = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, Exception)]
    assert len(created) == 2
    assert len(rejected) == 2
    assert all(isinstance(o, ValidationError) for o in rejected)
    async with session_factory() as session:
        assert await WebhookRegistry(session).count_active(seed.tenant_id) == 3


async def test_explicit_zero_quota_allows_no_webhooks(registry, seed, session_factory):
    async with session_factory() as session:
        await session.execute(
            update(TenantFeatureFlags)
            .where(TenantFeatureFlags.tenant_id == seed.tenant_id)
            .values(webhooks_max_count=0)
        )
        await session.commit()

    flags = await TenantService(registry.db).get_feature_flags(seed.tenant_id)
    assert flags.webhooks_max_count == 0
    with pytest.raises(ValidationError, match=r"Maximum .*\(0\)"):
        await registry.register(seed.tenant_id, webhook_fields())


async def test_null_quota_falls_back_to_default(registry, seed, session_factory):
    async with session_factory() as session:
        await session.execute(
            update(TenantFeatureFlags)
            .where(TenantFeatureFlags.tenant_id == seed.tenant_id)
            .values(webhooks_max_count=None)
        )
        await session.commit()

    flags = await TenantService(registry.db).get_feature_flags(seed.tenant_id)
    assert flags.webhooks_max_count == settings.WEBHOOK_DEFAULT_MAX_COUNT


async def test_partial_update_changes_only_supplied_fields(registry, seed):
    webhook = await registry.register(seed.tenant_id, webhook_fields(description="keep me"))
    secret = webhook.secret

    updated = await registry.update(webhook.id, seed.tenant_id, WebhookUpdate(name="Renamed", timeout_seconds=10))

    assert updated.name == "Renamed"
    assert updated.timeout_seconds == 10
    assert updated.url == "https://hooks.example.com/orders"
    assert updated.description == "keep me"
    assert updated.secret == secret

    cleared = await registry.update(webhook.id, seed.tenant_id, WebhookUpdate(description=None))
    assert cleared.description is None
    assert cleared.name == "Renamed"


async def test_update_rejects_empty_and_invalid_changes(registry, seed):
    webhook = await registry.register(seed.tenant_id, webhook_fields())

    with pytest.raises(ValidationError):
        await registry.update(webhook.id, seed.tenant_id, WebhookUpdate())
    with pytest.raises(ValidationError):
        await registry.update(webhook.id, seed.tenant_id, WebhookUpdate(events=["nope"]))
    with pytest.raises(ValidationError):
        await registry.update(webhook.id, seed.tenant_id, WebhookUpdate(headers=None))


async def test_cross_tenant_delete_is_rejected(registry, seed, session_factory):
    webhook = await registry.register(seed.tenant_id, webhook_fields())
    webhook_id = webhook.id

    with pytest.raises(NotFoundError):
        await registry.delete(webhook_id, seed.other_tenant_id)
    with pytest.raises(NotFoundError):
        await registry.deactivate(webhook_id, seed.other_tenant_id)
    with pytest.raises(NotFoundError):
        await registry.update(webhook_id, seed.other_tenant_id, WebhookUpdate(name="hijack"))

    async with session_factory() as session:
        stored = await session.get(Webhook, webhook_id)
    assert stored is not None
    assert stored.is_active is True
    assert stored.name == "Orders"


async def test_delete_removes_webhook_and_log(registry, seed, session_factory):
    webhook = await registry.register(seed.tenant_id, webhook_fields())
    async with session_factory() as session:
        session.add(WebhookDelivery(
            webhook_id=webhook.id, tenant_id=seed.tenant_id, event_id="e-1",
            event_type="order.placed", payload={}, status="failed", attempt_number=1,
        ))
        await session.commit()

    await registry.delete(webhook.id, None)

    async with session_factory() as session:
        assert await session.get(Webhook, webhook.id) is None
        remaining = (await session.execute(select(WebhookDelivery))).scalars().all()
    assert remaining == []

    with pytest.raises(NotFoundError):
        await registry.delete(webhook.id, seed.tenant_id)


async def test_list_is_tenant_scoped_and_gated(registry, seed):
    await registry.register(seed.tenant_id, webhook_fields())

    assert len(await registry.list_webhooks(seed.tenant_id)) == 1
    with pytest.raises(ValidationError):
        await registry.list_webhooks(seed.other_tenant_id)


async def test_deliveries_filter_and_paginate(registry, seed, session_factory):
    webhook = await registry.register(seed.tenant_id, webhook_fields(events=["order.placed", "order.status_changed"]))
    async with session_factory() as session:
        for i in range(5):
            session.add(WebhookDelivery(
                webhook_id=webhook.id,
                tenant_id=seed.tenant_id,
                event_id=f"e-{i}",
                event_type="order.placed" if i % 2 == 0 else "order.status_changed",
                payload={"i": i},
                status="success" if i < 3 else "failed",
                attempt_number=1,
                delivered_at=utcnow() if i < 3 else None,
            ))
        await session.commit()

    page, total = await registry.get_deliveries(webhook.id, seed.tenant_id, page=1, limit=2)
    assert total == 5
    assert len(page) == 2

    last, _ = await registry.get_deliveries(webhook.id, seed.tenant_id, page=3, limit=2)
    assert len(last) == 1

    failed, total = await registry.get_deliveries(webhook.id, seed.tenant_id, status="failed")
    assert total == 2
    assert {d.status for d in failed} == {"failed"}

    placed, total = await registry.get_deliveries(webhook.id, seed.tenant_id, event_type="order.placed")
    assert total == 3

    with pytest.raises(ValidationError):
        await registry.get_deliveries(webhook.id, seed.tenant_id, status="exploded")
    with pytest.raises(NotFoundError):
        await registry.get_deliveries(webhook.id, seed.other_tenant_id)
