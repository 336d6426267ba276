"""
Webhook API routes.

Provides endpoints for managing a tenant's webhooks and their delivery log.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database import get_db
from orderflow.dependencies.auth import require_admin
from orderflow.dependencies.dispatch import get_dispatcher
from orderflow.events import SUBSCRIBABLE_EVENT_TYPES
from orderflow.models.webhook import Webhook, WebhookDelivery
from orderflow.services.access import TokenPayload, resolve_tenant_id, tenant_scope
from orderflow.services.webhook_registry import WebhookCreate, WebhookRegistry, WebhookUpdate
from orderflow.services.webhook_service import DeliveryResult, WebhookDispatcher


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Response model for a webhook. The secret is only included on creation."""
    id: str
    tenant_id: str
    name: str
    url: str
    description: str | None = None
    events: list[str]
    headers: dict
    retry_attempts: int
    timeout_seconds: int
    is_active: bool
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    last_triggered_at: str | None = None
    created_at: str | None = None
    secret: str | None = None


class DeliveryResponse(BaseModel):
    id: str
    webhook_id: str
    event_id: str
    event_type: str
    payload: dict
    status: str
    http_status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    attempt_number: int
    duration_ms: int | None = None
    delivered_at: str | None = None
    created_at: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def webhook_to_response(webhook: Webhook, include_secret: bool = False) -> WebhookResponse:
    """Convert Webhook model to WebhookResponse."""
    return WebhookResponse(
        id=webhook.id,
        tenant_id=webhook.tenant_id,
        name=webhook.name,
        url=webhook.url,
        description=webhook.description,
        events=webhook.events or [],
        headers=webhook.headers or {},
        retry_attempts=webhook.retry_attempts,
        timeout_seconds=webhook.timeout_seconds,
        is_active=webhook.is_active,
        total_deliveries=webhook.total_deliveries or 0,
        successful_deliveries=webhook.successful_deliveries or 0,
        failed_deliveries=webhook.failed_deliveries or 0,
        last_triggered_at=_iso(webhook.last_triggered_at),
        created_at=_iso(webhook.created_at),
        secret=webhook.secret if include_secret else None,
    )


def delivery_to_response(delivery: WebhookDelivery) -> DeliveryResponse:
    return DeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event_id=delivery.event_id,
        event_type=delivery.event_type,
        payload=delivery.payload,
        status=delivery.status,
        http_status_code=delivery.http_status_code,
        response_body=delivery.response_body,
        error_message=delivery.error_message,
        attempt_number=delivery.attempt_number,
        duration_ms=delivery.duration_ms,
        delivered_at=_iso(delivery.delivered_at),
        created_at=_iso(delivery.created_at),
    )


def result_to_dict(result: DeliveryResult) -> dict:
    return {
        "success": result.success,
        "delivery_id": result.delivery_id,
        "webhook_id": result.webhook_id,
        "attempt_number": result.attempt_number,
        "status_code": result.status_code,
        "response_body": result.response_body,
        "error": result.error,
        "duration_ms": result.duration_ms,
    }


@router.get("/events")
async def list_event_types(actor: TokenPayload = Depends(require_admin)):
    """Event types a webhook can subscribe to."""
    return {"events": sorted(SUBSCRIBABLE_EVENT_TYPES)}


@router.post("/", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: WebhookCreate,
    tenant_id: str | None = Query(default=None),
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a webhook for the tenant.

    The response carries the signing secret; it is never shown again.
    """
    scope = resolve_tenant_id(actor, tenant_id)
    webhook = await WebhookRegistry(db).register(scope, request)
    return webhook_to_response(webhook, include_secret=True)


@router.get("/")
async def list_webhooks(
    tenant_id: str | None = Query(default=None),
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    scope = resolve_tenant_id(actor, tenant_id)
    webhooks = await WebhookRegistry(db).list_webhooks(scope)
    return {"webhooks": [webhook_to_response(w) for w in webhooks], "total": len(webhooks)}


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: str,
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return webhook_to_response(await WebhookRegistry(db).get(webhook_id, tenant_scope(actor)))


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdate,
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Partial update: only the fields present in the body change."""
    webhook = await WebhookRegistry(db).update(webhook_id, tenant_scope(actor), request)
    return webhook_to_response(webhook)


@router.post("/{webhook_id}/deactivate")
async def deactivate_webhook(
    webhook_id: str,
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    await WebhookRegistry(db).deactivate(webhook_id, tenant_scope(actor))
    return {"message": "Webhook deactivated", "id": webhook_id}


@router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: str,
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    await WebhookRegistry(db).delete(webhook_id, tenant_scope(actor))
    return {"message": "Webhook deleted", "id": webhook_id}


@router.post("/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    actor: TokenPayload = Depends(require_admin),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher)
):
    """Send a webhook.test event now and report the outcome."""
    result = await dispatcher.send_test(webhook_id, tenant_scope(actor))
    return result_to_dict(result)


@router.get("/{webhook_id}/deliveries")
async def get_deliveries(
    webhook_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    event_type: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    actor: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    deliveries, total = await WebhookRegistry(db).get_deliveries(
        webhook_id,
        tenant_scope(actor),
        status=status_filter,
        event_type=event_type,
        page=page,
        limit=limit,
    )
    return {
        "deliveries": [delivery_to_response(d) for d in deliveries],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.post("/deliveries/{delivery_id}/retry")
async def retry_delivery(
    delivery_id: str,
    actor: TokenPayload = Depends(require_admin),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher)
):
    """Re-send a failed delivery as the next attempt of the same event."""
    result = await dispatcher.retry_delivery(delivery_id, tenant_scope(actor))
    return result_to_dict(result)
