"""
SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

Per-tenant webhook configuration: feature-gated, quota-limited.
"""
import httpx
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import settings
from orderflow.database import unit_of_work
from orderflow.errors import NotFoundError, ValidationError
from orderflow.events import SUBSCRIBABLE_EVENT_TYPES
from orderflow.logging_config import get_logger
from orderflow.models.webhook import DeliveryStatus, Webhook, WebhookDelivery
from orderflow.services.tenant_service import TenantService
from orderflow.services.webhook_signing import generate_webhook_secret


class WebhookCreate(BaseModel):
    """Fields accepted when registering a webhook."""
    name: str
    url: str
    events: list[str]
    description: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    retry_attempts: int = Field(default_factory=lambda: settings.WEBHOOK_DEFAULT_RETRY_ATTEMPTS, ge=0, le=10)
    timeout_seconds: int = Field(default_factory=lambda: settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS, ge=1, le=120)


class WebhookUpdate(BaseModel):
    """
    Partial update. Only fields the caller actually supplied are applied;
    use `model_dump(exclude_unset=True)` to tell absent from null.
    """
    name: str | None = None
    url: str | None = None
    events: list[str] | None = None
    description: str | None = None
    headers: dict[str, str] | None = None
    retry_attempts: int | None = Field(default=None, ge=0, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    is_active: bool | None = None


def validate_url(url: str | None) -> str:
    if not url or not url.strip():
        raise ValidationError("url is required")
    url = url.strip()
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        raise ValidationError(f"Invalid webhook URL: {url}")
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError("Webhook URL must be an absolute http(s) URL")
    return url


def validate_events(events: list[str] | None) -> list[str]:
    if not events:
        raise ValidationError("At least one event is required")
    unknown = sorted(set(events) - SUBSCRIBABLE_EVENT_TYPES)
    if unknown:
        raise ValidationError(f"Unknown event types: {', '.join(unknown)}")
    # Keep the caller's order, drop duplicates
    return list(dict.fromkeys(events))


class WebhookRegistry:
    """Service for managing a tenant's webhooks and reading their delivery log."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.tenants = TenantService(db)

    async def _require_enabled(self, tenant_id: str, for_update: bool = False):
        flags = await self.tenants.get_feature_flags(tenant_id, for_update=for_update)
        if not flags.webhooks_enabled:
            raise ValidationError("Webhooks are not enabled for this tenant")
        return flags

    async def count_active(self, tenant_id: str) -> int:
        stmt = select(func.count()).select_from(Webhook).where(
            Webhook.tenant_id == tenant_id,  # SECURITY: Enforce tenant isolation
            Webhook.is_active.is_(True)
        )
        return (await self.db.execute(stmt)).scalar_one()

    async def _require_capacity(self, tenant_id: str, max_count: int) -> None:
        active = await self.count_active(tenant_id)
        if active >= max_count:
            raise ValidationError(f"Maximum number of active webhooks reached ({max_count})")

    async def register(self, tenant_id: str, data: WebhookCreate) -> Webhook:
        """
        Register a webhook for a tenant.

        Args:
            tenant_id: Owning tenant UUID
            data: Webhook fields

        Returns:
            The new Webhook, including its secret (never returned again)

        Raises:
            ValidationError: Missing fields, unknown events, feature disabled or quota reached
        """
        if not data.name or not data.name.strip():
            raise ValidationError("name is required")
        url = validate_url(data.url)
        events = validate_events(data.events)

        webhook = Webhook(
            tenant_id=tenant_id,
            name=data.name.strip(),
            url=url,
            description=data.description,
            secret=generate_webhook_secret(),
            events=events,
            headers=data.headers,
            retry_attempts=data.retry_attempts,
            timeout_seconds=data.timeout_seconds,
            is_active=True,
        )
        async with unit_of_work(self.db):
            # The locked flags row serialises concurrent registrations per tenant
            flags = await self._require_enabled(tenant_id, for_update=True)
            await self._require_capacity(tenant_id, flags.webhooks_max_count)
            self.db.add(webhook)

        get_logger(tenant_id=tenant_id, webhook_id=webhook.id).info(
            "webhook_registered", url=url, events=events
        )
        return webhook

    async def get(self, webhook_id: str, tenant_id: str | None) -> Webhook:
        """Webhook by id; tenant_id None is unrestricted (super-admin)."""
        stmt = (
            select(Webhook)
            .where(Webhook.id == webhook_id)
            .execution_options(populate_existing=True)
        )
        if tenant_id is not None:
            stmt = stmt.where(Webhook.tenant_id == tenant_id)  # SECURITY: Enforce tenant isolation
        webhook = (await self.db.execute(stmt)).scalar_one_or_none()
        if not webhook:
            raise NotFoundError("Webhook not found")
        return webhook

    async def list_webhooks(self, tenant_id: str) -> list[Webhook]:
        await self._require_enabled(tenant_id)
        stmt = (
            select(Webhook)
            .where(Webhook.tenant_id == tenant_id)  # SECURITY: Enforce tenant isolation
            .order_by(Webhook.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def update(self, webhook_id: str, tenant_id: str | None, changes: WebhookUpdate) -> Webhook:
        """
        Apply a partial update. The secret is never regenerated.

        Re-activating an inactive webhook counts against the active quota.
        """
        fields = changes.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update")

        webhook = await self.get(webhook_id, tenant_id)

        if "name" in fields:
            if not fields["name"] or not fields["name"].strip():
                raise ValidationError("name cannot be empty")
            fields["name"] = fields["name"].strip()
        if "url" in fields:
            fields["url"] = validate_url(fields["url"])
        if "events" in fields:
            fields["events"] = validate_events(fields["events"])
        for key in ("headers", "retry_attempts", "timeout_seconds", "is_active"):
            if key in fields and fields[key] is None:
                raise ValidationError(f"{key} cannot be null")

        reactivating = bool(fields.get("is_active")) and not webhook.is_active

        async with unit_of_work(self.db):
            if reactivating:
                flags = await self._require_enabled(webhook.tenant_id, for_update=True)
                await self._require_capacity(webhook.tenant_id, flags.webhooks_max_count)
            for key, value in fields.items():
                setattr(webhook, key, value)

        get_logger(tenant_id=webhook.tenant_id, webhook_id=webhook.id).info(
            "webhook_updated", fields=sorted(fields)
        )
        return webhook

    async def deactivate(self, webhook_id: str, tenant_id: str | None) -> None:
        """Stop deliveries to a webhook, keeping its delivery history."""
        stmt = update(Webhook).where(Webhook.id == webhook_id)
        if tenant_id is not None:
            stmt = stmt.where(Webhook.tenant_id == tenant_id)  # SECURITY: Enforce tenant isolation

        async with unit_of_work(self.db):
            result = await self.db.execute(
                stmt.values(is_active=False).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("Webhook not found")

        get_logger(tenant_id=tenant_id, webhook_id=webhook_id).info("webhook_deactivated")

    async def delete(self, webhook_id: str, tenant_id: str | None) -> None:
        """Delete a webhook and its delivery log. Rows of other tenants are never matched."""
        stmt = delete(Webhook).where(Webhook.id == webhook_id)
        if tenant_id is not None:
            stmt = stmt.where(Webhook.tenant_id == tenant_id)  # SECURITY: Enforce tenant isolation

        async with unit_of_work(self.db):
            result = await self.db.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                raise NotFoundError("Webhook not found")
            await self.db.execute(
                delete(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .execution_options(synchronize_session=False)
            )

        get_logger(tenant_id=tenant_id, webhook_id=webhook_id).info("webhook_deleted")

    async def get_deliveries(
        self,
        webhook_id: str,
        tenant_id: str | None,
        status: str | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 50
    ) -> tuple[list[WebhookDelivery], int]:
        """
        Delivery log of one webhook, newest first.

        Args:
            webhook_id: Webhook UUID
            tenant_id: Caller's tenant (None for super-admins)
            status: Only deliveries with this outcome
            event_type: Only deliveries of this event type
            page: 1-based page number
            limit: Page size

        Returns:
            (deliveries on the page, total matching deliveries)
        """
        if status is not None and status not in {s.value for s in DeliveryStatus}:
            raise ValidationError(f"Unknown delivery status: {status}")
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        webhook = await self.get(webhook_id, tenant_id)

        conditions = [
            WebhookDelivery.webhook_id == webhook.id,
            WebhookDelivery.tenant_id == webhook.tenant_id,  # SECURITY: Enforce tenant isolation
        ]
        if status:
            conditions.append(WebhookDelivery.status == status)
        if event_type:
            conditions.append(WebhookDelivery.event_type == event_type)

        total = (await self.db.execute(
            select(func.count()).select_from(WebhookDelivery).where(*conditions)
        )).scalar_one()

        stmt = (
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.attempt_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        deliveries = list((await self.db.execute(stmt)).scalars().all())
        return deliveries, total
