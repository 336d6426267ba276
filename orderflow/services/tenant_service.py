"""
Tenant feature flags.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import settings
from orderflow.models.tenant import TenantFeatureFlags


@dataclass(frozen=True)
class FeatureFlags:
    webhooks_enabled: bool
    webhooks_max_count: int


class TenantService:
    """Service for reading a tenant's feature switches."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_feature_flags(self, tenant_id: str, for_update: bool = False) -> FeatureFlags:
        """
        Get the webhook feature flags for a tenant.

        A tenant without a flags row has webhooks disabled. A null max count
        falls back to the configured default; an explicit 0 allows none.

        Args:
            tenant_id: Tenant UUID
            for_update: Lock the flags row until the current transaction ends,
                serialising quota checks for the tenant. The lock is taken by
                updating the row so it also holds on SQLite, which has no
                SELECT ... FOR UPDATE.

        Returns:
            FeatureFlags
        """
        if for_update:
            await self.db.execute(
                update(TenantFeatureFlags)
                .where(TenantFeatureFlags.tenant_id == tenant_id)
                .values(webhooks_enabled=TenantFeatureFlags.webhooks_enabled)
                .execution_options(synchronize_session=False)
            )
        stmt = select(TenantFeatureFlags).where(TenantFeatureFlags.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        flags = result.scalar_one_or_none()

        if not flags:
            return FeatureFlags(
                webhooks_enabled=False,
                webhooks_max_count=settings.WEBHOOK_DEFAULT_MAX_COUNT
            )

        max_count = flags.webhooks_max_count
        if max_count is None:
            max_count = settings.WEBHOOK_DEFAULT_MAX_COUNT

        return FeatureFlags(
            webhooks_enabled=bool(flags.webhooks_enabled),
            webhooks_max_count=max_count
        )
