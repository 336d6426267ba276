"""
Tenant-scope authorization helpers.

SECURITY: Every service entry point resolves the acting tenant through
these helpers before touching tenant-owned rows.
"""
import enum

from pydantic import BaseModel

from orderflow.errors import ForbiddenError, ValidationError


class Role(str, enum.Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    CUSTOMER = "customer"


class TokenPayload(BaseModel):
    """Authenticated actor, as carried in the JWT."""
    sub: str                  # admin id or customer id
    tenant_id: str | None = None
    role: Role
    email: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER


def resolve_tenant_id(actor: TokenPayload, requested_tenant_id: str | None = None) -> str:
    """
    Work out which tenant an admin request acts on.

    Super-admins may name any tenant; everyone else is pinned to their own,
    and naming another tenant is rejected.
    """
    if actor.is_super_admin:
        tenant_id = requested_tenant_id or actor.tenant_id
        if not tenant_id:
            raise ValidationError("tenant_id is required for super-admin requests")
        return tenant_id

    if not actor.tenant_id:
        raise ForbiddenError("Access denied")
    if requested_tenant_id and requested_tenant_id != actor.tenant_id:
        raise ForbiddenError("Access denied")
    return actor.tenant_id


def tenant_scope(actor: TokenPayload) -> str | None:
    """Tenant filter for lookups by row id: None (unrestricted) for super-admins."""
    if actor.is_super_admin:
        return None
    if not actor.tenant_id:
        raise ForbiddenError("Access denied")
    return actor.tenant_id


def ensure_admin(actor: TokenPayload) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin access required")


def ensure_tenant_admin(actor: TokenPayload, tenant_id: str) -> None:
    """Admin of the given tenant, or a super-admin."""
    ensure_admin(actor)
    if not actor.is_super_admin and actor.tenant_id != tenant_id:
        raise ForbiddenError("Access denied")


def can_read_order(actor: TokenPayload, tenant_id: str, customer_id: str) -> bool:
    """Tenant admins, super-admins and the customer who placed the order."""
    if actor.is_super_admin:
        return True
    if actor.is_customer:
        return actor.sub == customer_id and actor.tenant_id == tenant_id
    return actor.tenant_id == tenant_id
