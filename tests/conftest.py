"""
Shared fixtures.

The database URL must be set before anything under orderflow is imported,
since the engine is created at import time.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="orderflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'orderflow.db')}"
os.environ["SENTRY_DSN"] = ""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from orderflow.database import AsyncSessionLocal, engine
from orderflow.models import (
    Admin,
    AdminRole,
    Base,
    Customer,
    Product,
    Tenant,
    TenantFeatureFlags,
)
from orderflow.services.access import Role, TokenPayload
from orderflow.services.order_service import OrderLine, OrderService


class RecordingDispatcher:
    """Stands in for WebhookDispatcher where only the emitted events matter."""

    def __init__(self):
        self.events = []

    def schedule(self, tenant_id, event_type, data):
        self.events.append((tenant_id, event_type, data))

    @property
    def types(self):
        return [event_type for _, event_type, _ in self.events]

    @property
    def pending(self):
        return 0

    async def drain(self):
        return None


@pytest.fixture
async def database():
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(database):
    return AsyncSessionLocal


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
async def seed(session_factory):
    """
    Two tenants. Acme has webhooks enabled, an admin, a customer and two
    products; Beta has an admin and a customer and no feature flags row.
    """
    async with session_factory() as session:
        acme = Tenant(name="Acme Stores", slug="acme")
        beta = Tenant(name="Beta Mart", slug="beta")
        session.add_all([acme, beta])
        await session.flush()

        session.add(TenantFeatureFlags(tenant_id=acme.id, webhooks_enabled=True, webhooks_max_count=3))

        acme_admin = Admin(email="ops@acme.test", full_name="Asha Admin", tenant_id=acme.id, role=AdminRole.ADMIN)
        beta_admin = Admin(email="ops@beta.test", full_name="Ben Admin", tenant_id=beta.id, role=AdminRole.ADMIN)
        root = Admin(email="root@orderflow.test", full_name="Root", tenant_id=None, role=AdminRole.SUPER_ADMIN)
        acme_customer = Customer(tenant_id=acme.id, name="Carla Customer", email="carla@example.com", phone="+15550001")
        acme_other_customer = Customer(tenant_id=acme.id, name="Dev Customer", phone="+15550002")
        beta_customer = Customer(tenant_id=beta.id, name="Bea Customer")
        widget = Product(tenant_id=acme.id, name="Widget", sku="W-1", price=Decimal("19.99"), inventory_count=10)
        gadget = Product(tenant_id=acme.id, name="Gadget", sku="G-1", price=Decimal("250.00"), inventory_count=1)
        session.add_all([acme_admin, beta_admin, root, acme_customer, acme_other_customer, beta_customer, widget, gadget])
        await session.commit()

        return SimpleNamespace(
            tenant_id=acme.id,
            other_tenant_id=beta.id,
            admin_id=acme_admin.id,
            other_admin_id=beta_admin.id,
            super_admin_id=root.id,
            customer_id=acme_customer.id,
            other_customer_id=acme_other_customer.id,
            beta_customer_id=beta_customer.id,
            widget_id=widget.id,
            gadget_id=gadget.id,
        )


@pytest.fixture
def admin(seed):
    return TokenPayload(sub=seed.admin_id, tenant_id=seed.tenant_id, role=Role.ADMIN, email="ops@acme.test")


@pytest.fixture
def other_admin(seed):
    return TokenPayload(sub=seed.other_admin_id, tenant_id=seed.other_tenant_id, role=Role.ADMIN)


@pytest.fixture
def super_admin(seed):
    return TokenPayload(sub=seed.super_admin_id, tenant_id=None, role=Role.SUPER_ADMIN)


@pytest.fixture
def customer(seed):
    return TokenPayload(sub=seed.customer_id, tenant_id=seed.tenant_id, role=Role.CUSTOMER)


@pytest.fixture
def other_customer(seed):
    return TokenPayload(sub=seed.other_customer_id, tenant_id=seed.tenant_id, role=Role.CUSTOMER)


@pytest.fixture
def order_service(db, dispatcher):
    return OrderService(db, dispatcher)


@pytest.fixture
def place(order_service, seed, customer):
    """Place an order as the seeded customer."""

    async def _place(lines=None, delivery_type="delivery", **kwargs):
        lines = lines or [OrderLine(seed.widget_id, 2, Decimal("19.99"))]
        return await order_service.place_order(
            customer,
            seed.tenant_id,
            lines,
            payment_method="card",
            delivery_type=delivery_type,
            **kwargs
        )

    return _place
