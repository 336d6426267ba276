"""
Tenant model.

Represents an isolated customer organisation in the multi-tenant system.
"""
from sqlalchemy import String, Integer, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from orderflow.models.base import Base, TimestampMixin, new_id


class Tenant(Base, TimestampMixin):
    """
    Tenant model representing an isolated store in the system.

    Each tenant owns its admins, customers, products, orders and webhooks.
    `order_sequence` backs the per-tenant order numbers and is only ever
    advanced with an atomic increment.
    """
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    order_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    feature_flags = relationship(
        "TenantFeatureFlags",
        back_populates="tenant",
        uselist=False,
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Tenant(id={self.id}, name={self.name}, slug={self.slug})>"


class TenantFeatureFlags(Base, TimestampMixin):
    """
    Per-tenant feature switches.

    Each tenant has at most one row; a missing row means every gated
    feature is disabled.
    """
    __tablename__ = "tenant_feature_flags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )
    webhooks_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhooks_max_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    tenant = relationship("Tenant", back_populates="feature_flags")

    def __repr__(self):
        return f"<TenantFeatureFlags(tenant_id={self.tenant_id}, webhooks_enabled={self.webhooks_enabled})>"
