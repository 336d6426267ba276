"""
User models.

Admins operate a tenant's store; customers place orders with it.
"""
from sqlalchemy import String, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
import enum
from orderflow.models.base import Base, TimestampMixin, new_id, str_enum


class AdminRole(str, enum.Enum):
    """Admin role enum for role-based access control."""
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Admin(Base, TimestampMixin):
    """
    Store administrator.

    A regular admin belongs to exactly one tenant. Super-admins are global
    and carry no tenant.
    """
    __tablename__ = "admins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    role: Mapped[AdminRole] = mapped_column(
        str_enum(AdminRole),
        nullable=False,
        default=AdminRole.ADMIN
    )

    def __repr__(self):
        return f"<Admin(id={self.id}, email={self.email}, tenant_id={self.tenant_id}, role={self.role})>"


class Customer(Base, TimestampMixin):
    """Customer of a tenant's store, with a loyalty points balance."""
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    loyalty_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Customer(id={self.id}, tenant_id={self.tenant_id}, points={self.loyalty_points})>"
