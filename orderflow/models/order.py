"""
Order models.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from orderflow.models.base import Base, TimestampMixin, new_id, str_enum, utcnow


class OrderStatus(str, enum.Enum):
    """Fulfilment status of an order."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    PACKED = "packed"
    DISPATCHED = "dispatched"
    READY_FOR_PICKUP = "ready_for_pickup"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class AcceptanceStatus(str, enum.Enum):
    """Acceptance sub-state, resolved once per order."""
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"
    AUTO_ACCEPTED = "auto_accepted"


class DeliveryType(str, enum.Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Order(Base, TimestampMixin):
    """
    Customer order.

    Status only changes through OrderService transitions, each guarded by a
    conditional UPDATE on the expected current status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_order_number"),
        # Sweeper predicate
        Index("ix_orders_acceptance_sweep", "acceptance_status", "status", "acceptance_deadline"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    customer_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    order_number: Mapped[str] = mapped_column(String(50), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        str_enum(OrderStatus),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True
    )
    acceptance_status: Mapped[AcceptanceStatus] = mapped_column(
        str_enum(AcceptanceStatus),
        nullable=False,
        default=AcceptanceStatus.PENDING_ACCEPTANCE,
        index=True
    )
    auto_accept_timer: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    acceptance_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    auto_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    estimated_delivery_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    packed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        str_enum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING
    )
    delivery_type: Mapped[DeliveryType] = mapped_column(
        str_enum(DeliveryType),
        nullable=False,
        default=DeliveryType.DELIVERY
    )
    delivery_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    delivery_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # `metadata` is reserved on declarative classes
    order_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    # Relationships
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItem(Base):
    """Order line. Immutable once written; prices are fixed at order time."""
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("products.id"),
        nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(order_id={self.order_id}, product_id={self.product_id}, qty={self.quantity})>"


class OrderStatusHistory(Base):
    """
    Append-only transition ledger.

    The actor is an admin, a customer, or neither (system). The integer key
    breaks ties between rows written within the same instant.
    """
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    from_status: Mapped[OrderStatus | None] = mapped_column(
        str_enum(OrderStatus),
        nullable=True
    )
    to_status: Mapped[OrderStatus] = mapped_column(
        str_enum(OrderStatus),
        nullable=False
    )
    changed_by_admin_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("admins.id", ondelete="SET NULL"),
        nullable=True
    )
    changed_by_customer_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<OrderStatusHistory(order_id={self.order_id}, {self.from_status} -> {self.to_status})>"
