"""
Loyalty models.

Records purchase transactions and the loyalty points they earned.
"""
from decimal import Decimal
from sqlalchemy import String, ForeignKey, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from orderflow.models.base import Base, TimestampMixin, new_id


class PurchaseTransaction(Base, TimestampMixin):
    """
    Purchase ledger row written when an order is delivered.

    Append-only; one row per delivered order.
    """
    __tablename__ = "purchase_transactions"

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
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    purchase_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self):
        return f"<PurchaseTransaction(order_id={self.order_id}, amount={self.purchase_amount}, points={self.points_earned})>"
