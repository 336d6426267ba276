"""
Webhook Models

Tenant webhook subscriptions and their outbound delivery log.
"""
import enum
from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, JSON, ForeignKey, CheckConstraint, UniqueConstraint
from orderflow.models.base import Base, TimestampMixin, new_id


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"  # retry attempt claimed, not yet sent
    SUCCESS = "success"
    FAILED = "failed"


class Webhook(Base, TimestampMixin):
    """
    Webhook subscription owned by a tenant.

    The secret is generated server-side and only returned at creation.
    Delivery counters are changed exclusively through atomic increments.
    """
    __tablename__ = "webhooks"
    __table_args__ = (
        CheckConstraint(
            "total_deliveries >= 0 AND successful_deliveries >= 0 AND failed_deliveries >= 0",
            name="ck_webhooks_counters_non_negative",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    secret = Column(String(64), nullable=False)
    events = Column(JSON, nullable=False, default=list)
    headers = Column(JSON, nullable=False, default=dict)
    retry_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, nullable=False, default=True)
    total_deliveries = Column(Integer, nullable=False, default=0)
    successful_deliveries = Column(Integer, nullable=False, default=0)
    failed_deliveries = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Webhook(id={self.id}, tenant_id={self.tenant_id}, url={self.url})>"


class WebhookDelivery(Base, TimestampMixin):
    """
    One delivery attempt.

    All attempts for one logical event share `event_id` and are ordered by
    `attempt_number`, which is unique per webhook and event. A retry row is
    inserted as `pending` before the request goes out and completed after.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint(
            "webhook_id", "event_id", "attempt_number",
            name="uq_webhook_deliveries_event_attempt",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    webhook_id = Column(String(36), ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    event_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False)  # pending, success, failed
    http_status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    duration_ms = Column(Integer, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, webhook_id={self.webhook_id}, status={self.status}, attempt={self.attempt_number})>"
