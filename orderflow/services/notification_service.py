"""
SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

Notifications are only ever added to the caller's session; the caller's
unit of work commits them together with the transition that caused them.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models.notification import Notification


# Customer-facing notification text per target status
CUSTOMER_MESSAGES = {
    "accepted": ("order_accepted", "Order Accepted", "Your order {number} has been accepted and is being prepared"),
    "packed": ("order_packed", "Order Packed", "Your order {number} has been packed"),
    "dispatched": ("order_dispatched", "Order Dispatched", "Your order {number} is on its way"),
    "ready_for_pickup": ("order_ready", "Order Ready for Pickup", "Your order {number} is ready for pickup"),
    "delivered": ("order_delivered", "Order Delivered", "Your order {number} has been delivered"),
    "cancelled": ("order_cancelled", "Order Cancelled", "Your order {number} has been cancelled"),
}


class NotificationService:
    """Builds in-app notifications for admins and customers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def notify_admins(
        self,
        tenant_id: str,
        type: str,
        title: str,
        message: str,
        data: dict | None = None,
        priority: str = "high"
    ) -> Notification:
        """Notification visible to every admin of the tenant."""
        return self._add(tenant_id, type, title, message, data, priority)

    def notify_customer(
        self,
        tenant_id: str,
        customer_id: str,
        type: str,
        title: str,
        message: str,
        data: dict | None = None,
        priority: str = "high"
    ) -> Notification:
        return self._add(tenant_id, type, title, message, data, priority, customer_id=customer_id)

    def notify_status_change(
        self,
        tenant_id: str,
        customer_id: str,
        order_id: str,
        order_number: str,
        status: str,
        extra_message: str | None = None,
        data: dict | None = None
    ) -> Notification:
        """
        Tell the customer their order moved to `status`.

        Args:
            tenant_id: Tenant UUID
            customer_id: Recipient customer UUID
            order_id: Order UUID
            order_number: Human-readable order number used in the message
            status: New order status value
            extra_message: Sentence appended to the standard message
            data: Extra structured payload merged into the notification data

        Returns:
            The pending Notification
        """
        type_, title, template = CUSTOMER_MESSAGES[status]
        message = template.format(number=order_number)
        if extra_message:
            message = f"{message}. {extra_message}"
        payload = {"order_id": order_id, "order_number": order_number, "status": status}
        payload.update(data or {})
        return self.notify_customer(tenant_id, customer_id, type_, title, message, data=payload)

    def _add(self, tenant_id, type, title, message, data, priority, admin_id=None, customer_id=None) -> Notification:
        notification = Notification(
            tenant_id=tenant_id,
            type=type,
            title=title,
            message=message,
            admin_id=admin_id,
            customer_id=customer_id,
            data=data,
            priority=priority,
        )
        self.db.add(notification)
        return notification
