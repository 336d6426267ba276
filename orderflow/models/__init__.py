"""
Importing this package registers every table with Base.metadata, so foreign
keys resolve regardless of which model a caller imported first.
"""
from orderflow.models.base import Base
from orderflow.models.tenant import Tenant, TenantFeatureFlags
from orderflow.models.user import Admin, AdminRole, Customer
from orderflow.models.product import Product
from orderflow.models.order import (
    AcceptanceStatus, DeliveryType, Order, OrderItem, OrderStatus,
    OrderStatusHistory, PaymentStatus,
)
from orderflow.models.notification import Notification
from orderflow.models.loyalty import PurchaseTransaction
from orderflow.models.webhook import DeliveryStatus, Webhook, WebhookDelivery

__all__ = [
    "Base",
    "Tenant", "TenantFeatureFlags",
    "Admin", "AdminRole", "Customer",
    "Product",
    "AcceptanceStatus", "DeliveryType", "Order", "OrderItem", "OrderStatus",
    "OrderStatusHistory", "PaymentStatus",
    "Notification",
    "PurchaseTransaction",
    "DeliveryStatus", "Webhook", "WebhookDelivery",
]
