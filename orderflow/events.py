"""
Domain event vocabulary.

Closed set of event-type strings shared by emitters and webhook
subscriptions. Subscribers list the literal values they want.
"""
import enum


class EventType(str, enum.Enum):
    ORDER_PLACED = "order.placed"
    ORDER_STATUS_CHANGED = "order.status_changed"
    LOYALTY_POINTS_EARNED = "loyalty.points_earned"
    PRODUCT_OUT_OF_STOCK = "product.out_of_stock"
    CUSTOMER_REGISTERED = "customer.registered"
    PAYMENT_RECEIVED = "payment.received"
    WEBHOOK_TEST = "webhook.test"


EVENT_TYPES = frozenset(event.value for event in EventType)

# webhook.test is only ever sent on explicit request, never by subscription
SUBSCRIBABLE_EVENT_TYPES = EVENT_TYPES - {EventType.WEBHOOK_TEST.value}


def is_known_event(event_type: str) -> bool:
    return event_type in EVENT_TYPES
