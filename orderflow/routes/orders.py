"""
Order API routes.

Placement, lifecycle transitions, history and the acceptance queue.
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database import get_db
from orderflow.dependencies.auth import get_current_actor, require_admin, require_super_admin
from orderflow.dependencies.dispatch import get_dispatcher
from orderflow.models.order import DeliveryType, Order
from orderflow.services.access import TokenPayload
from orderflow.services.acceptance_sweeper import AcceptanceSweeper
from orderflow.services.order_service import OrderLine, OrderService
from orderflow.services.webhook_service import WebhookDispatcher


router = APIRouter(prefix="/api", tags=["orders"])


# Pydantic models for request/response
class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class PlaceOrderRequest(BaseModel):
    """Request model for placing an order."""
    items: list[OrderItemRequest]
    payment_method: str | None = None
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    customer_id: str | None = None  # admins ordering on behalf of a customer
    delivery_address: str | None = None
    delivery_phone: str | None = None
    notes: str | None = None


class AcceptOrderRequest(BaseModel):
    estimated_delivery_time: datetime | None = None
    notes: str | None = None


class TransitionRequest(BaseModel):
    notes: str | None = None


class SendOutRequest(BaseModel):
    tracking_number: str | None = None
    notes: str | None = None


class DeliverRequest(BaseModel):
    payment_status: str | None = None
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    quantity: int
    unit_price: str
    line_total: str


class OrderResponse(BaseModel):
    """Response model for an order."""
    id: str
    tenant_id: str
    customer_id: str
    order_number: str
    total: str
    status: str
    acceptance_status: str
    auto_accepted: bool
    acceptance_deadline: str | None = None
    accepted_at: str | None = None
    accepted_by: str | None = None
    estimated_delivery_time: str | None = None
    delivered_at: str | None = None
    cancelled_at: str | None = None
    payment_method: str | None = None
    payment_status: str
    delivery_type: str
    delivery_address: str | None = None
    delivery_phone: str | None = None
    delivery_notes: str | None = None
    metadata: dict = {}
    items: list[OrderItemResponse] = []
    created_at: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def order_to_response(order: Order) -> OrderResponse:
    """Convert Order model to OrderResponse."""
    return OrderResponse(
        id=order.id,
        tenant_id=order.tenant_id,
        customer_id=order.customer_id,
        order_number=order.order_number,
        total=str(order.total),
        status=_value(order.status),
        acceptance_status=_value(order.acceptance_status),
        auto_accepted=bool(order.auto_accepted),
        acceptance_deadline=_iso(order.acceptance_deadline),
        accepted_at=_iso(order.accepted_at),
        accepted_by=order.accepted_by,
        estimated_delivery_time=_iso(order.estimated_delivery_time),
        delivered_at=_iso(order.delivered_at),
        cancelled_at=_iso(order.cancelled_at),
        payment_method=order.payment_method,
        payment_status=_value(order.payment_status),
        delivery_type=_value(order.delivery_type),
        delivery_address=order.delivery_address,
        delivery_phone=order.delivery_phone,
        delivery_notes=order.delivery_notes,
        metadata=order.order_metadata or {},
        items=[
            OrderItemResponse(
                id=item.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=str(item.unit_price),
                line_total=str(item.line_total),
            )
            for item in order.items
        ],
        created_at=_iso(order.created_at),
    )


def get_order_service(
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher)
) -> OrderService:
    return OrderService(db, dispatcher)


@router.post("/tenants/{tenant_id}/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    tenant_id: str,
    request: PlaceOrderRequest,
    actor: TokenPayload = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """
    Place an order.

    Returns immediately after commit; webhook delivery of order.placed
    happens in the background.
    """
    order = await service.place_order(
        actor,
        tenant_id,
        items=[OrderLine(item.product_id, item.quantity, item.unit_price) for item in request.items],
        payment_method=request.payment_method,
        delivery_type=request.delivery_type,
        customer_id=request.customer_id,
        delivery_address=request.delivery_address,
        delivery_phone=request.delivery_phone,
        notes=request.notes,
    )
    return order_to_response(order)


@router.get("/tenants/{tenant_id}/orders/pending-acceptance")
async def get_pending_acceptance(
    tenant_id: str,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    """Orders waiting for a manual accept before their deadline."""
    pending = await service.get_pending_acceptance(tenant_id, actor)
    return {
        "orders": [
            {
                **order_to_response(entry.order).model_dump(),
                "customer_name": entry.customer_name,
                "customer_phone": entry.customer_phone,
            }
            for entry in pending
        ],
        "total": len(pending),
    }


@router.post("/orders/auto-accept")
async def run_acceptance_sweep(
    actor: TokenPayload = Depends(require_super_admin),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher)
):
    """Run the acceptance sweep now instead of waiting for the worker."""
    processed = await AcceptanceSweeper(dispatcher=dispatcher).run()
    return {"processed": processed, "count": len(processed)}


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    actor: TokenPayload = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    return order_to_response(await service.get_order(order_id, actor))


@router.get("/orders/{order_id}/history")
async def get_order_history(
    order_id: str,
    actor: TokenPayload = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """Status timeline, oldest first."""
    history = await service.get_history(order_id, actor)
    return {
        "order_id": order_id,
        "history": [
            {
                "id": entry.id,
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "changed_by_admin_id": entry.changed_by_admin_id,
                "changed_by_admin_name": entry.changed_by_admin_name,
                "changed_by_customer_id": entry.changed_by_customer_id,
                "changed_by_customer_name": entry.changed_by_customer_name,
                "notes": entry.notes,
                "changed_at": _iso(entry.changed_at),
            }
            for entry in history
        ],
    }


@router.post("/orders/{order_id}/accept", response_model=OrderResponse)
async def accept_order(
    order_id: str,
    request: AcceptOrderRequest | None = None,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    request = request or AcceptOrderRequest()
    order = await service.accept(order_id, actor, request.estimated_delivery_time, request.notes)
    return order_to_response(order)


@router.post("/orders/{order_id}/pack", response_model=OrderResponse)
async def pack_order(
    order_id: str,
    request: TransitionRequest | None = None,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    request = request or TransitionRequest()
    return order_to_response(await service.pack(order_id, actor, request.notes))


@router.post("/orders/{order_id}/send-out", response_model=OrderResponse)
async def send_out_order(
    order_id: str,
    request: SendOutRequest | None = None,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    request = request or SendOutRequest()
    order = await service.send_out(order_id, actor, request.tracking_number, request.notes)
    return order_to_response(order)


@router.post("/orders/{order_id}/ready-for-pickup", response_model=OrderResponse)
async def ready_for_pickup(
    order_id: str,
    request: TransitionRequest | None = None,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    request = request or TransitionRequest()
    return order_to_response(await service.ready_for_pickup(order_id, actor, request.notes))


@router.post("/orders/{order_id}/deliver", response_model=OrderResponse)
async def deliver_order(
    order_id: str,
    request: DeliverRequest | None = None,
    actor: TokenPayload = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    """Mark delivered and credit loyalty points."""
    request = request or DeliverRequest()
    order = await service.deliver(order_id, actor, request.payment_status, request.notes)
    return order_to_response(order)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    request: CancelRequest | None = None,
    actor: TokenPayload = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    request = request or CancelRequest()
    return order_to_response(await service.cancel(order_id, actor, request.reason))
