"""
SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

Order lifecycle. Every mutation runs in one unit of work; events are
scheduled on the dispatcher only after that unit of work has committed.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import settings
from orderflow.database import unit_of_work
from orderflow.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from orderflow.events import EventType
from orderflow.logging_config import get_logger
from orderflow.models.base import utcnow
from orderflow.models.loyalty import PurchaseTransaction
from orderflow.models.order import (
    AcceptanceStatus,
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
)
from orderflow.models.product import Product
from orderflow.models.tenant import Tenant
from orderflow.models.user import Admin, Customer
from orderflow.routes.metrics import track_order_placed, track_order_transition
from orderflow.services.access import TokenPayload, can_read_order, ensure_tenant_admin
from orderflow.services.notification_service import NotificationService
from orderflow.services.state_machine import validate_transition


@dataclass
class OrderLine:
    """One requested line of a new order."""
    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass
class HistoryEntry:
    """One transition, annotated with who made it."""
    id: int
    from_status: str | None
    to_status: str
    changed_by_admin_id: str | None
    changed_by_admin_name: str | None
    changed_by_customer_id: str | None
    changed_by_customer_name: str | None
    notes: str | None
    changed_at: datetime


@dataclass
class PendingOrder:
    """An order awaiting acceptance, with the customer's contact details."""
    order: Order
    customer_name: str | None
    customer_phone: str | None


def format_order_number(sequence: int) -> str:
    return f"ORD-{sequence:06d}"


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def status_changed_data(
    order_id: str,
    order_number: str,
    customer_id: str,
    total,
    status: str,
    previous_status: str,
    **extra
) -> dict:
    """Event data for order.status_changed."""
    data = {
        "order_id": order_id,
        "order_number": order_number,
        "customer_id": customer_id,
        "total": str(total),
        "status": status,
        "previous_status": previous_status,
    }
    data.update(extra)
    return data


class OrderService:
    """Service for placing orders and moving them through their lifecycle."""

    def __init__(self, db: AsyncSession, dispatcher=None):
        self.db = db
        self.dispatcher = dispatcher
        self.notifications = NotificationService(db)

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def place_order(
        self,
        actor: TokenPayload,
        tenant_id: str,
        items: list[OrderLine],
        payment_method: str | None = None,
        delivery_type: DeliveryType | str = DeliveryType.DELIVERY,
        customer_id: str | None = None,
        delivery_address: str | None = None,
        delivery_phone: str | None = None,
        notes: str | None = None
    ) -> Order:
        """
        Place a new order.

        Customers order for themselves; admins of the tenant may order on
        behalf of a customer by passing customer_id.

        Args:
            actor: Authenticated caller
            tenant_id: Tenant UUID
            items: Requested lines (at least one)
            payment_method: Free-form payment method label
            delivery_type: delivery or pickup
            customer_id: Ordering customer (admins only; customers order for themselves)
            delivery_address: Delivery address
            delivery_phone: Contact phone for the delivery
            notes: Delivery notes

        Returns:
            The committed Order with its items

        Raises:
            ValidationError: Empty item list, bad quantity or price, or oversell when rejected
            ForbiddenError: Actor outside the tenant, or customer ordering for someone else
            NotFoundError: Unknown tenant, customer or product
        """
        if not items:
            raise ValidationError("Order must contain at least one item")

        if actor.is_customer:
            if actor.tenant_id != tenant_id:
                raise ForbiddenError("Access denied")
            if customer_id and customer_id != actor.sub:
                raise ForbiddenError("Customers can only place orders for themselves")
            customer_id = actor.sub
        else:
            ensure_tenant_admin(actor, tenant_id)
            if not customer_id:
                raise ValidationError("customer_id is required")

        try:
            delivery_type = DeliveryType(delivery_type)
        except ValueError:
            raise ValidationError(f"Unknown delivery type: {delivery_type}")

        lines = []
        for item in items:
            if item.quantity <= 0:
                raise ValidationError("Item quantity must be positive")
            unit_price = money(item.unit_price)
            if unit_price < 0:
                raise ValidationError("Item price cannot be negative")
            lines.append((item.product_id, item.quantity, unit_price, unit_price * item.quantity))

        total = sum((line_total for *_, line_total in lines), Decimal("0.00"))
        out_of_stock = []

        async with unit_of_work(self.db):
            stmt = select(Customer.id).where(
                Customer.id == customer_id,
                Customer.tenant_id == tenant_id  # SECURITY: Enforce tenant isolation
            )
            if (await self.db.execute(stmt)).scalar_one_or_none() is None:
                raise NotFoundError("Customer not found")

            sequence = (await self.db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(order_sequence=Tenant.order_sequence + 1)
                .returning(Tenant.order_sequence)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()
            if sequence is None:
                raise NotFoundError("Tenant not found")

            # Unknown products fail here, before any order row is written
            for product_id, quantity, _, _ in lines:
                product = await self._decrement_inventory(tenant_id, product_id, quantity)
                if product["inventory_count"] <= 0:
                    out_of_stock.append(product)

            now = utcnow()
            timer = settings.ORDER_AUTO_ACCEPT_SECONDS
            order = Order(
                tenant_id=tenant_id,
                customer_id=customer_id,
                order_number=format_order_number(sequence),
                total=total,
                status=OrderStatus.PENDING,
                acceptance_status=AcceptanceStatus.PENDING_ACCEPTANCE,
                auto_accept_timer=timer,
                acceptance_deadline=now + timedelta(seconds=timer),
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING,
                delivery_type=delivery_type,
                delivery_address=delivery_address,
                delivery_phone=delivery_phone,
                delivery_notes=notes,
                order_metadata={},
                created_at=now,
            )
            order.items = [
                OrderItem(product_id=product_id, quantity=quantity, unit_price=unit_price, line_total=line_total)
                for product_id, quantity, unit_price, line_total in lines
            ]
            self.db.add(order)
            await self.db.flush()

            self.db.add(OrderStatusHistory(
                order_id=order.id,
                tenant_id=tenant_id,
                from_status=None,
                to_status=OrderStatus.PENDING,
                notes="Order placed",
                changed_at=now,
            ))
            self.notifications.notify_admins(
                tenant_id,
                "new_order",
                "New Order",
                f"New order {order.order_number} received",
                data={
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "customer_id": customer_id,
                    "total": str(total),
                    "acceptance_deadline": order.acceptance_deadline.isoformat(),
                },
            )

        track_order_placed(tenant_id, delivery_type.value)
        get_logger(tenant_id=tenant_id, order_id=order.id).info(
            "order_placed",
            order_number=order.order_number,
            customer_id=customer_id,
            total=str(total),
            items=len(lines)
        )

        self._emit(tenant_id, EventType.ORDER_PLACED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "customer_id": customer_id,
            "total": str(total),
            "status": OrderStatus.PENDING.value,
            "delivery_type": delivery_type.value,
            "payment_method": payment_method,
            "items": [
                {
                    "product_id": product_id,
                    "quantity": quantity,
                    "unit_price": str(unit_price),
                    "line_total": str(line_total),
                }
                for product_id, quantity, unit_price, line_total in lines
            ],
        })
        for product in out_of_stock:
            self._emit(tenant_id, EventType.PRODUCT_OUT_OF_STOCK, product)

        return order

    async def _decrement_inventory(self, tenant_id: str, product_id: str, quantity: int) -> dict:
        """Atomically take `quantity` units off a product's inventory."""
        stmt = update(Product).where(
            Product.id == product_id,
            Product.tenant_id == tenant_id  # SECURITY: Enforce tenant isolation
        )
        if settings.ORDER_REJECT_OVERSELL:
            stmt = stmt.where(Product.inventory_count >= quantity)

        stmt = (
            stmt.values(inventory_count=Product.inventory_count - quantity)
            .returning(Product.id, Product.name, Product.sku, Product.inventory_count)
            .execution_options(synchronize_session=False)
        )
        row = (await self.db.execute(stmt)).one_or_none()

        if row is None:
            exists = (await self.db.execute(
                select(Product.id).where(Product.id == product_id, Product.tenant_id == tenant_id)
            )).scalar_one_or_none()
            if exists:
                raise ValidationError(f"Insufficient inventory for product {product_id}")
            raise NotFoundError(f"Product not found: {product_id}")

        return {
            "product_id": row.id,
            "name": row.name,
            "sku": row.sku,
            "inventory_count": row.inventory_count,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def accept(
        self,
        order_id: str,
        actor: TokenPayload,
        estimated_delivery_time: datetime | None = None,
        notes: str | None = None
    ) -> Order:
        """Admin accepts a pending order."""
        now = utcnow()
        async with unit_of_work(self.db):
            order = await self._load_for_admin(order_id, actor)
            previous = await self._apply_transition(
                order,
                OrderStatus.ACCEPTED,
                actor,
                notes=notes,
                values={
                    "acceptance_status": AcceptanceStatus.ACCEPTED,
                    "accepted_at": now,
                    "accepted_by": actor.sub,
                    "auto_accepted": False,
                    "estimated_delivery_time": estimated_delivery_time,
                },
                conditions=(Order.acceptance_status == AcceptanceStatus.PENDING_ACCEPTANCE,),
            )
            self.notifications.notify_status_change(
                order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.ACCEPTED.value,
                data={"estimated_delivery_time": estimated_delivery_time.isoformat() if estimated_delivery_time else None},
            )

        return await self._after_transition(order, previous, actor)

    async def pack(self, order_id: str, actor: TokenPayload, notes: str | None = None) -> Order:
        async with unit_of_work(self.db):
            order = await self._load_for_admin(order_id, actor)
            previous = await self._apply_transition(
                order, OrderStatus.PACKED, actor, notes=notes, values={"packed_at": utcnow()}
            )
            self.notifications.notify_status_change(
                order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.PACKED.value
            )

        return await self._after_transition(order, previous, actor)

    async def send_out(
        self,
        order_id: str,
        actor: TokenPayload,
        tracking_number: str | None = None,
        notes: str | None = None
    ) -> Order:
        """Hand a packed delivery order to the courier."""
        values = {"dispatched_at": utcnow()}
        async with unit_of_work(self.db):
            order = await self._load_for_admin(order_id, actor)
            if tracking_number:
                values["order_metadata"] = {**(order.order_metadata or {}), "tracking_number": tracking_number}
            previous = await self._apply_transition(order, OrderStatus.DISPATCHED, actor, notes=notes, values=values)
            self.notifications.notify_status_change(
                order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.DISPATCHED.value,
                extra_message=f"Tracking number: {tracking_number}" if tracking_number else None,
                data={"tracking_number": tracking_number},
            )

        return await self._after_transition(order, previous, actor, tracking_number=tracking_number)

    async def ready_for_pickup(self, order_id: str, actor: TokenPayload, notes: str | None = None) -> Order:
        async with unit_of_work(self.db):
            order = await self._load_for_admin(order_id, actor)
            previous = await self._apply_transition(
                order, OrderStatus.READY_FOR_PICKUP, actor, notes=notes, values={"ready_at": utcnow()}
            )
            self.notifications.notify_status_change(
                order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.READY_FOR_PICKUP.value
            )

        return await self._after_transition(order, previous, actor)

    async def deliver(
        self,
        order_id: str,
        actor: TokenPayload,
        payment_status: PaymentStatus | str | None = None,
        notes: str | None = None
    ) -> Order:
        """
        Mark an order delivered and credit the customer's loyalty points.

        Points are floor(total / LOYALTY_POINTS_DIVISOR). The status change,
        the points credit and the purchase ledger row commit together.

        Args:
            order_id: Order UUID
            actor: Authenticated admin
            payment_status: Final payment status (default: completed)
            notes: Optional history note

        Returns:
            The delivered Order
        """
        try:
            payment_status = PaymentStatus(payment_status or PaymentStatus.COMPLETED)
        except ValueError:
            raise ValidationError(f"Unknown payment status: {payment_status}")

        async with unit_of_work(self.db):
            order = await self._load_for_admin(order_id, actor)
            points = int(Decimal(order.total) // settings.LOYALTY_POINTS_DIVISOR)
            previous = await self._apply_transition(
                order,
                OrderStatus.DELIVERED,
                actor,
                notes=notes,
                values={"delivered_at": utcnow(), "payment_status": payment_status},
            )

            balance = (await self.db.execute(
                update(Customer)
                .where(
                    Customer.id == order.customer_id,
                    Customer.tenant_id == order.tenant_id  # SECURITY: Enforce tenant isolation
                )
                .values(loyalty_points=Customer.loyalty_points + points)
                .returning(Customer.loyalty_points)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()

            self.db.add(PurchaseTransaction(
                tenant_id=order.tenant_id,
                customer_id=order.customer_id,
                order_id=order.id,
                purchase_amount=order.total,
                points_earned=points,
            ))
            self.notifications.notify_status_change(
                order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.DELIVERED.value,
                extra_message=f"You earned {points} loyalty points" if points else None,
                data={"points_earned": points},
            )

        order = await self._after_transition(order, previous, actor, points_earned=points)
        self._emit(order.tenant_id, EventType.LOYALTY_POINTS_EARNED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "customer_id": order.customer_id,
            "purchase_amount": str(order.total),
            "points_earned": points,
            "points_balance": balance,
        })
        return order

    async def cancel(self, order_id: str, actor: TokenPayload, reason: str | None = None) -> Order:
        """
        Cancel an order before delivery.

        Admins of the tenant may cancel any undelivered order; a customer
        may cancel its own order only while it is still pending.
        """
        async with unit_of_work(self.db):
            order = await self._load(order_id)
            if actor.is_customer:
                if not can_read_order(actor, order.tenant_id, order.customer_id):
                    raise ForbiddenError("Access denied")
                if order.status != OrderStatus.PENDING:
                    raise ValidationError("Only pending orders can be cancelled by the customer")
            else:
                ensure_tenant_admin(actor, order.tenant_id)

            previous = await self._apply_transition(
                order, OrderStatus.CANCELLED, actor, notes=reason, values={"cancelled_at": utcnow()}
            )
            if actor.is_customer:
                self.notifications.notify_admins(
                    order.tenant_id,
                    "order_cancelled",
                    "Order Cancelled",
                    f"Order {order.order_number} was cancelled by the customer",
                    data={"order_id": order.id, "order_number": order.order_number, "reason": reason},
                )
            else:
                self.notifications.notify_status_change(
                    order.tenant_id, order.customer_id, order.id, order.order_number, OrderStatus.CANCELLED.value,
                    extra_message=reason,
                    data={"reason": reason},
                )

        return await self._after_transition(order, previous, actor, reason=reason)

    async def _apply_transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: TokenPayload,
        notes: str | None = None,
        values: dict | None = None,
        conditions: tuple = ()
    ) -> OrderStatus:
        """
        Move `order` to `target` with a conditional UPDATE and append history.

        The UPDATE only matches while the row still holds the status that was
        read, so a concurrent transition that committed first makes this one
        fail with ConflictError instead of overwriting it.

        Returns:
            The status the order was in before the transition
        """
        previous = OrderStatus(order.status)
        validate_transition(previous, target, order.delivery_type)

        changes = {getattr(Order, key): value for key, value in (values or {}).items()}
        changes[Order.status] = target
        changes[Order.updated_at] = utcnow()

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.tenant_id == order.tenant_id,  # SECURITY: Enforce tenant isolation
                Order.status == previous,
                *conditions
            )
            .values(changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"Order {order.order_number} was modified concurrently")

        self.db.add(OrderStatusHistory(
            order_id=order.id,
            tenant_id=order.tenant_id,
            from_status=previous,
            to_status=target,
            changed_by_admin_id=actor.sub if actor.is_admin else None,
            changed_by_customer_id=actor.sub if actor.is_customer else None,
            notes=notes,
        ))
        return previous

    async def _after_transition(self, order: Order, previous: OrderStatus, actor: TokenPayload, **extra) -> Order:
        """Reload the committed order, record metrics and emit order.status_changed."""
        await self.db.refresh(order)
        status = OrderStatus(order.status).value

        track_order_transition(order.tenant_id, status)
        get_logger(tenant_id=order.tenant_id, order_id=order.id).info(
            "order_status_changed",
            from_status=previous.value,
            to_status=status,
            actor_id=actor.sub,
            actor_role=actor.role.value
        )

        self._emit(order.tenant_id, EventType.ORDER_STATUS_CHANGED, status_changed_data(
            order.id,
            order.order_number,
            order.customer_id,
            order.total,
            status,
            previous.value,
            **{key: value for key, value in extra.items() if value is not None}
        ))
        return order

    def _emit(self, tenant_id: str, event_type: EventType, data: dict) -> None:
        if self.dispatcher is not None:
            self.dispatcher.schedule(tenant_id, event_type.value, data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, order_id: str) -> Order:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        order = (await self.db.execute(stmt)).scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def _load_for_admin(self, order_id: str, actor: TokenPayload) -> Order:
        order = await self._load(order_id)
        ensure_tenant_admin(actor, order.tenant_id)
        return order

    async def get_order(self, order_id: str, actor: TokenPayload) -> Order:
        """Single order with its items, for tenant admins or the ordering customer."""
        order = await self._load(order_id)
        if not can_read_order(actor, order.tenant_id, order.customer_id):
            raise ForbiddenError("Access denied")
        return order

    async def get_history(self, order_id: str, actor: TokenPayload) -> list[HistoryEntry]:
        """
        Transition history of an order, oldest first.

        Each entry names the admin or customer who made the change; system
        transitions (placement, auto-accept) carry neither.

        Args:
            order_id: Order UUID
            actor: Authenticated caller

        Returns:
            List of HistoryEntry
        """
        order = (await self.db.execute(
            select(Order.tenant_id, Order.customer_id).where(Order.id == order_id)
        )).one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        if not can_read_order(actor, order.tenant_id, order.customer_id):
            raise ForbiddenError("Access denied")

        stmt = (
            select(OrderStatusHistory, Admin.full_name, Customer.name)
            .outerjoin(Admin, Admin.id == OrderStatusHistory.changed_by_admin_id)
            .outerjoin(Customer, Customer.id == OrderStatusHistory.changed_by_customer_id)
            .where(
                OrderStatusHistory.order_id == order_id,
                OrderStatusHistory.tenant_id == order.tenant_id  # SECURITY: Enforce tenant isolation
            )
            .order_by(OrderStatusHistory.changed_at.asc(), OrderStatusHistory.id.asc())
        )
        rows = (await self.db.execute(stmt)).all()

        return [
            HistoryEntry(
                id=entry.id,
                from_status=OrderStatus(entry.from_status).value if entry.from_status else None,
                to_status=OrderStatus(entry.to_status).value,
                changed_by_admin_id=entry.changed_by_admin_id,
                changed_by_admin_name=admin_name,
                changed_by_customer_id=entry.changed_by_customer_id,
                changed_by_customer_name=customer_name,
                notes=entry.notes,
                changed_at=entry.changed_at,
            )
            for entry, admin_name, customer_name in rows
        ]

    async def get_pending_acceptance(
        self,
        tenant_id: str,
        actor: TokenPayload,
        now: datetime | None = None
    ) -> list[PendingOrder]:
        """Orders still awaiting acceptance whose deadline has not passed, oldest first."""
        ensure_tenant_admin(actor, tenant_id)
        now = now or utcnow()

        stmt = (
            select(Order, Customer.name, Customer.phone)
            .outerjoin(Customer, Customer.id == Order.customer_id)
            .where(
                Order.tenant_id == tenant_id,  # SECURITY: Enforce tenant isolation
                Order.status == OrderStatus.PENDING,
                Order.acceptance_status == AcceptanceStatus.PENDING_ACCEPTANCE,
                Order.acceptance_deadline > now
            )
            .order_by(Order.created_at.asc())
        )
        rows = (await self.db.execute(stmt)).all()
        return [PendingOrder(order=order, customer_name=name, customer_phone=phone) for order, name, phone in rows]
