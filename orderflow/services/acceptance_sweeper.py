"""
Acceptance sweeper.

Auto-accepts orders whose acceptance deadline has passed. Runs on a
schedule from the worker and on demand through the admin API.
"""
from datetime import datetime

from sqlalchemy import select, update

from orderflow.database import AsyncSessionLocal, unit_of_work
from orderflow.errors import OrderFlowError
from orderflow.events import EventType
from orderflow.logging_config import get_logger
from orderflow.models.base import utcnow
from orderflow.models.order import AcceptanceStatus, Order, OrderStatus, OrderStatusHistory
from orderflow.routes.metrics import track_auto_accepted, track_order_transition
from orderflow.sentry_config import capture_exception
from orderflow.services.notification_service import NotificationService
from orderflow.services.order_service import status_changed_data


AUTO_ACCEPT_NOTE = "Auto-accepted due to timeout"


def expired_predicate(now: datetime) -> tuple:
    """Rows eligible for auto-acceptance at `now`."""
    return (
        Order.status == OrderStatus.PENDING,
        Order.acceptance_status == AcceptanceStatus.PENDING_ACCEPTANCE,
        Order.acceptance_deadline.is_not(None),
        Order.acceptance_deadline <= now,
    )


class AcceptanceSweeper:
    """
    Auto-accepts expired orders, one transaction per order.

    Safe to run concurrently with itself and with manual accepts: each
    order is taken with a conditional UPDATE on the selection predicate,
    so an order another writer already moved is skipped, not overwritten.
    """

    def __init__(self, session_factory=None, dispatcher=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.dispatcher = dispatcher

    async def run(self, now: datetime | None = None) -> list[str]:
        """
        Sweep once.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            Ids of the orders this run auto-accepted
        """
        now = now or utcnow()
        log = get_logger(job="acceptance_sweep")

        async with self.session_factory() as db:
            result = await db.execute(
                select(Order.id).where(*expired_predicate(now)).order_by(Order.acceptance_deadline.asc())
            )
            candidates = list(result.scalars().all())

        processed = []
        for order_id in candidates:
            try:
                accepted = await self._accept_one(order_id, now)
            except OrderFlowError as exc:
                # One bad row never stops the rest of the sweep
                log.error("auto_accept_failed", order_id=order_id, error=exc.detail)
                capture_exception(exc)
                continue

            if accepted is None:
                log.info("auto_accept_skipped", order_id=order_id, reason="already transitioned")
                continue

            processed.append(order_id)
            track_auto_accepted(accepted.tenant_id)
            track_order_transition(accepted.tenant_id, OrderStatus.ACCEPTED.value)
            get_logger(tenant_id=accepted.tenant_id, order_id=order_id).info(
                "order_auto_accepted", order_number=accepted.order_number
            )
            if self.dispatcher is not None:
                self.dispatcher.schedule(
                    accepted.tenant_id,
                    EventType.ORDER_STATUS_CHANGED.value,
                    status_changed_data(
                        order_id,
                        accepted.order_number,
                        accepted.customer_id,
                        accepted.total,
                        OrderStatus.ACCEPTED.value,
                        OrderStatus.PENDING.value,
                        auto_accepted=True,
                    ),
                )

        log.info("acceptance_sweep_completed", candidates=len(candidates), processed=len(processed))
        return processed

    async def _accept_one(self, order_id: str, now: datetime):
        """Auto-accept one order; None when another writer got there first."""
        async with self.session_factory() as db:
            async with unit_of_work(db):
                result = await db.execute(
                    update(Order)
                    .where(Order.id == order_id, *expired_predicate(now))
                    .values({
                        Order.status: OrderStatus.ACCEPTED,
                        Order.acceptance_status: AcceptanceStatus.AUTO_ACCEPTED,
                        Order.auto_accepted: True,
                        Order.accepted_at: now,
                        Order.updated_at: now,
                    })
                    .returning(Order.tenant_id, Order.customer_id, Order.order_number, Order.total)
                    .execution_options(synchronize_session=False)
                )
                row = result.one_or_none()
                if row is None:
                    return None

                db.add(OrderStatusHistory(
                    order_id=order_id,
                    tenant_id=row.tenant_id,
                    from_status=OrderStatus.PENDING,
                    to_status=OrderStatus.ACCEPTED,
                    notes=AUTO_ACCEPT_NOTE,
                    changed_at=now,
                ))

                notifications = NotificationService(db)
                notifications.notify_admins(
                    row.tenant_id,
                    "order_auto_accepted",
                    "Order Auto-Accepted",
                    f"Order {row.order_number} was automatically accepted after the acceptance window expired",
                    data={"order_id": order_id, "order_number": row.order_number},
                )
                notifications.notify_status_change(
                    row.tenant_id, row.customer_id, order_id, row.order_number, OrderStatus.ACCEPTED.value
                )
            return row
