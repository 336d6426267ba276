"""
Webhook dispatcher dependency.

One WebhookDispatcher lives on app.state for the process lifetime so that
in-flight deliveries can be drained on shutdown.
"""
from fastapi import Request

from orderflow.services.webhook_service import WebhookDispatcher


def get_dispatcher(request: Request) -> WebhookDispatcher:
    """
    Dependency returning the application's dispatcher.

    Usage:
        @router.post("/orders/{order_id}/accept")
        async def accept(dispatcher: WebhookDispatcher = Depends(get_dispatcher)):
            ...
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = WebhookDispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher
