"""
OrderFlow - Multi-tenant order fulfilment backend

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import observability modules
from orderflow.config import settings
from orderflow.errors import OrderFlowError
from orderflow.logging_config import configure_logging, get_logger
from orderflow.sentry_config import configure_sentry
from orderflow.middleware.logging import LoggingMiddleware
from orderflow.routes.metrics import router as metrics_router

# Import route modules
from orderflow.routes.orders import router as orders_router
from orderflow.routes.webhooks import router as webhooks_router
from orderflow.services.webhook_service import WebhookDispatcher

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.dispatcher = WebhookDispatcher()
    yield
    # Let in-flight webhook deliveries finish before the process exits
    pending = app.state.dispatcher.pending
    if pending:
        get_logger().info("draining_webhook_dispatches", pending=pending)
    await app.state.dispatcher.drain()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-tenant order fulfilment backend with signed outbound webhooks",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrderFlowError)
async def orderflow_error_handler(request: Request, exc: OrderFlowError):
    """Translate domain errors into HTTP responses."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include order routes
app.include_router(orders_router)

# Include webhook routes
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
    }
