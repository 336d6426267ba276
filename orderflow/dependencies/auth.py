"""
Authentication dependencies for FastAPI.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError as PydanticValidationError
from orderflow.services.access import TokenPayload
from orderflow.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


async def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid. Also records the
    actor on request.state for the logging middleware.

    Usage:
        @app.get("/protected")
        async def protected_route(actor: TokenPayload = Depends(get_current_actor)):
            ...
    """
    jwt_service = JWTService()

    payload = jwt_service.verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        actor = TokenPayload(**payload)
    except PydanticValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.tenant_id = actor.tenant_id
    request.state.actor_id = actor.sub
    structlog.contextvars.bind_contextvars(tenant_id=actor.tenant_id, actor_id=actor.sub)
    return actor


def require_admin(actor: TokenPayload = Depends(get_current_actor)) -> TokenPayload:
    """
    Dependency that requires admin or super-admin role.

    Usage:
        @app.get("/admin")
        async def admin_route(actor: TokenPayload = Depends(require_admin)):
            ...
    """
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return actor


def require_super_admin(actor: TokenPayload = Depends(get_current_actor)) -> TokenPayload:
    """Dependency that requires the super-admin role."""
    if not actor.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super-admin access required"
        )

    return actor
