"""
JWT token service.

Issuing tokens belongs to the authentication service; OrderFlow only needs
to verify them, plus mint them for internal callers and tests.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from orderflow.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(
        self,
        actor_id: str,
        tenant_id: str | None,
        role: str,
        email: str | None = None
    ) -> str:
        """
        Create a JWT token with actor context.

        Args:
            actor_id: Admin or customer ID
            tenant_id: Tenant ID (None for super-admins)
            role: admin, super_admin or customer
            email: Actor's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": actor_id,
            "tenant_id": tenant_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None
