"""
JWT token service for caller identity.

Tokens are issued by the marketplace identity service and carry the
caller's user id (sub) and role. The gateway only verifies them; create_token
exists for service-to-service callers and tests.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from gateway.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, user_id: str, role: str = "member", email: str | None = None) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID (owner of keys and webhooks)
            role: User role (admin or member)
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": user_id,
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
