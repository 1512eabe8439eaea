"""
Authentication dependencies for FastAPI.

SECURITY: Every key, webhook and delivery query MUST be scoped to the
caller's owner id (TokenPayload.sub). Failure to do so leaks integrations
between marketplace users.
"""
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import settings
from gateway.database import get_db
from gateway.models.api_key import ApiKey
from gateway.services.api_key_service import ApiKeyService
from gateway.services.jwt_service import JWTService
from gateway.services.security import API_KEY_PREFIX, constant_time_equals


# Security scheme
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id, owner of keys and webhooks
    role: str = "member"
    email: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.

    Usage:
        @app.get("/protected")
        async def protected_route(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    jwt_service = JWTService()

    payload = jwt_service.verify_token(credentials.credentials)

    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.owner_id = payload["sub"]
    return TokenPayload(**payload)


async def require_scheduler(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> str:
    """
    Dependency for elevated, scheduler-only operations (the delivery sweep).

    Accepts either the external scheduler's CRON_SECRET as a bearer token or
    an admin JWT. Returns a short label identifying the caller.
    """
    token = credentials.credentials

    if settings.CRON_SECRET and constant_time_equals(token, settings.CRON_SECRET):
        return "scheduler"

    payload = JWTService().verify_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if payload.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return f"admin:{payload.get('sub')}"


async def get_api_key(
    x_api_key: str | None = Header(None),
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
    db: AsyncSession = Depends(get_db)
) -> ApiKey:
    """
    Dependency that requires a valid API key.

    The key may be sent as `X-API-Key: vg_...` or `Authorization: Bearer vg_...`.
    Raises 401 for unknown, inactive or expired keys.
    """
    presented = x_api_key
    if presented is None and credentials is not None and credentials.credentials.startswith(API_KEY_PREFIX):
        presented = credentials.credentials

    if not presented:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required"
        )

    api_key = await ApiKeyService(db).verify_key(presented)
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired API key"
        )
    return api_key
