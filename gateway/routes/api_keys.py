"""
API key routes.

Issue, list, update and revoke API keys for programmatic access.
The plaintext key appears only in the create response.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.database import get_db
from gateway.dependencies.auth import get_current_user, TokenPayload
from gateway.models.api_key import ApiKey
from gateway.services.api_key_service import (
    ApiKeyService, ApiKeyPatch, DEFAULT_RATE_LIMIT, MIN_RATE_LIMIT, MAX_RATE_LIMIT, MAX_EXPIRY_DAYS,
)


router = APIRouter(prefix="/api/keys", tags=["api-keys"])


class CreateApiKeyRequest(BaseModel):
    """Request model for creating an API key."""
    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(min_length=1)
    rate_limit: int = Field(DEFAULT_RATE_LIMIT, ge=MIN_RATE_LIMIT, le=MAX_RATE_LIMIT)
    expires_in_days: int | None = Field(None, ge=1, le=MAX_EXPIRY_DAYS)


class ApiKeyResponse(BaseModel):
    """Key metadata. Never includes the hash or the plaintext."""
    id: str
    name: str
    key_prefix: str
    scopes: list[str]
    rate_limit: int
    is_active: bool
    last_used_at: str | None = None
    expires_at: str | None = None
    created_at: str


class CreateApiKeyResponse(BaseModel):
    api_key: ApiKeyResponse
    key: str
    message: str


def api_key_to_response(api_key: ApiKey) -> ApiKeyResponse:
    """Convert ApiKey model to ApiKeyResponse."""
    return ApiKeyResponse(
        id=api_key.id,
        name=api_key.name,
        key_prefix=api_key.key_prefix,
        scopes=list(api_key.scopes),
        rate_limit=api_key.rate_limit_per_hour,
        is_active=api_key.is_active,
        last_used_at=api_key.last_used_at.isoformat() if api_key.last_used_at else None,
        expires_at=api_key.expires_at.isoformat() if api_key.expires_at else None,
        created_at=api_key.created_at.isoformat(),
    )


@router.post("/", response_model=CreateApiKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: CreateApiKeyRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a new API key.

    The returned key is shown exactly once and cannot be recovered later.
    """
    created = await ApiKeyService(db).create_key(
        owner_id=token.sub,
        name=request.name,
        scopes=request.scopes,
        rate_limit=request.rate_limit,
        expires_in_days=request.expires_in_days,
    )
    return CreateApiKeyResponse(
        api_key=api_key_to_response(created.record),
        key=created.plaintext_key,
        message="API key created successfully. Make sure to copy it now - you won't be able to see it again!",
    )


@router.get("/", response_model=list[ApiKeyResponse])
async def list_api_keys(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's API keys."""
    keys = await ApiKeyService(db).list_keys(token.sub)
    return [api_key_to_response(k) for k in keys]


@router.patch("/{key_id}", response_model=ApiKeyResponse)
async def update_api_key(
    key_id: str,
    patch: ApiKeyPatch,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Activate/deactivate a key or change its hourly rate limit."""
    api_key = await ApiKeyService(db).update_key(token.sub, key_id, patch)
    return api_key_to_response(api_key)


@router.delete("/{key_id}", response_model=dict)
async def revoke_api_key(
    key_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Revoke (delete) an API key."""
    await ApiKeyService(db).revoke_key(token.sub, key_id)
    return {"success": True, "message": "API key revoked successfully"}
