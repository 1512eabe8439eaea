"""
API key service (Key Store).

SECURITY: Every mutation is scoped to the calling owner. The plaintext key
exists only in the return value of create_key; it is never stored or logged.
"""
from dataclasses import dataclass
from datetime import timedelta
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.errors import ValidationError, NotFoundError, NotAuthorizedError
from gateway.logging_config import get_logger
from gateway.models.api_key import ApiKey
from gateway.models.base import utcnow
from gateway.routes.metrics import track_api_key_created, track_api_key_revoked
from gateway.services.security import (
    generate_api_key, hash_api_key, key_prefix, constant_time_equals,
)


MIN_RATE_LIMIT = 100
MAX_RATE_LIMIT = 10000
DEFAULT_RATE_LIMIT = 1000
MAX_EXPIRY_DAYS = 365
MAX_NAME_LENGTH = 100


class ApiKeyPatch(BaseModel):
    """Partial update for an API key. Only these two fields are mutable."""
    model_config = ConfigDict(extra="forbid")

    is_active: bool | None = None
    rate_limit: int | None = None


@dataclass
class CreatedApiKey:
    """Result of create_key: the stored record plus the one-time plaintext."""
    record: ApiKey
    plaintext_key: str


def _validate_rate_limit(rate_limit: int) -> None:
    if isinstance(rate_limit, bool) or not isinstance(rate_limit, int):
        raise ValidationError("rate_limit must be an integer")
    if not MIN_RATE_LIMIT <= rate_limit <= MAX_RATE_LIMIT:
        raise ValidationError(
            f"rate_limit must be between {MIN_RATE_LIMIT} and {MAX_RATE_LIMIT}"
        )


def _normalise_scopes(scopes) -> list[str]:
    if isinstance(scopes, str) or not scopes:
        raise ValidationError("At least one scope is required")
    cleaned = []
    for scope in scopes:
        if not isinstance(scope, str) or not scope.strip():
            raise ValidationError("Scopes must be non-empty strings")
        if scope.strip() not in cleaned:
            cleaned.append(scope.strip())
    return cleaned


class ApiKeyService:
    """Service for issuing, listing, updating, revoking and verifying API keys."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.log = get_logger(component="api_keys")

    async def create_key(
        self,
        owner_id: str,
        name: str,
        scopes: list[str],
        rate_limit: int = DEFAULT_RATE_LIMIT,
        expires_in_days: int | None = None
    ) -> CreatedApiKey:
        """
        Issue a new API key.

        Args:
            owner_id: Marketplace user who owns the key
            name: Human-friendly label (1-100 characters)
            scopes: Non-empty list of permission strings
            rate_limit: Requests per hour, 100-10000
            expires_in_days: Optional lifetime, 1-365 days

        Returns:
            CreatedApiKey holding the record and the plaintext key.
            This is the only time the plaintext is ever available.
        """
        if not name or not name.strip() or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"name must be 1-{MAX_NAME_LENGTH} characters")
        cleaned_scopes = _normalise_scopes(scopes)
        _validate_rate_limit(rate_limit)
        if expires_in_days is not None:
            if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int):
                raise ValidationError("expires_in_days must be an integer")
            if not 1 <= expires_in_days <= MAX_EXPIRY_DAYS:
                raise ValidationError(f"expires_in_days must be between 1 and {MAX_EXPIRY_DAYS}")

        plaintext, digest, prefix = generate_api_key()
        now = utcnow()

        api_key = ApiKey(
            owner_id=owner_id,
            name=name.strip(),
            key_hash=digest,
            key_prefix=prefix,
            scopes=cleaned_scopes,
            rate_limit_per_hour=rate_limit,
            is_active=True,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        track_api_key_created()
        self.log.info("api_key_created", owner_id=owner_id, key_id=api_key.id, key_prefix=prefix)
        return CreatedApiKey(record=api_key, plaintext_key=plaintext)

    async def list_keys(self, owner_id: str) -> list[ApiKey]:
        """List an owner's keys, most recent first."""
        stmt = (
            select(ApiKey)
            .where(ApiKey.owner_id == owner_id)
            .order_by(ApiKey.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_owned_key(self, owner_id: str, key_id: str) -> ApiKey:
        """
        Load a key and enforce ownership.

        Raises:
            NotFoundError: no key with this id
            NotAuthorizedError: key belongs to another owner
        """
        api_key = await self.db.get(ApiKey, key_id)
        if api_key is None:
            raise NotFoundError("API key not found")
        if api_key.owner_id != owner_id:
            raise NotAuthorizedError("You don't have permission to modify this API key")
        return api_key

    async def revoke_key(self, owner_id: str, key_id: str) -> None:
        """Delete a key. Ownership-checked."""
        api_key = await self.get_owned_key(owner_id, key_id)
        await self.db.delete(api_key)
        await self.db.commit()
        track_api_key_revoked()
        self.log.info("api_key_revoked", owner_id=owner_id, key_id=key_id)

    async def update_key(self, owner_id: str, key_id: str, patch: ApiKeyPatch) -> ApiKey:
        """
        Apply a partial update to is_active and/or rate_limit.

        Args:
            owner_id: Calling owner
            key_id: API key UUID
            patch: Fields to change; None means "leave as is"

        Returns:
            The updated key
        """
        if patch.rate_limit is not None:
            _validate_rate_limit(patch.rate_limit)

        api_key = await self.get_owned_key(owner_id, key_id)

        if patch.is_active is not None:
            api_key.is_active = patch.is_active
        if patch.rate_limit is not None:
            api_key.rate_limit_per_hour = patch.rate_limit

        await self.db.commit()
        await self.db.refresh(api_key)
        return api_key

    async def verify_key(self, presented: str) -> ApiKey | None:
        """
        Resolve a presented bearer key to its record.

        Candidates are narrowed by key_prefix, then digests are compared in
        constant time. Inactive and expired keys never verify.

        Returns:
            The matching ApiKey, or None
        """
        if not presented:
            return None

        digest = hash_api_key(presented)
        stmt = select(ApiKey).where(ApiKey.key_prefix == key_prefix(presented))
        result = await self.db.execute(stmt)

        match = None
        for candidate in result.scalars().all():
            if constant_time_equals(candidate.key_hash, digest):
                match = candidate

        if match is None or not match.is_active:
            return None

        now = utcnow()
        if match.expires_at is not None and match.expires_at <= now:
            return None

        match.last_used_at = now
        await self.db.commit()
        return match
