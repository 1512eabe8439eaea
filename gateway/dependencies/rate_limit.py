"""
Rate limit dependency for API-key authenticated routes.
"""
from fastapi import Depends, HTTPException

from gateway.dependencies.auth import get_api_key
from gateway.logging_config import get_logger
from gateway.models.api_key import ApiKey
from gateway.routes.metrics import track_rate_limit_exceeded
from gateway.services.rate_limiter import rate_limiter


log = get_logger(component="rate_limit")


async def check_rate_limit(api_key: ApiKey = Depends(get_api_key)) -> ApiKey:
    """
    Enforce the key's own hourly limit.

    Raises 429 with Retry-After if the limit is exceeded.
    """
    allowed, retry_after = await rate_limiter.is_allowed(api_key.id, api_key.rate_limit_per_hour)

    if not allowed:
        track_rate_limit_exceeded()
        log.warning(
            "rate_limit_exceeded",
            key_id=api_key.id,
            owner_id=api_key.owner_id,
            limit=api_key.rate_limit_per_hour,
            retry_after=retry_after,
        )
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )

    return api_key
