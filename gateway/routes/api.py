"""
Routes authenticated by API key rather than by user JWT.

Programmatic clients present `X-API-Key` (or `Authorization: Bearer vg_...`);
every call counts against the key's hourly rate limit.
"""
from fastapi import APIRouter, Depends

from gateway.dependencies.rate_limit import check_rate_limit
from gateway.models.api_key import ApiKey
from gateway.services.rate_limiter import rate_limiter

router = APIRouter(prefix="/api/v1", tags=["API"])


@router.get("/key")
async def current_api_key(api_key: ApiKey = Depends(check_rate_limit)):
    """
    Describe the API key used for this request.

    Lets integrators check that a key is valid, which scopes it carries
    and how much of the hourly allowance is used.
    """
    used = await rate_limiter.get_current_count(api_key.id)
    return {
        "id": api_key.id,
        "owner_id": api_key.owner_id,
        "key_prefix": api_key.key_prefix,
        "scopes": list(api_key.scopes),
        "rate_limit": api_key.rate_limit_per_hour,
        "requests_this_hour": used,
        "expires_at": api_key.expires_at.isoformat() if api_key.expires_at else None,
    }
