"""Key management endpoints.

Provides:
  POST /v1/regenerate-api-key — rotate the key used to make the call

The caller authenticates with the key it wants rotated. The old key stops
working as soon as the response is sent; the new key is returned once.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from keygate.auth.keys import KeyManager, KeyNotFoundError
from keygate.auth.limiter import KEY_MANAGEMENT_RATE_LIMIT, limiter
from keygate.auth.middleware import AuthorizationContext, authorize_request
from keygate.utils.logger import get_logger, key_prefix

logger = get_logger(__name__)

router = APIRouter(tags=["api-keys"])


class RegenerateKeyResponse(BaseModel):
    """Response body for POST /v1/regenerate-api-key."""

    key: str
    """The new API key. Shown once."""


@router.post("/v1/regenerate-api-key", response_model=RegenerateKeyResponse)
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def regenerate_api_key(
    request: Request,
    auth: AuthorizationContext = Depends(authorize_request),
) -> RegenerateKeyResponse:
    """Rotate the presented key, keeping its owner pair and scopes.

    Raises:
        HTTP 401: The presented key is not a known key (including when
                  authorization is disabled and no key was sent).
    """
    keys: KeyManager = request.app.state.keys
    try:
        new_key = await keys.refresh_key(auth.api_key)
    except KeyNotFoundError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc

    logger.info(
        "API key regenerated via API",
        old_key_prefix=key_prefix(auth.api_key),
        new_key_prefix=key_prefix(new_key),
    )
    return RegenerateKeyResponse(key=new_key)
