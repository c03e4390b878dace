# =============================================================================
# Admission API — POST /admission/check
# =============================================================================
#
# Lets sibling services (e.g. the upstream auth layer, which owns login and
# password-reset endpoints) spend a token from a named limiter class for an
# identity of their choosing. A denied check answers 429 with Retry-After,
# exactly like a throttled gateway route.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends

from dbgateway.api.deps import get_rate_limiter
from dbgateway.errors import RateLimitExceeded
from dbgateway.models.requests import AdmissionRequest
from dbgateway.models.responses import AdmissionResponse
from dbgateway.services.rate_limiter import RateLimiter

router = APIRouter(tags=["Admission"])


@router.post(
    "/admission/check",
    response_model=AdmissionResponse,
    summary="Spend one token from a limiter bucket",
    responses={429: {"description": "Bucket empty; see Retry-After"}},
)
async def check_admission(
    request: AdmissionRequest,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> AdmissionResponse:
    result = await limiter.consume(request.limiter_class, request.identity_key)
    if not result.allowed:
        raise RateLimitExceeded(result.limiter_class, result.retry_after_ms)
    return AdmissionResponse.model_validate(result)
