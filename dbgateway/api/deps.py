# =============================================================================
# API Dependencies — identity, admission control, shared components
# =============================================================================
#
# 1. rate_limit(cls)     — spend one token from the caller's bucket
# 2. get_caller()        — identity resolved by the upstream auth layer
# 3. get_projects() etc. — components built in the lifespan (app.state)
#
# DESIGN DECISION: FastAPI dependencies (not middleware). Routers opt in
# with `dependencies=[Depends(rate_limit("general"))]`; route-level
# dependencies run before the endpoint's own parameters, so a throttled
# request is rejected before identity resolution or any tenant resource.
#
# DESIGN DECISION: Components live on app.state, not in module globals.
# Tests build their own ProjectService / RateLimiter and assign them to
# a fresh app.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request

from dbgateway.config import settings
from dbgateway.errors import RateLimitExceeded
from dbgateway.services.assistant import Assistant
from dbgateway.services.projects import ProjectService
from dbgateway.services.rate_limiter import AdmissionResult, RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Identity resolved upstream: opaque id plus email."""

    id: str
    email: str | None = None


def client_identity(request: Request) -> str:
    """
    Admission key for a request: first X-Forwarded-For hop, else the
    client address.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None:
        return request.client.host
    return "unknown"


def rate_limit(limiter_class: str) -> Callable[[Request], Awaitable[AdmissionResult | None]]:
    """
    Build a dependency that admits or rejects the request.

    No-op when no limiter is configured (rate_limit_enabled=False).

    Raises:
        RateLimitExceeded: bucket empty (HTTP 429 with Retry-After).
    """

    async def _admit(request: Request) -> AdmissionResult | None:
        limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return None

        result = await limiter.consume(limiter_class, client_identity(request))
        if not result.allowed:
            raise RateLimitExceeded(limiter_class, result.retry_after_ms)
        return result

    return _admit


async def get_caller(request: Request) -> Caller:
    """
    Read the caller identity from the trusted identity headers.

    Header names come from the settings the app was built with
    (app.state), falling back to the process settings.

    Raises:
        HTTPException 401: identity header missing or blank.
    """
    state = request.app.state
    user_header = getattr(state, "identity_user_header", settings.identity_user_header)
    email_header = getattr(state, "identity_email_header", settings.identity_email_header)

    user_id = (request.headers.get(user_header) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized. Caller identity is missing.",
        )
    email = request.headers.get(email_header) or None
    return Caller(id=user_id, email=email)


def get_projects(request: Request) -> ProjectService:
    return request.app.state.projects


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(status_code=503, detail="Rate limiting is disabled.")
    return limiter


def get_assistant(request: Request) -> Assistant:
    assistant = getattr(request.app.state, "assistant", None)
    if assistant is None:
        raise HTTPException(
            status_code=503,
            detail="AI assistant is not configured. Set LLM_API_KEY in .env",
        )
    return assistant
