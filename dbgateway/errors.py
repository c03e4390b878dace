# =============================================================================
# Gateway Errors
# =============================================================================
#
# Every error the services raise derives from GatewayError and carries the
# HTTP status the API layer maps it to (see main.py). Services never raise
# HTTPException directly.
# =============================================================================

from __future__ import annotations

import re

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

# user:password@ inside any URL-looking text
_CREDENTIALS_RE = re.compile(r"(?P<scheme>[a-zA-Z][\w+.-]*://)[^/\s@]+@")


def redact_credentials(text: str, *secrets: str | None) -> str:
    """Strip URL credentials and any known secret values from `text`."""
    text = _CREDENTIALS_RE.sub(r"\g<scheme>***@", text)
    for secret in secrets:
        if not secret:
            continue
        try:
            password = make_url(secret).password
        except ArgumentError:
            password = secret
        if password:
            text = text.replace(str(password), "***")
    return text


class GatewayError(Exception):
    """Base error for the gateway."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class DatabaseConnectionError(GatewayError):
    """Tenant database unreachable, rejecting credentials, or pool exhausted."""

    status_code = 503


class ProvisioningError(GatewayError):
    """Creating or dropping a physical tenant database failed."""

    status_code = 502


class SchemaIntrospectionError(GatewayError):
    """Catalog query against a tenant database failed."""

    status_code = 500


class QueryExecutionError(GatewayError):
    """Statement rejected by policy or failed in the database."""

    status_code = 400


class DangerousQueryError(QueryExecutionError):
    """Statement matched the destructive-keyword denylist."""

    status_code = 403

    def __init__(self, keyword: str) -> None:
        super().__init__(
            f"Potentially dangerous SQL operation detected: {keyword}",
        )
        self.keyword = keyword


class RateLimitExceeded(GatewayError):
    """Admission denied by the rate limiter."""

    status_code = 429

    def __init__(self, limiter_class: str, retry_after_ms: int) -> None:
        super().__init__(
            f"Rate limit exceeded for '{limiter_class}' requests. "
            f"Retry after {retry_after_ms} ms.",
        )
        self.limiter_class = limiter_class
        self.retry_after_ms = retry_after_ms


class NotFoundError(GatewayError):
    """Referenced project/record absent or not owned by the caller."""

    status_code = 404


class ConflictError(GatewayError):
    """Resource already exists (e.g., duplicate project name)."""

    status_code = 409


class AssistantError(GatewayError):
    """The AI service failed or returned unusable output."""

    status_code = 502
