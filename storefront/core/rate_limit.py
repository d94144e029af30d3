"""
Rate Limiting Configuration

Uses SlowAPI for in-memory rate limiting of checkout endpoints.
"""
import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from storefront.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Get client IP, respecting X-Forwarded-For for proxied requests.
    Falls back to direct IP if header not present.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Structured JSON response with retry-after header."""
    logger.warning(f"Rate limit exceeded: {get_client_ip(request)} on {request.url.path}")

    retry_after = exc.detail.split("per")[0].strip() if exc.detail else "1 minute"

    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimited",
            "message": f"Too many requests. Please try again in {retry_after}.",
        },
        headers={"Retry-After": "60"},
    )
