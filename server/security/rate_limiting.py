"""Rate limiting for the Pathfinder API using slowapi with in-memory storage."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from config.settings import get_settings
from observability.logging import current_request_id

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP considering proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def analyze_rate_limit():
    """Limit for job creation, read from settings on every request."""
    return limiter.limit(lambda: get_settings().analyze_rate_limit)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Error envelope for rate limit exceeded responses."""
    logger.warning(f"Rate limit exceeded for {get_client_ip(request)} on {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={
            "error_code": "RATE_LIMITED",
            "error_message": f"Rate limit exceeded: {exc.detail}",
            "request_id": current_request_id(),
        },
        headers={"Retry-After": "60"},
    )


def setup_rate_limiting(app: FastAPI) -> None:
    """Setup rate limiting for FastAPI application."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
