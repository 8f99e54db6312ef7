"""Security package for the Pathfinder API."""

from .rate_limiting import (
    limiter,
    get_client_ip,
    analyze_rate_limit,
    rate_limit_handler,
    setup_rate_limiting,
)

__all__ = [
    "limiter",
    "get_client_ip",
    "analyze_rate_limit",
    "rate_limit_handler",
    "setup_rate_limiting",
]
