"""
Rate Limiter Configuration

In-memory slowapi limiter keyed on the real client IP. Applied to the
customer-facing payment and cancellation endpoints.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    # Check X-Forwarded-For header (set by proxies)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


# Global rate limiter instance
limiter = Limiter(
    key_func=get_real_client_ip,
    default_limits=["100/minute"]
)


# ================================
# RATE LIMIT CONFIGURATIONS
# ================================

RATE_LIMITS = {
    # Money movement - strict limits
    "charge": "10/minute",
    "finalize": "30/minute",
    "customer_cancel": "10/minute",

    # Staff operations
    "refund": "30/minute",
    "reschedule": "20/minute",

    # Webhooks - higher limits for the gateway
    "webhook": "300/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
