import logging

from fastapi import Request
from slowapi import Limiter

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Get client IP from request"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# Keyed on the same client address that anonymous views are attributed to
limiter = Limiter(key_func=get_client_ip)
