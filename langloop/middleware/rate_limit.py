"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from langloop.config import get_settings

settings = get_settings()


def get_client_key(request: Request) -> str:
    """Rate limit key: forwarded client address when behind a proxy, else peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_key,
    storage_uri=settings.rate_limit_storage_uri,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)


def rate_limit_tasks():
    """Rate limit for task creation and retrigger."""
    return limiter.limit(f"{settings.rate_limit_per_minute}/minute")
