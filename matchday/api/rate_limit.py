"""Shared rate limiter for API endpoints.

Tiers:
- Global default: 60/minute per client IP
- Callbacks: 120/minute (one run posts several step callbacks)
- Triggers: 10/minute (each starts an LLM pipeline)
- Admin maintenance: 5/minute

Usage in route modules:
    from matchday.api.rate_limit import limiter

    @router.post("/engine/sync")
    @limiter.limit("5/minute")
    async def sync_engine(request: Request, ...):
        ...
"""

from slowapi import Limiter
from starlette.requests import Request


def _get_real_client_ip(request: Request) -> str:
    """Client IP, taking the leftmost X-Forwarded-For entry behind a proxy."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(
    key_func=_get_real_client_ip,
    default_limits=["60/minute"],
)

# Enforced by middleware in main.py
MAX_REQUEST_BODY_BYTES = 1_048_576  # 1 MB
