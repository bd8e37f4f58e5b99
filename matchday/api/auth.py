"""API key guard for admin endpoints and shared-secret check for callbacks.

If no admin key is configured:
- Production: admin endpoints fail closed
- Development/testing: admin endpoints are open
"""

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, APIKeyQuery

# Import the module so tests can monkeypatch get_settings
import matchday.settings as _settings_mod

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
api_key_query = APIKeyQuery(name="api_key", auto_error=False)


async def verify_admin_key(
    header_key: str | None = Security(api_key_header),
    query_key: str | None = Security(api_key_query),
) -> str:
    """Require the admin API key (header or query parameter)."""
    settings = _settings_mod.get_settings()
    configured = settings.admin_api_key.get_secret_value()

    if not configured:
        if settings.environment == "production":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin access is not configured. Set ADMIN_API_KEY.",
            )
        return ""

    provided = header_key or query_key
    if not provided:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API key required.",
        )
    if not secrets.compare_digest(provided, configured):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key.")
    return "admin"


def verify_webhook_secret(request: Request) -> None:
    """Check X-Webhook-Secret when a secret is configured.

    Production without a configured secret is a server misconfiguration.
    """
    settings = _settings_mod.get_settings()
    if settings.webhook_secret:
        provided = request.headers.get("X-Webhook-Secret", "")
        if not secrets.compare_digest(provided, settings.webhook_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")
    elif settings.environment == "production":
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured. Set WEBHOOK_SECRET for production use.",
        )


RequireAdmin = Annotated[str, Depends(verify_admin_key)]
