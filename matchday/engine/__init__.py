"""Automation engine integration: REST client, webhook cache, and sync."""

from matchday.engine.client import EngineClient, EngineClientConfig, EngineExecution, get_engine_client
from matchday.engine.webhook_cache import CachedWebhook, WebhookUrlCache

__all__ = [
    "CachedWebhook",
    "EngineClient",
    "EngineClientConfig",
    "EngineExecution",
    "WebhookUrlCache",
    "get_engine_client",
]
