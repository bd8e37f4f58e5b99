"""Matchday exception hierarchy.

Base exceptions for all application layers with correlation ID support.

Usage:
    from matchday.exceptions import EngineClientError, ManifestError

    try:
        await client.list_recent_executions(workflow_id)
    except EngineClientError as e:
        logger.warning("Engine unavailable (%s): %s", e.correlation_id, e)
"""

import uuid
from typing import Any


class MatchdayError(Exception):
    """Base exception for all Matchday application errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class EngineClientError(MatchdayError):
    """Errors from the automation engine REST API.

    Raised when engine calls fail, with the HTTP status (when there was
    a response) and any detail the engine returned.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        correlation_id: str | None = None,
    ):
        self.details = details or {}
        self.status_code = status_code
        super().__init__(message, correlation_id=correlation_id)


class ManifestError(MatchdayError):
    """A manifest file exists but cannot be parsed or validated."""

    def __init__(self, message: str, *, manifest_id: str | None = None, **kwargs):
        self.manifest_id = manifest_id
        super().__init__(message, **kwargs)


class ValidationError(MatchdayError):
    """Errors from input validation (beyond Pydantic)."""

    pass


class ConfigurationError(MatchdayError):
    """Errors from application configuration."""

    pass
