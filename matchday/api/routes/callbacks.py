"""Engine step callbacks.

The engine posts one callback per milestone, diagnostic and final node.
Each becomes a trace row; the final one settles the execution.
"""

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from matchday.api.auth import verify_webhook_secret
from matchday.api.rate_limit import limiter
from matchday.storage import get_committing_session
from matchday.workflows.callbacks import CallbackIngestor, CallbackPayload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Callbacks"])


def _invalid(details: dict[str, list[str]]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid callback payload", "details": details},
    )


def _field_errors(exc: PydanticValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "body"
        errors.setdefault(field, []).append(error["msg"])
    return errors


@router.post("/workflows/callback")
@limiter.limit("120/minute")
async def receive_callback(request: Request) -> Any:
    """Record one step callback.

    Malformed bodies get a 400 with per-field errors; nothing is written.
    """
    verify_webhook_secret(request)

    try:
        body = await request.json()
    except ValueError:
        return _invalid({"body": ["Malformed JSON"]})

    try:
        payload = CallbackPayload.model_validate(body)
    except PydanticValidationError as e:
        logger.info("Rejected callback: %s", e.error_count())
        return _invalid(_field_errors(e))

    async with get_committing_session() as session:
        receipt = await CallbackIngestor(session).ingest(payload)

    return receipt.model_dump(by_alias=True)
