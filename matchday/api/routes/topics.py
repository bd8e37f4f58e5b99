"""Used-topic ledger endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from matchday.api.auth import verify_admin_key
from matchday.api.rate_limit import limiter
from matchday.settings import get_settings
from matchday.storage import get_committing_session, get_session
from matchday.workflows.dedup import DedupLedger, format_avoid_clause

router = APIRouter(prefix="/topics", tags=["Topics"])

DEFAULT_WORKFLOW = "european-football-daily"


class RecordTopicRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    workflow_id: str = Field(default=DEFAULT_WORKFLOW, min_length=1)
    headline: str = Field(..., min_length=1, max_length=1000)
    metadata: dict[str, Any] | None = None


@router.get("")
async def list_recent_topics(
    workflow_id: str = Query(default=DEFAULT_WORKFLOW, alias="workflowId"),
    hours_back: int | None = Query(default=None, ge=1, le=24 * 30, alias="hoursBack"),
) -> dict[str, Any]:
    """Headlines used inside the freshness window, newest first."""
    hours = hours_back or get_settings().topic_freshness_hours
    async with get_session() as session:
        ledger = DedupLedger(session)
        topics = await ledger.recent_topics(workflow_id, hours)
    headlines = list(dict.fromkeys(t.headline for t in topics))
    return {
        "workflowId": workflow_id,
        "hoursBack": hours,
        "topics": [t.to_dict() for t in topics],
        "count": len(topics),
        "avoidClause": format_avoid_clause(headlines),
    }


@router.post("", status_code=201)
async def record_topic(body: RecordTopicRequest) -> dict[str, Any]:
    async with get_committing_session() as session:
        topic = await DedupLedger(session).record(body.workflow_id, body.headline, metadata=body.metadata)
        return topic.to_dict()


@router.post("/cleanup", dependencies=[Depends(verify_admin_key)])
@limiter.limit("5/minute")
async def cleanup_topics(
    request: Request,
    hours_old: int | None = Query(default=None, ge=1, alias="hoursOld"),
) -> dict[str, Any]:
    hours = hours_old or get_settings().topic_retention_hours
    async with get_committing_session() as session:
        deleted = await DedupLedger(session).cleanup(hours)
    return {"deleted": deleted, "hoursOld": hours}
