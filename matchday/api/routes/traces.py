"""Raw trace listing for operators."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from matchday.api.auth import verify_admin_key
from matchday.dal import TraceRepository
from matchday.storage import get_session

router = APIRouter(prefix="/traces", tags=["Traces"], dependencies=[Depends(verify_admin_key)])


@router.get("")
async def list_traces(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    async with get_session() as session:
        repo = TraceRepository(session)
        traces = await repo.list_recent(limit=limit, offset=offset)
        total = await repo.count()
    return {
        "traces": [t.to_dict() for t in traces],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/by-trace/{trace_id}")
async def get_trace_timeline(trace_id: str) -> dict[str, Any]:
    """All rows sharing a trace id, in attempt order."""
    async with get_session() as session:
        traces = await TraceRepository(session).list_for_trace(trace_id)
    if not traces:
        raise HTTPException(status_code=404, detail="Trace not found")
    return {"traceId": trace_id, "traces": [t.to_dict() for t in traces]}


@router.get("/{record_id}")
async def get_trace(record_id: UUID) -> dict[str, Any]:
    async with get_session() as session:
        trace = await TraceRepository(session).get(str(record_id))
    if trace is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return trace.to_dict()
