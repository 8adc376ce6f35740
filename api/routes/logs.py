from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from shared.logs import broker
from shared.models import RenderRun, RunLog, RunStatus

from ..dependencies import get_db, get_run
from ..schemas.logs import RunLogEntry, RunLogListResponse

router = APIRouter(prefix="/runs", tags=["logs"])

TERMINAL = {
    RunStatus.COMPLETED,
    RunStatus.PARTIALLY_FAILED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
}


@router.get("/{run_id}/logs/stream")
async def stream_logs(
    run_id: uuid.UUID,
    run: RenderRun = Depends(get_run),
    session: AsyncSession = Depends(get_db),
):
    finished = run.status in TERMINAL
    # subscribe before reading history so nothing lands between the two
    queue = None if finished else await broker.subscribe(run_id)
    result = await session.execute(
        select(RunLog)
        .where(RunLog.run_id == run_id)
        .order_by(RunLog.created_at.asc(), RunLog.id.asc())
    )
    history = [
        RunLogEntry.model_validate(row).model_dump(mode="json") for row in result.scalars()
    ]
    seen = {entry["id"] for entry in history}

    async def event_generator():
        for entry in history:
            yield {"event": entry["level"], "data": json.dumps(entry)}
        if queue is None:
            return
        async for event in broker.stream(run_id, queue):
            if event.get("id") in seen:
                continue
            yield {"event": event.get("level", "info"), "data": json.dumps(event)}

    return EventSourceResponse(event_generator())


@router.get("/{run_id}/logs", response_model=RunLogListResponse)
async def list_logs(
    run_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    after: uuid.UUID | None = Query(None),
    run: RenderRun = Depends(get_run),
    session: AsyncSession = Depends(get_db),
):
    query = select(RunLog).where(RunLog.run_id == run_id)

    if after is not None:
        cursor = await session.get(RunLog, after)
        if not cursor or cursor.run_id != run_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cursor not found")

        query = query.where(
            or_(
                RunLog.created_at > cursor.created_at,
                and_(
                    RunLog.created_at == cursor.created_at,
                    RunLog.id > cursor.id,
                ),
            )
        )

    query = query.order_by(RunLog.created_at.asc(), RunLog.id.asc()).limit(limit)
    result = await session.execute(query)
    logs = result.scalars().all()

    entries = [RunLogEntry.model_validate(row) for row in logs]
    next_cursor = logs[-1].id if logs and len(logs) == limit else None

    return RunLogListResponse(logs=entries, next_cursor=next_cursor)
