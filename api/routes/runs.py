from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.errors import NotFound
from shared.models import JobStatus, ProductAsset, RenderJob, RenderRun, RunStatus

from ..dependencies import get_db
from ..schemas.runs import RunCreateRequest, RunResponse
from ..services.render import enqueue_run

router = APIRouter(prefix="/runs", tags=["runs"])

CANCELLABLE = {RunStatus.CREATED, RunStatus.RUNNING}


async def load_run(session: AsyncSession, run_id: uuid.UUID) -> RenderRun:
    result = await session.execute(
        select(RenderRun).options(selectinload(RenderRun.jobs)).where(RenderRun.id == run_id)
    )
    run = result.scalar_one_or_none()
    if not run:
        raise NotFound(f"Run {run_id} not found")
    return run


@router.post("", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def create_run(
    payload: RunCreateRequest,
    session: AsyncSession = Depends(get_db),
) -> RunResponse:
    asset_ids = {payload.product_asset_id}
    asset_ids.update(p.product_asset_id for p in payload.placements if p.product_asset_id)
    for asset_id in asset_ids:
        asset = await session.get(ProductAsset, asset_id)
        if not asset or asset.shop_id != payload.shop_id:
            raise NotFound(f"Product asset {asset_id} not found for shop {payload.shop_id}")

    run = RenderRun(
        id=uuid.uuid4(),
        shop_id=payload.shop_id,
        product_asset_id=payload.product_asset_id,
        trace_id=uuid.uuid4().hex,
        status=RunStatus.CREATED,
        prompt_name=payload.prompt_name,
        request_payload=payload.model_dump(mode="json"),
        prompt_overrides=payload.prompt_overrides,
    )
    for placement in payload.placements:
        run.jobs.append(
            RenderJob(
                id=uuid.uuid4(),
                placement_id=placement.placement_id,
                product_asset_id=placement.product_asset_id,
                room_image_key=placement.room_image_key,
                mask_key=placement.mask_key,
                cleaned_room_key=placement.cleaned_room_key,
                prompt_overrides=placement.prompt_overrides,
            )
        )
    session.add(run)
    await session.commit()

    enqueue_run(run.id)
    return RunResponse.model_validate(await load_run(session, run.id))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run_detail(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
) -> RunResponse:
    return RunResponse.model_validate(await load_run(session, run_id))


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
) -> RunResponse:
    run = await load_run(session, run_id)
    if run.status not in CANCELLABLE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Run cannot be cancelled in its current status",
        )

    run.cancel_requested = True
    if run.status == RunStatus.CREATED:
        # no worker has picked the run up; it will skip anything not in CREATED
        now = datetime.now(UTC)
        run.status = RunStatus.CANCELLED
        run.completed_at = now
        for job in run.jobs:
            job.status = JobStatus.CANCELLED
            job.finished_at = now
    await session.commit()

    session.expire_all()
    return RunResponse.model_validate(await load_run(session, run_id))
