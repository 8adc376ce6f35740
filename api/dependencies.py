from __future__ import annotations

from typing import AsyncIterator
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shared.db import AsyncSessionFactory
from shared.errors import NotFound
from shared.models import RenderRun


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionFactory() as session:
        yield session


async def get_run(run_id: UUID, session: AsyncSession = Depends(get_db)) -> RenderRun:
    run = await session.get(RenderRun, run_id)
    if not run:
        raise NotFound(f"Run {run_id} not found")
    return run
