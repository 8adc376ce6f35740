from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from prompts.resolver import PromptResolver, load_runtime_config, render_messages
from shared.errors import NotFound
from shared.models import SYSTEM_SCOPE, Shop

from ..dependencies import get_db
from ..schemas.prompts import ResolvedPromptDetail, ResolvedPromptEnvelope

router = APIRouter(prefix="/shops", tags=["prompts"])


async def resolve_shop_id(session: AsyncSession, shop: str) -> str:
    """Accept a shop UUID, a shop domain or the literal SYSTEM scope."""

    if shop == SYSTEM_SCOPE:
        return SYSTEM_SCOPE
    try:
        shop_uuid = uuid.UUID(shop)
    except ValueError:
        record = await session.scalar(select(Shop).where(Shop.shop_domain == shop.lower()))
    else:
        record = await session.get(Shop, shop_uuid)
    if not record:
        raise NotFound(f"Shop {shop} not found")
    return str(record.id)


@router.get("/{shop}/prompts/{prompt_name}", response_model=ResolvedPromptEnvelope)
async def get_resolved_prompt(
    shop: str,
    prompt_name: str,
    session: AsyncSession = Depends(get_db),
) -> ResolvedPromptEnvelope:
    shop_id = await resolve_shop_id(session, shop)

    def resolve(sync_session: Session) -> ResolvedPromptDetail:
        runtime = load_runtime_config(sync_session, shop_id)
        resolved = PromptResolver(sync_session, runtime).resolve(shop_id, prompt_name)
        snapshot = resolved.snapshot
        return ResolvedPromptDetail(
            shop_id=shop_id,
            prompt_name=prompt_name,
            scope=snapshot["scope"],
            version=snapshot["version"],
            version_id=snapshot["version_id"],
            template_hash=snapshot["template_hash"],
            resolution_hash=snapshot["resolution_hash"],
            model=snapshot["model"],
            params=snapshot["params"],
            templates=snapshot["templates"],
            messages=render_messages(snapshot["templates"], snapshot["variables"]),
            text=resolved.text,
        )

    detail = await session.run_sync(resolve)
    return ResolvedPromptEnvelope(data=detail)
