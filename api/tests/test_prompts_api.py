from __future__ import annotations

import asyncio
import sys
import uuid
from pathlib import Path
from typing import AsyncIterator

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.dependencies import get_db
from api.main import app
from prompts.library import COMPOSITE_PROMPT, seed_system_prompts, template_hash
from shared.models import (
    Base,
    PromptDefinition,
    PromptVersion,
    PromptVersionStatus,
    Shop,
)

SHOP_UUID = uuid.UUID("5b0f1f63-86a4-4a8f-a7a0-2f1c8e0b9d21")
SHOP_DOMAIN = "lamps.example.com"


@pytest.fixture(scope="module")
def session_factory() -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def prepare() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        async with factory() as session:
            await session.run_sync(seed_system_prompts)
            user_template = "Shop-specific placement for {{product.type}}"
            definition = PromptDefinition(
                id=uuid.uuid4(),
                shop_id=str(SHOP_UUID),
                name=COMPOSITE_PROMPT,
                default_model="gemini-2.5-flash-image",
                default_params={"temperature": 0.4},
            )
            definition.versions.append(
                PromptVersion(
                    id=uuid.uuid4(),
                    version=2,
                    status=PromptVersionStatus.ACTIVE,
                    user_template=user_template,
                    params={},
                    template_hash=template_hash(None, None, user_template),
                )
            )
            session.add_all(
                [
                    Shop(id=SHOP_UUID, shop_domain=SHOP_DOMAIN),
                    definition,
                ]
            )
            await session.commit()

    asyncio.run(prepare())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def client(session_factory: async_sessionmaker[AsyncSession]) -> TestClient:
    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


def test_system_scope_prompt_detail(client: TestClient) -> None:
    response = client.get(f"/shops/SYSTEM/prompts/{COMPOSITE_PROMPT}")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["scope"] == "SYSTEM"
    assert body["data"]["version"] == 1
    assert [message["role"] for message in body["data"]["messages"]] == ["system", "user"]


@pytest.mark.parametrize("shop", [str(SHOP_UUID), SHOP_DOMAIN])
def test_shop_identified_by_uuid_or_domain(client: TestClient, shop: str) -> None:
    response = client.get(f"/shops/{shop}/prompts/{COMPOSITE_PROMPT}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["shop_id"] == str(SHOP_UUID)
    assert data["scope"] == "shop"
    assert data["version"] == 2
    assert data["text"] == "Shop-specific placement for {{product.type}}"
    assert data["params"]["temperature"] == 0.4


def test_unknown_shop_returns_error_envelope(client: TestClient) -> None:
    response = client.get(f"/shops/unknown.example.com/prompts/{COMPOSITE_PROMPT}")

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": {"code": "NOT_FOUND", "message": "Shop unknown.example.com not found"},
    }


def test_unknown_prompt_returns_not_found(client: TestClient) -> None:
    response = client.get("/shops/SYSTEM/prompts/no_such_prompt")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_startup_seeds_system_prompts_into_an_empty_database() -> None:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def prepare_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(prepare_schema())
    factory = async_sessionmaker(engine, expire_on_commit=False)

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get(f"/shops/SYSTEM/prompts/{COMPOSITE_PROMPT}")
    finally:
        app.dependency_overrides.pop(get_db, None)
        asyncio.run(engine.dispose())

    assert response.status_code == 200
    assert response.json()["data"]["scope"] == "SYSTEM"
