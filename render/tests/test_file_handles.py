from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from render.generation import FileHandle
from render.handles import FileHandleRegistry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _handle(uri: str, expires_in: timedelta) -> FileHandle:
    return FileHandle(uri=uri, mime_type="image/png", expires_at=NOW + expires_in)


def test_valid_seeded_handle_is_reused_without_upload() -> None:
    registry = FileHandleRegistry(clock=lambda: NOW)
    registry.seed("products/lamp.png", _handle("files/seeded", timedelta(hours=2)))
    uploads = []

    async def upload() -> FileHandle:
        uploads.append(1)
        return _handle("files/new", timedelta(hours=47))

    handle, uploaded = asyncio.run(registry.ensure("products/lamp.png", upload))

    assert handle.uri == "files/seeded"
    assert uploaded is False
    assert uploads == []
    assert registry.refreshed == {}


def test_expired_handle_is_uploaded_once_for_concurrent_callers() -> None:
    registry = FileHandleRegistry(clock=lambda: NOW)
    registry.seed("products/lamp.png", _handle("files/stale", timedelta(seconds=-1)))
    uploads = []

    async def upload() -> FileHandle:
        uploads.append(1)
        await asyncio.sleep(0.01)
        return _handle(f"files/new-{len(uploads)}", timedelta(hours=47))

    async def scenario():
        return await asyncio.gather(
            *(registry.ensure("products/lamp.png", upload) for _ in range(4))
        )

    results = asyncio.run(scenario())

    assert len(uploads) == 1
    assert {handle.uri for handle, _ in results} == {"files/new-1"}
    assert sum(1 for _, uploaded in results if uploaded) == 1
    assert registry.refreshed["products/lamp.png"].uri == "files/new-1"


def test_handle_expiring_exactly_now_is_not_used() -> None:
    registry = FileHandleRegistry(clock=lambda: NOW)
    registry.seed("k", _handle("files/edge", timedelta(0)))

    assert registry.current("k") is None
    assert _handle("files/edge", timedelta(0)).is_expired(NOW) is True
