from __future__ import annotations

import asyncio
import io
import sys
from pathlib import Path
from typing import List

import httpx
import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cleanup.service import CleanupClient
from shared.config import Settings
from shared.errors import ConfigError, MaskMismatchError, RenderTimeout, UpstreamError


def _png(size: tuple[int, int], color: int | tuple[int, int, int] = (200, 200, 200)) -> bytes:
    mode = "L" if isinstance(color, int) else "RGB"
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def _client(handler, api_key: str | None = "secret") -> CleanupClient:
    settings = Settings(cleanup_api_key=api_key, cleanup_api_url="https://cleanup.test/v1")
    transport = httpx.MockTransport(handler)
    return CleanupClient(settings, client=httpx.AsyncClient(transport=transport))


def test_clean_posts_multipart_with_quality_mode() -> None:
    seen: List[httpx.Request] = []
    cleaned = _png((32, 24), (10, 20, 30))

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=cleaned)

    client = _client(handler)
    result = asyncio.run(client.clean(_png((32, 24)), _png((32, 24), 255), "req-1"))

    assert result == cleaned
    assert len(seen) == 1
    request = seen[0]
    assert request.headers["x-api-key"] == "secret"
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="image_file"' in body
    assert b'name="mask_file"' in body
    assert b'name="mode"' in body
    assert b"quality" in body


def test_missing_credentials_raise_config_error_without_calling_out() -> None:
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=b"")

    client = _client(handler, api_key=None)
    with pytest.raises(ConfigError):
        asyncio.run(client.clean(_png((8, 8)), _png((8, 8), 255), "req-2"))
    assert calls == []


def test_mask_dimension_mismatch_is_rejected_before_request() -> None:
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=b"")

    client = _client(handler)
    with pytest.raises(MaskMismatchError):
        asyncio.run(client.clean(_png((16, 16)), _png((8, 8), 255), "req-3"))
    assert calls == []


@pytest.mark.parametrize("status, retryable", [(500, True), (429, True), (400, False)])
def test_non_success_status_raises_upstream_error(status: int, retryable: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="upstream said no")

    client = _client(handler)
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.clean(_png((8, 8)), _png((8, 8), 255), "req-4"))
    assert excinfo.value.status_code == status
    assert excinfo.value.retryable is retryable
    assert "upstream said no" in str(excinfo.value)


def test_transport_timeout_maps_to_render_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler)
    with pytest.raises(RenderTimeout):
        asyncio.run(client.clean(_png((8, 8)), _png((8, 8), 255), "req-5"))


def test_connection_error_is_retryable_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.clean(_png((8, 8)), _png((8, 8), 255), "req-6"))
    assert excinfo.value.retryable is True
