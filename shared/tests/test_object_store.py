from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
from urllib3.exceptions import ProtocolError

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from shared.config import Settings
from shared.errors import NotFound, RenderTimeout, UpstreamError
from shared.storage import ObjectStore


class FakeResponse:
    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        self.released = False

    def read(self) -> bytes:
        return self.payload

    def close(self) -> None:
        pass

    def release_conn(self) -> None:
        self.released = True


class FakeMinio:
    def __init__(self, objects: Dict[str, bytes] | None = None, broken: bool = False) -> None:
        self.objects = dict(objects or {})
        self.broken = broken
        self.buckets: List[str] = []
        self.responses: List[FakeResponse] = []

    def get_object(self, bucket: str, key: str) -> FakeResponse:
        if self.broken:
            raise ProtocolError("connection reset")
        response = FakeResponse(self.objects[key])
        self.responses.append(response)
        return response

    def bucket_exists(self, bucket: str) -> bool:
        return bucket in self.buckets

    def make_bucket(self, bucket: str) -> None:
        self.buckets.append(bucket)

    def put_object(self, bucket, key, data, length, content_type=None) -> None:
        if self.broken:
            raise ProtocolError("connection reset")
        self.objects[key] = data.read(length)


def _store(minio: FakeMinio, handler=None) -> ObjectStore:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return ObjectStore(Settings(minio_bucket="renders"), client=minio, http_client=http_client)


def test_put_then_get_round_trips_through_the_bucket() -> None:
    minio = FakeMinio()
    store = _store(minio)

    stored = asyncio.run(store.put_bytes("renders/r1/p1.jpg", b"jpeg", "image/jpeg"))
    payload = asyncio.run(store.get_bytes("renders/r1/p1.jpg"))

    assert stored.size == 4
    assert stored.content_type == "image/jpeg"
    assert payload == b"jpeg"
    assert minio.buckets == ["renders"]
    assert minio.responses[0].released


def test_transport_failures_are_retryable_upstream_errors() -> None:
    store = _store(FakeMinio(broken=True))

    with pytest.raises(UpstreamError) as read_error:
        asyncio.run(store.get_bytes("rooms/a.png"))
    with pytest.raises(UpstreamError) as write_error:
        asyncio.run(store.put_bytes("rooms/a.png", b"x"))

    assert read_error.value.retryable
    assert write_error.value.retryable


def test_get_source_reads_keys_from_the_bucket() -> None:
    store = _store(FakeMinio({"products/lamp.png": b"png"}))

    assert asyncio.run(store.get_source("products/lamp.png")) == b"png"


def test_get_source_downloads_legacy_urls() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"legacy")

    store = _store(FakeMinio(), handler)

    assert asyncio.run(store.get_source("https://cdn.test/prepared/lamp.png?sig=1")) == b"legacy"
    assert seen == ["https://cdn.test/prepared/lamp.png?sig=1"]


@pytest.mark.parametrize(
    "status_code, error_type, retryable",
    [(404, NotFound, None), (503, UpstreamError, True), (403, UpstreamError, False)],
)
def test_get_source_maps_http_failures(status_code, error_type, retryable) -> None:
    store = _store(FakeMinio(), lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(error_type) as exc_info:
        asyncio.run(store.get_source("https://cdn.test/prepared/lamp.png"))

    if retryable is not None:
        assert exc_info.value.retryable is retryable


def test_get_source_timeout_is_a_render_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    store = _store(FakeMinio(), handler)

    with pytest.raises(RenderTimeout):
        asyncio.run(store.get_source("https://cdn.test/prepared/lamp.png"))
