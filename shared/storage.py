"""Utilities for interacting with MinIO/S3 storage."""
from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import httpx
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from .config import Settings, get_settings
from .errors import NotFound, RenderTimeout, UpstreamError

MISSING_CODES = {"NoSuchKey", "NoSuchObject", "NoSuchBucket"}


@dataclass
class StoredObject:
    """Representation of an object written to storage."""

    key: str
    size: int
    content_type: str


class ObjectStore:
    """Async facade over a MinIO bucket.

    The MinIO client is blocking, so calls are pushed to the default executor
    to keep the render controller's event loop responsive.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Minio] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.bucket = self.settings.minio_bucket
        self.client = client or Minio(
            endpoint=self.settings.minio_endpoint,
            access_key=self.settings.minio_access_key,
            secret_key=self.settings.minio_secret_key,
            secure=self.settings.minio_secure,
        )
        self.http_client = http_client
        self._bucket_checked = False

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_checked = True

    def _get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in MISSING_CODES:
                raise NotFound(f"Object {key} not found in {self.bucket}") from exc
            raise UpstreamError(f"Storage read failed for {key}: {exc}", retryable=True) from exc
        except HTTPError as exc:
            raise UpstreamError(f"Storage unreachable: {exc}", retryable=True) from exc
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def _put(self, key: str, payload: bytes, content_type: str) -> StoredObject:
        try:
            self._ensure_bucket()
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(payload),
                len(payload),
                content_type=content_type,
            )
        except (S3Error, HTTPError) as exc:
            raise UpstreamError(f"Storage write failed for {key}: {exc}", retryable=True) from exc
        return StoredObject(key=key, size=len(payload), content_type=content_type)

    def _exists(self, key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in MISSING_CODES:
                return False
            raise UpstreamError(f"Storage stat failed for {key}: {exc}", retryable=True) from exc
        return True

    async def get_bytes(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get, key)

    async def put_bytes(
        self, key: str, payload: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        return await asyncio.to_thread(self._put, key, payload, content_type)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists, key)

    async def get_source(self, key_or_url: str) -> bytes:
        """Fetch a storage key, or a legacy URL the asset key resolver fell back to."""

        if urlsplit(key_or_url).scheme not in ("http", "https"):
            return await self.get_bytes(key_or_url)
        client = self.http_client or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.get(key_or_url)
        except httpx.TimeoutException as exc:
            raise RenderTimeout(f"Source download timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(f"Source download failed: {exc}", retryable=True) from exc
        finally:
            if client is not self.http_client:
                await client.aclose()
        if response.status_code == 404:
            raise NotFound(f"Source image {key_or_url} not found")
        if response.status_code >= 400:
            raise UpstreamError.from_status("storage", response.status_code, response.text)
        return response.content
