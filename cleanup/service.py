"""Mask-driven object removal for room photos."""
from __future__ import annotations

import io
import time
from typing import Optional, Tuple

import httpx
import structlog
from PIL import Image, UnidentifiedImageError

from shared.config import Settings, get_settings
from shared.errors import ConfigError, MaskMismatchError, RenderTimeout, UpstreamError

logger = structlog.get_logger(__name__)

SERVICE_NAME = "cleanup"


def image_dimensions(payload: bytes) -> Tuple[int, int]:
    try:
        with Image.open(io.BytesIO(payload)) as image:
            return image.size
    except UnidentifiedImageError as exc:
        raise MaskMismatchError(f"Unreadable image payload: {exc}") from exc


class CleanupClient:
    """Client for the external cleanup/inpainting service.

    The mask marks pixels to remove in white and pixels to keep in black and
    must have the same dimensions as the image. There is no retry here; the
    render controller decides whether a failed cleanup is attempted again.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.cleanup_timeout_seconds, connect=10.0)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _api_key(self, log: structlog.stdlib.BoundLogger) -> str:
        api_key = self.settings.cleanup_api_key
        if not api_key:
            log.error("cleanup.auth", configured=False)
            raise ConfigError("ROOMRENDER_CLEANUP_API_KEY is not configured")
        log.info("cleanup.auth", configured=True)
        return api_key

    async def clean(self, image: bytes, mask: bytes, request_id: str) -> bytes:
        """Remove the masked object from ``image`` and return the cleaned bytes."""

        log = logger.bind(request_id=request_id, service=SERVICE_NAME)
        api_key = self._api_key(log)

        image_size = image_dimensions(image)
        mask_size = image_dimensions(mask)
        if image_size != mask_size:
            log.error("cleanup.error", reason="mask_mismatch", image=image_size, mask=mask_size)
            raise MaskMismatchError(
                f"Mask is {mask_size[0]}x{mask_size[1]} but image is "
                f"{image_size[0]}x{image_size[1]}"
            )

        log.info(
            "cleanup.request",
            image_bytes=len(image),
            mask_bytes=len(mask),
            mode=self.settings.cleanup_mode,
        )
        started = time.perf_counter()
        try:
            response = await self.client.post(
                self.settings.cleanup_api_url,
                headers={"x-api-key": api_key, "Accept": "image/png"},
                files={
                    "image_file": ("image.png", image, "image/png"),
                    "mask_file": ("mask.png", mask, "image/png"),
                },
                data={"mode": self.settings.cleanup_mode},
            )
        except httpx.TimeoutException as exc:
            log.error("cleanup.error", reason="timeout")
            raise RenderTimeout(f"Cleanup request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            log.error("cleanup.error", reason="network", error=str(exc))
            raise UpstreamError(f"Cleanup request failed: {exc}", retryable=True) from exc

        duration_ms = int((time.perf_counter() - started) * 1000)
        if response.status_code >= 400:
            log.error(
                "cleanup.error",
                status=response.status_code,
                body=response.text[:500],
                duration_ms=duration_ms,
            )
            raise UpstreamError.from_status(SERVICE_NAME, response.status_code, response.text)

        log.info("cleanup.complete", duration_ms=duration_ms, output_bytes=len(response.content))
        return response.content
