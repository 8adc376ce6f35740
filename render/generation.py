"""Client for the composite image generation service."""
from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from PIL import Image

from shared.config import Settings, get_settings
from shared.errors import ConfigError, RenderTimeout, UpstreamError

logger = structlog.get_logger(__name__)

SERVICE_NAME = "generation"

SUPPORTED_RATIOS: List[Tuple[str, float]] = [
    ("1:1", 1.0),
    ("4:5", 0.8),
    ("5:4", 1.25),
    ("3:4", 0.75),
    ("4:3", 4 / 3),
    ("2:3", 2 / 3),
    ("3:2", 1.5),
    ("9:16", 9 / 16),
    ("16:9", 16 / 9),
    ("21:9", 21 / 9),
]

PARAM_NAMES = {
    "temperature": "temperature",
    "top_p": "topP",
    "top_k": "topK",
    "max_tokens": "maxOutputTokens",
    "seed": "seed",
}


@dataclass(frozen=True)
class FileHandle:
    """Reference to an uploaded file that the service discards after ``expires_at``."""

    uri: str
    mime_type: str
    expires_at: datetime
    name: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


@dataclass(frozen=True)
class ImagePart:
    mime_type: str
    data: Optional[bytes] = None
    file_uri: Optional[str] = None

    def as_part(self) -> Dict[str, Any]:
        if self.file_uri:
            return {"fileData": {"mimeType": self.mime_type, "fileUri": self.file_uri}}
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data or b"").decode("ascii"),
            }
        }


@dataclass
class GenerationResult:
    image: bytes
    mime_type: str
    tokens_in: int = 0
    tokens_out: int = 0
    finish_reason: Optional[str] = None
    provider_request_id: Optional[str] = None


def sniff_image(payload: bytes) -> Tuple[str, Tuple[int, int]]:
    """Return the MIME type and size of an encoded image."""

    try:
        with Image.open(io.BytesIO(payload)) as image:
            fmt = (image.format or "PNG").lower()
            return f"image/{'jpeg' if fmt == 'jpg' else fmt}", image.size
    except OSError as exc:
        raise UpstreamError(f"Unreadable image payload: {exc}") from exc


def closest_aspect_ratio(width: int, height: int) -> Optional[str]:
    if not width or not height:
        return None
    ratio = width / height
    return min(SUPPORTED_RATIOS, key=lambda item: abs(ratio - item[1]))[0]


def generation_config(params: Dict[str, Any], aspect_ratio: Optional[str]) -> Dict[str, Any]:
    config: Dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
    for name, value in params.items():
        if name in PARAM_NAMES:
            config[PARAM_NAMES[name]] = value
    if aspect_ratio:
        config["imageConfig"] = {"aspectRatio": aspect_ratio}
    return config


class GeminiGenerationClient:
    """Generation collaborator backed by the Gemini REST API.

    Product images travel as Files API handles, the room photo inline and
    last, which makes the model adopt the room's framing.
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
                timeout=httpx.Timeout(self.settings.generation_timeout_seconds, connect=10.0)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _api_key(self) -> str:
        if not self.settings.gemini_api_key:
            raise ConfigError("ROOMRENDER_GEMINI_API_KEY is not configured")
        return self.settings.gemini_api_key

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.post(url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RenderTimeout(f"Generation service timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(f"Generation service unreachable: {exc}", retryable=True) from exc
        if response.status_code >= 400:
            raise UpstreamError.from_status(SERVICE_NAME, response.status_code, response.text)
        return response

    async def upload_file(
        self, payload: bytes, mime_type: str, display_name: str, request_id: str
    ) -> FileHandle:
        """Upload ``payload`` through the resumable Files API protocol."""

        api_key = self._api_key()
        log = logger.bind(request_id=request_id, display_name=display_name)
        log.info("generation.file_upload.start", bytes=len(payload), mime_type=mime_type)
        start = await self._post(
            f"{self.settings.gemini_api_base}/upload/v1beta/files",
            headers={
                "x-goog-api-key": api_key,
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(payload)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={"file": {"display_name": display_name}},
        )
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise UpstreamError("Files API did not return an upload URL", retryable=True)

        finished = await self._post(
            upload_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=payload,
        )
        file_info = response_json(finished).get("file") or {}
        uri = file_info.get("uri")
        if not uri:
            raise UpstreamError("Files API response did not include a file URI")
        expires_at = _parse_expiry(file_info.get("expirationTime")) or (
            datetime.now(timezone.utc) + timedelta(hours=self.settings.gemini_file_validity_hours)
        )
        log.info("generation.file_upload.complete", uri=uri, expires_at=expires_at.isoformat())
        return FileHandle(
            uri=uri,
            mime_type=file_info.get("mimeType", mime_type),
            expires_at=expires_at,
            name=file_info.get("name"),
        )

    async def generate(
        self,
        *,
        prompt: str,
        model: str,
        params: Dict[str, Any],
        product: ImagePart,
        room: ImagePart,
        aspect_ratio: Optional[str],
        request_id: str,
    ) -> GenerationResult:
        api_key = self._api_key()
        log = logger.bind(request_id=request_id, model=model)
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [product.as_part(), room.as_part(), {"text": prompt}],
                }
            ],
            "generationConfig": generation_config(params, aspect_ratio),
        }
        log.info("generation.request", aspect_ratio=aspect_ratio, prompt_chars=len(prompt))
        response = await self._post(
            f"{self.settings.gemini_api_base}/v1beta/models/{model}:generateContent",
            headers={"x-goog-api-key": api_key},
            json=body,
        )
        result = parse_generation_response(response_json(response))
        log.info(
            "generation.complete",
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            finish_reason=result.finish_reason,
        )
        return result


def response_json(response: httpx.Response) -> Dict[str, Any]:
    """Decode a 2xx body; gateways sometimes answer 200 with an HTML page."""

    try:
        data = response.json()
    except ValueError as exc:
        raise UpstreamError(
            f"{SERVICE_NAME} returned a non-JSON body: {response.text[:200]}",
            status_code=response.status_code,
            body=response.text,
            retryable=True,
        ) from exc
    if not isinstance(data, dict):
        raise UpstreamError(
            f"{SERVICE_NAME} returned unexpected JSON: {type(data).__name__}",
            status_code=response.status_code,
            body=response.text,
        )
    return data


def parse_generation_response(data: Dict[str, Any]) -> GenerationResult:
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise UpstreamError(f"Prompt blocked by provider: {feedback['blockReason']}")

    candidates = data.get("candidates") or []
    first = candidates[0] if candidates else {}
    finish_reason = first.get("finishReason")
    for part in (first.get("content") or {}).get("parts") or []:
        inline = part.get("inlineData") or {}
        if inline.get("data"):
            try:
                image = base64.b64decode(inline["data"], validate=True)
            except ValueError as exc:
                raise UpstreamError(f"Generated image data is not valid base64: {exc}") from exc
            usage = data.get("usageMetadata") or {}
            return GenerationResult(
                image=image,
                mime_type=inline.get("mimeType", "image/png"),
                tokens_in=int(usage.get("promptTokenCount") or 0),
                tokens_out=int(usage.get("candidatesTokenCount") or 0),
                finish_reason=finish_reason,
                provider_request_id=data.get("responseId"),
            )
    raise UpstreamError(f"No image in generation response (finishReason={finish_reason})")


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
