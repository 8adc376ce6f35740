"""Placement worker: prepares, generates and stores one composite image.

Workers never touch the run. Each placement returns a ``PlacementOutcome``
that the controller folds into the run's counters, totals and waterfall.
"""
from __future__ import annotations

import asyncio
import hashlib
import io
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from PIL import Image

from assets.resolver import PreparedImageKey
from prompts.resolver import ResolvedPrompt
from shared.config import Settings
from shared.errors import (
    ConfigError,
    MaskMismatchError,
    RenderPipelineError,
    RenderTimeout,
    UpstreamError,
)
from shared.models import CallStatus, JobStatus

from .generation import FileHandle, ImagePart, closest_aspect_ratio, sniff_image
from .handles import Clock, FileHandleRegistry, utcnow

logger = structlog.get_logger(__name__)

JPEG_QUALITY = 90

# error_code of a placement that failed on an exception outside the taxonomy
UNEXPECTED_ERROR = "INTERNAL_ERROR"

# Failures raised before any request leaves the process; these are not calls.
LOCAL_FAILURES = (ConfigError, MaskMismatchError)


@dataclass(frozen=True)
class RenderPolicy:
    """Retry, fan-out and deadline constants for a render run."""

    max_retries: int = 2
    max_concurrency: int = 4
    call_timeout_seconds: float = 45.0
    retry_backoff_seconds: float = 1.5
    cost_per_million_tokens_in: float = 0.10
    cost_per_million_tokens_out: float = 0.40

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderPolicy":
        return cls(
            max_retries=settings.render_max_retries,
            max_concurrency=settings.render_max_concurrency,
            call_timeout_seconds=settings.render_call_timeout_seconds,
            retry_backoff_seconds=settings.render_retry_backoff_seconds,
            cost_per_million_tokens_in=settings.cost_per_million_tokens_in,
            cost_per_million_tokens_out=settings.cost_per_million_tokens_out,
        )

    def cost(self, tokens_in: int, tokens_out: int) -> float:
        return (
            tokens_in * self.cost_per_million_tokens_in
            + tokens_out * self.cost_per_million_tokens_out
        ) / 1_000_000

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "max_concurrency": self.max_concurrency,
            "call_timeout_seconds": self.call_timeout_seconds,
            "retry_backoff_seconds": self.retry_backoff_seconds,
            "cost_per_million_tokens_in": self.cost_per_million_tokens_in,
            "cost_per_million_tokens_out": self.cost_per_million_tokens_out,
        }


@dataclass(frozen=True)
class PlacementRequest:
    run_id: uuid.UUID
    job_id: uuid.UUID
    placement_id: str
    trace_id: str
    room_image_key: str
    product_key: PreparedImageKey
    prompt: ResolvedPrompt
    mask_key: Optional[str] = None
    cleaned_room_key: Optional[str] = None
    instruction: Optional[str] = None

    @property
    def request_id(self) -> str:
        return f"{self.trace_id}:{self.placement_id}"

    @property
    def output_key(self) -> str:
        return f"renders/{self.run_id}/{self.placement_id}.jpg"

    @property
    def cleanup_cache_key(self) -> str:
        digest = hashlib.sha256(f"{self.room_image_key}|{self.mask_key}".encode("utf-8"))
        return f"cleaned/{digest.hexdigest()[:32]}.png"

    def prompt_text(self) -> str:
        if not self.instruction:
            return self.prompt.text
        return f"{self.prompt.text}\n\nPlacement: {self.instruction}"


@dataclass
class CallRecord:
    service: str
    attempt: int
    status: CallStatus
    latency_ms: int
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: float = 0.0
    error_message: Optional[str] = None


@dataclass
class PlacementOutcome:
    job_id: uuid.UUID
    placement_id: str
    status: JobStatus
    retry_count: int = 0
    image_key: Optional[str] = None
    cleaned_room_key: Optional[str] = None
    stage_ms: Dict[str, int] = field(default_factory=dict)
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: float = 0.0
    calls: List[CallRecord] = field(default_factory=list)
    uploads: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def failed(
        cls, job_id: uuid.UUID, placement_id: str, error: RenderPipelineError, at: datetime
    ) -> "PlacementOutcome":
        """Outcome for a placement rejected before any external call."""

        return cls(
            job_id=job_id,
            placement_id=placement_id,
            status=JobStatus.FAIL,
            error_code=error.code,
            error_message=str(error),
            started_at=at,
            finished_at=at,
        )


def to_jpeg(payload: bytes, quality: int = JPEG_QUALITY) -> bytes:
    try:
        with Image.open(io.BytesIO(payload)) as image:
            buffer = io.BytesIO()
            image.convert("RGB").save(buffer, format="JPEG", quality=quality)
            return buffer.getvalue()
    except OSError as exc:
        raise UpstreamError(f"Generated image could not be decoded: {exc}") from exc


class PlacementWorker:
    """Runs the stages of a single placement with the run's retry policy.

    The retry budget is per placement and shared by its stages: a retried
    cleanup leaves fewer retries for generation. Only the stage that failed
    is attempted again. Timeouts end the placement immediately.
    """

    def __init__(
        self,
        *,
        storage: Any,
        cleanup: Any,
        generation: Any,
        handles: FileHandleRegistry,
        policy: RenderPolicy,
        clock: Clock = utcnow,
    ) -> None:
        self.storage = storage
        self.cleanup = cleanup
        self.generation = generation
        self.handles = handles
        self.policy = policy
        self.clock = clock

    async def run(self, request: PlacementRequest) -> PlacementOutcome:
        outcome = PlacementOutcome(
            job_id=request.job_id,
            placement_id=request.placement_id,
            status=JobStatus.PENDING,
            cleaned_room_key=request.cleaned_room_key,
            started_at=self.clock(),
        )
        log = logger.bind(request_id=request.request_id, run_id=str(request.run_id))
        started = time.perf_counter()
        try:
            room = await self._timed(outcome, "download", self._prepare_room(request, outcome))
            handle = await self._timed(outcome, "upload", self._product_handle(request, outcome))
            image = await self._timed(
                outcome, "inference", self._generate(request, outcome, room, handle)
            )
            outcome.image_key = await self._timed(
                outcome, "upload", self._store(request, outcome, image)
            )
            outcome.status = JobStatus.SUCCESS
        except ConfigError:
            raise
        except RenderTimeout as exc:
            outcome.status = JobStatus.TIMEOUT
            outcome.error_code = exc.code
            outcome.error_message = str(exc)
        except RenderPipelineError as exc:
            outcome.status = JobStatus.FAIL
            outcome.error_code = exc.code
            outcome.error_message = str(exc)
        except Exception as exc:
            log.exception("placement.unexpected_error", placement_id=request.placement_id)
            outcome.status = JobStatus.FAIL
            outcome.error_code = UNEXPECTED_ERROR
            outcome.error_message = f"{type(exc).__name__}: {exc}"
        outcome.finished_at = self.clock()
        log.info(
            "placement.finished",
            status=outcome.status.value,
            retry_count=outcome.retry_count,
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=outcome.error_message,
        )
        return outcome

    async def _timed(self, outcome: PlacementOutcome, stage: str, work: Awaitable[Any]) -> Any:
        started = time.perf_counter()
        try:
            return await work
        finally:
            elapsed = int((time.perf_counter() - started) * 1000)
            outcome.stage_ms[stage] = outcome.stage_ms.get(stage, 0) + elapsed

    async def _attempt(
        self,
        outcome: PlacementOutcome,
        service: str,
        call: Callable[[], Awaitable[Any]],
        *,
        record: bool = True,
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(call(), self.policy.call_timeout_seconds)
            except asyncio.TimeoutError as exc:
                self._record(outcome, service, attempt, started, CallStatus.TIMEOUT, record, exc)
                raise RenderTimeout(
                    f"{service} exceeded {self.policy.call_timeout_seconds}s deadline"
                ) from exc
            except RenderTimeout as exc:
                self._record(outcome, service, attempt, started, CallStatus.TIMEOUT, record, exc)
                raise
            except LOCAL_FAILURES:
                raise
            except UpstreamError as exc:
                self._record(outcome, service, attempt, started, CallStatus.FAILED, record, exc)
                if not exc.retryable or outcome.retry_count >= self.policy.max_retries:
                    raise
                outcome.retry_count += 1
                logger.warning(
                    "placement.retry",
                    placement_id=outcome.placement_id,
                    service=service,
                    retry_count=outcome.retry_count,
                    error=str(exc),
                )
                await asyncio.sleep(self.policy.retry_backoff_seconds * outcome.retry_count)
            except Exception as exc:
                self._record(outcome, service, attempt, started, CallStatus.FAILED, record, exc)
                raise
            else:
                usage = (
                    (getattr(result, "tokens_in", 0), getattr(result, "tokens_out", 0))
                    if service == "generation"
                    else (0, 0)
                )
                self._record(
                    outcome, service, attempt, started, CallStatus.SUCCEEDED, record, None, usage
                )
                return result

    def _record(
        self,
        outcome: PlacementOutcome,
        service: str,
        attempt: int,
        started: float,
        status: CallStatus,
        record: bool,
        error: Optional[BaseException],
        usage: tuple = (0, 0),
    ) -> None:
        if not record:
            return
        tokens_in, tokens_out = usage
        cost = self.policy.cost(tokens_in, tokens_out)
        outcome.calls.append(
            CallRecord(
                service=service,
                attempt=attempt,
                status=status,
                latency_ms=int((time.perf_counter() - started) * 1000),
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cost_estimate=cost,
                error_message=str(error) if error else None,
            )
        )
        outcome.tokens_in += tokens_in
        outcome.tokens_out += tokens_out
        outcome.cost_estimate += cost

    async def _prepare_room(self, request: PlacementRequest, outcome: PlacementOutcome) -> bytes:
        """Return the room image the product is composed into.

        A cleaned room already in storage is reused; otherwise the masked
        object is removed once and the result cached under a key derived from
        the room and mask keys.
        """

        if request.cleaned_room_key:
            return await self._attempt(
                outcome, "storage", lambda: self.storage.get_bytes(request.cleaned_room_key),
                record=False,
            )
        if not request.mask_key:
            return await self._attempt(
                outcome, "storage", lambda: self.storage.get_bytes(request.room_image_key),
                record=False,
            )

        cache_key = request.cleanup_cache_key
        if await self._attempt(
            outcome, "storage", lambda: self.storage.exists(cache_key), record=False
        ):
            outcome.cleaned_room_key = cache_key
            return await self._attempt(
                outcome, "storage", lambda: self.storage.get_bytes(cache_key), record=False
            )

        room = await self._attempt(
            outcome, "storage", lambda: self.storage.get_bytes(request.room_image_key),
            record=False,
        )
        mask = await self._attempt(
            outcome, "storage", lambda: self.storage.get_bytes(request.mask_key), record=False
        )
        cleaned = await self._attempt(
            outcome, "cleanup", lambda: self.cleanup.clean(room, mask, request.request_id)
        )
        await self._attempt(
            outcome, "storage", lambda: self.storage.put_bytes(cache_key, cleaned, "image/png"),
            record=False,
        )
        outcome.cleaned_room_key = cache_key
        return cleaned

    async def _product_handle(
        self, request: PlacementRequest, outcome: PlacementOutcome
    ) -> FileHandle:
        key = request.product_key.key

        async def upload() -> FileHandle:
            payload = await self._attempt(
                outcome, "storage", lambda: self.storage.get_source(key), record=False
            )
            mime_type, _ = sniff_image(payload)
            return await self._attempt(
                outcome,
                "file_upload",
                lambda: self.generation.upload_file(
                    payload, mime_type, f"product-{request.placement_id}", request.request_id
                ),
            )

        handle, uploaded = await self.handles.ensure(key, upload)
        if uploaded:
            outcome.uploads += 1
        return handle

    async def _usable_handle(
        self, request: PlacementRequest, outcome: PlacementOutcome, handle: FileHandle
    ) -> FileHandle:
        if not handle.is_expired(self.handles.clock()):
            return handle
        if outcome.uploads:
            raise UpstreamError(
                f"File handle for {request.product_key.key} expired again after re-upload"
            )
        return await self._product_handle(request, outcome)

    async def _generate(
        self,
        request: PlacementRequest,
        outcome: PlacementOutcome,
        room: bytes,
        handle: FileHandle,
    ) -> bytes:
        room_mime, (width, height) = sniff_image(room)
        aspect_ratio = closest_aspect_ratio(width, height)
        prompt_text = request.prompt_text()

        async def generate() -> Any:
            nonlocal handle
            handle = await self._usable_handle(request, outcome, handle)
            return await self.generation.generate(
                prompt=prompt_text,
                model=request.prompt.model,
                params=request.prompt.params,
                product=ImagePart(mime_type=handle.mime_type, file_uri=handle.uri),
                room=ImagePart(mime_type=room_mime, data=room),
                aspect_ratio=aspect_ratio,
                request_id=request.request_id,
            )

        result = await self._attempt(outcome, "generation", generate)
        return result.image

    async def _store(self, request: PlacementRequest, outcome: PlacementOutcome, image: bytes) -> str:
        payload = to_jpeg(image)
        stored = await self._attempt(
            outcome,
            "storage",
            lambda: self.storage.put_bytes(request.output_key, payload, "image/jpeg"),
            record=False,
        )
        return stored.key
