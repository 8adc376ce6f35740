"""Render run orchestration.

``RenderRunController.execute`` drives a run from ``created`` to a terminal
status. Placements are fanned out to ``PlacementWorker`` tasks up to the
run's concurrency bound, and every outcome is folded back into the run by
the controller alone, so counters, totals and the waterfall have a single
writer.
"""
from __future__ import annotations

import asyncio
import copy
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog
from sqlalchemy.orm import Session

from assets.resolver import PreparedImageKey, resolve_key
from prompts.resolver import (
    PromptResolver,
    ResolvedPrompt,
    RuntimeConfig,
    load_runtime_config,
    short_hash,
)
from shared.errors import ConfigError, NotFound, RenderPipelineError
from shared.logs import emit_log
from shared.models import (
    CallStatus,
    JobStatus,
    ProductAsset,
    RenderCall,
    RenderJob,
    RenderRun,
    RunStatus,
)
from shared.pipeline import empty_totals, empty_waterfall
from telemetry.recorder import TelemetryRecorder, TelemetrySink

from .generation import FileHandle
from .handles import Clock, FileHandleRegistry, utcnow
from .placements import PlacementOutcome, PlacementRequest, PlacementWorker, RenderPolicy

logger = structlog.get_logger(__name__)

# Stored handles carry no MIME type; prepared product images are PNG cut-outs.
STORED_HANDLE_MIME = "image/png"


def prompt_variables(asset: Optional[ProductAsset]) -> Dict[str, Any]:
    if asset is None:
        return {"product": {}}
    description = asset.product_type or ""
    if asset.use_generated_prompt and asset.generated_prompt:
        description = asset.generated_prompt
    return {
        "product": {
            "type": asset.product_type or "",
            "archetype": asset.detected_archetype or "",
            "description": description,
        }
    }


def placement_instruction(
    asset: Optional[ProductAsset], spec: Mapping[str, Any]
) -> Optional[str]:
    """Pick the placement text: explicit, then the chosen variant, then the generated prompt."""

    if spec.get("instruction"):
        return spec["instruction"]
    if asset is None:
        return None
    variant_id = spec.get("variant_id")
    if variant_id:
        for variant in asset.prompt_variants or []:
            if variant.get("id") == variant_id and variant.get("prompt"):
                return variant["prompt"]
    return asset.generated_prompt or None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RenderRunController:
    """Executes a single ``RenderRun`` against the injected collaborators."""

    def __init__(
        self,
        session: Session,
        *,
        storage: Any,
        cleanup: Any,
        generation: Any,
        telemetry_sinks: Iterable[TelemetrySink] = (),
        policy: Optional[RenderPolicy] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.storage = storage
        self.cleanup = cleanup
        self.generation = generation
        self.telemetry_sinks = list(telemetry_sinks)
        self.policy = policy or RenderPolicy()
        self.clock = clock
        self._cancel_requested = False

    def cancel(self) -> None:
        """Stop launching placements; in-flight calls finish or time out."""

        self._cancel_requested = True

    def _should_stop(self, run: RenderRun) -> bool:
        if self._cancel_requested:
            return True
        self.session.refresh(run, attribute_names=["cancel_requested"])
        if run.cancel_requested:
            self._cancel_requested = True
        return self._cancel_requested

    async def execute(self, run: RenderRun) -> RenderRun:
        session = self.session
        log = logger.bind(run_id=str(run.id), trace_id=run.trace_id)
        recorder = TelemetryRecorder(run.trace_id, self.telemetry_sinks)
        wall_started = time.perf_counter()

        run.status = RunStatus.RUNNING
        run.started_at = self.clock()
        run.success_count = 0
        run.fail_count = 0
        run.timeout_count = 0
        run.waterfall_ms = empty_waterfall()
        run.run_totals = empty_totals()
        session.commit()
        jobs = list(run.jobs)
        emit_log(
            session,
            run.id,
            "Render run started",
            metadata={"trace_id": run.trace_id, "placements": len(jobs)},
        )
        log.info("render.run.start", placements=len(jobs))

        try:
            runtime, resolver, base_prompt = self._resolve_run_prompt(run, recorder)
        except (ConfigError, NotFound) as exc:
            self._abort(run, jobs, recorder, exc)
            raise

        assets = self._load_assets(run, jobs)
        payloads = self._placement_payloads(run)
        handles = FileHandleRegistry(clock=self.clock)
        keys: Dict[uuid.UUID, Optional[PreparedImageKey]] = {}
        instructions: Dict[str, Optional[str]] = {}
        for job in jobs:
            asset = assets.get(job.product_asset_id or run.product_asset_id)
            keys[job.id] = resolve_key(asset) if asset is not None else None
            instructions[job.placement_id] = placement_instruction(
                asset, payloads.get(job.placement_id, {})
            )
            if asset is not None and keys[job.id] is not None and asset.gemini_file_uri:
                expires_at = _aware(asset.gemini_file_expires_at)
                if expires_at is not None:
                    handles.seed(
                        keys[job.id].key,
                        FileHandle(
                            uri=asset.gemini_file_uri,
                            mime_type=STORED_HANDLE_MIME,
                            expires_at=expires_at,
                        ),
                    )

        snapshot = {
            "resolved_at": run.started_at.isoformat(),
            "policy": self.policy.as_dict(),
            "runtime": runtime.as_dict(),
            "prompts": {run.prompt_name: base_prompt.snapshot},
            "placements": {
                job.placement_id: {
                    "prepared_image": keys[job.id].as_dict() if keys[job.id] else None,
                    "instruction": instructions[job.placement_id],
                }
                for job in jobs
            },
        }
        run.resolved_config_snapshot = copy.deepcopy(snapshot)
        run.config_hash = short_hash(snapshot)
        session.commit()

        worker = PlacementWorker(
            storage=self.storage,
            cleanup=self.cleanup,
            generation=self.generation,
            handles=handles,
            policy=self.policy,
            clock=self.clock,
        )
        fan_out = max(1, min(self.policy.max_concurrency, runtime.max_concurrency))
        totals = empty_totals()
        queue: List[RenderJob] = list(jobs)
        pending: Set["asyncio.Task[PlacementOutcome]"] = set()
        cancelled: List[RenderJob] = []

        try:
            while queue or pending:
                while queue and len(pending) < fan_out and not self._should_stop(run):
                    job = queue.pop(0)
                    job.placement_instruction = instructions[job.placement_id]
                    request, rejected = self._build_request(
                        run, job, keys[job.id], base_prompt, resolver, recorder
                    )
                    if rejected is not None:
                        self._fold(run, job, rejected, recorder, totals)
                        continue
                    job.started_at = self.clock()
                    session.commit()
                    task = asyncio.create_task(worker.run(request), name=job.placement_id)
                    pending.add(task)

                if queue and self._should_stop(run):
                    cancelled.extend(queue)
                    queue = []
                    for job in cancelled:
                        job.status = JobStatus.CANCELLED
                        job.finished_at = self.clock()
                    session.commit()
                    emit_log(
                        session,
                        run.id,
                        "Render run cancellation requested",
                        level="warning",
                        metadata={"skipped": [job.placement_id for job in cancelled]},
                    )

                if not pending:
                    continue
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                # settled siblings are folded before a failure in the batch aborts the run
                failure: Optional[BaseException] = None
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        failure = failure or exc
                        continue
                    outcome = task.result()
                    job = next(job for job in jobs if job.id == outcome.job_id)
                    self._fold(run, job, outcome, recorder, totals)
                if failure is not None:
                    raise failure
        except Exception as exc:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if isinstance(exc, RenderPipelineError):
                error = exc
            else:
                session.rollback()
                error = RenderPipelineError(f"{type(exc).__name__}: {exc}")
            self._abort(run, jobs, recorder, error)
            raise

        recorder.record(run.trace_id, "total", int((time.perf_counter() - wall_started) * 1000))
        run.waterfall_ms = recorder.flush(run.id)
        run.telemetry_dropped = recorder.dropped
        self._write_back_handles(handles, keys, assets, jobs, run)

        if cancelled:
            run.status = RunStatus.CANCELLED
        elif run.success_count == len(jobs):
            run.status = RunStatus.COMPLETED
        else:
            run.status = RunStatus.PARTIALLY_FAILED
        run.completed_at = self.clock()
        session.commit()

        summary = {
            "status": run.status.value,
            "success": run.success_count,
            "fail": run.fail_count,
            "timeout": run.timeout_count,
            "cancelled": len(cancelled),
            "telemetry_dropped": run.telemetry_dropped,
            "waterfall_ms": dict(run.waterfall_ms),
            "totals": dict(run.run_totals),
        }
        log.info("render.run.finished", **summary)
        emit_log(session, run.id, "Render run finished", metadata=summary, final=True)
        return run

    def _resolve_run_prompt(
        self, run: RenderRun, recorder: TelemetryRecorder
    ) -> Tuple[RuntimeConfig, PromptResolver, ResolvedPrompt]:
        started = time.perf_counter()
        runtime = load_runtime_config(self.session, run.shop_id)
        resolver = PromptResolver(self.session, runtime)
        try:
            resolved = resolver.resolve(
                run.shop_id,
                run.prompt_name,
                run.prompt_overrides,
                variables=prompt_variables(run.product_asset),
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid prompt override: {exc}") from exc
        recorder.record(run.trace_id, "prompt_build", int((time.perf_counter() - started) * 1000))
        return runtime, resolver, resolved

    def _load_assets(
        self, run: RenderRun, jobs: List[RenderJob]
    ) -> Dict[uuid.UUID, ProductAsset]:
        ids = {job.product_asset_id for job in jobs if job.product_asset_id}
        if run.product_asset_id:
            ids.add(run.product_asset_id)
        assets: Dict[uuid.UUID, ProductAsset] = {}
        for asset_id in ids:
            asset = self.session.get(ProductAsset, asset_id)
            if asset is not None:
                assets[asset_id] = asset
        return assets

    @staticmethod
    def _placement_payloads(run: RenderRun) -> Dict[str, Mapping[str, Any]]:
        placements = (run.request_payload or {}).get("placements") or []
        return {item["placement_id"]: item for item in placements if "placement_id" in item}

    def _build_request(
        self,
        run: RenderRun,
        job: RenderJob,
        key: Optional[PreparedImageKey],
        base_prompt: ResolvedPrompt,
        resolver: PromptResolver,
        recorder: TelemetryRecorder,
    ) -> Tuple[Optional[PlacementRequest], Optional[PlacementOutcome]]:
        if key is None:
            error = NotFound(f"Placement {job.placement_id} has no prepared product image")
            return None, PlacementOutcome.failed(job.id, job.placement_id, error, self.clock())
        job.prepared_image_key = key.key
        job.prepared_image_version = key.version

        prompt = base_prompt
        if job.prompt_overrides:
            started = time.perf_counter()
            overrides = {**(run.prompt_overrides or {}), **job.prompt_overrides}
            try:
                prompt = resolver.resolve(
                    run.shop_id,
                    run.prompt_name,
                    overrides,
                    variables=base_prompt.snapshot.get("variables"),
                )
            except (NotFound, ValueError) as exc:
                error = (
                    exc
                    if isinstance(exc, NotFound)
                    else ConfigError(f"Invalid prompt override: {exc}")
                )
                return None, PlacementOutcome.failed(job.id, job.placement_id, error, self.clock())
            finally:
                recorder.record(
                    run.trace_id, "prompt_build", int((time.perf_counter() - started) * 1000)
                )
            job.prompt_snapshot = prompt.snapshot

        request = PlacementRequest(
            run_id=run.id,
            job_id=job.id,
            placement_id=job.placement_id,
            trace_id=run.trace_id,
            room_image_key=job.room_image_key,
            product_key=key,
            prompt=prompt,
            mask_key=job.mask_key,
            cleaned_room_key=job.cleaned_room_key,
            instruction=job.placement_instruction,
        )
        return request, None

    def _fold(
        self,
        run: RenderRun,
        job: RenderJob,
        outcome: PlacementOutcome,
        recorder: TelemetryRecorder,
        totals: Dict[str, Any],
    ) -> None:
        session = self.session
        job.status = outcome.status
        job.retry_count = outcome.retry_count
        job.image_key = outcome.image_key
        job.cleaned_room_key = outcome.cleaned_room_key
        job.tokens_in = outcome.tokens_in
        job.tokens_out = outcome.tokens_out
        job.cost_estimate = round(outcome.cost_estimate, 6)
        job.error_code = outcome.error_code
        job.error_message = outcome.error_message
        job.started_at = job.started_at or outcome.started_at
        job.finished_at = outcome.finished_at
        job.latency_ms = sum(outcome.stage_ms.values())

        if outcome.status == JobStatus.SUCCESS:
            run.success_count += 1
        elif outcome.status == JobStatus.TIMEOUT:
            run.timeout_count += 1
        else:
            run.fail_count += 1

        for call in outcome.calls:
            session.add(
                RenderCall(
                    id=uuid.uuid4(),
                    run_id=run.id,
                    job_id=job.id,
                    service=call.service,
                    attempt=call.attempt,
                    status=call.status,
                    latency_ms=call.latency_ms,
                    tokens_in=call.tokens_in,
                    tokens_out=call.tokens_out,
                    cost_estimate=call.cost_estimate,
                    error_message=call.error_message,
                )
            )
            totals["calls_total"] += 1
            if call.status != CallStatus.SUCCEEDED:
                totals["calls_failed"] += 1
        totals["tokens_in"] += outcome.tokens_in
        totals["tokens_out"] += outcome.tokens_out
        totals["cost_estimate"] = round(totals["cost_estimate"] + outcome.cost_estimate, 6)
        run.run_totals = dict(totals)

        for stage, duration_ms in outcome.stage_ms.items():
            recorder.record(run.trace_id, stage, duration_ms)
        recorder.record_outcome(outcome.status.value)
        run.waterfall_ms = dict(recorder.waterfall_ms)
        run.telemetry_dropped = recorder.dropped
        session.commit()

        emit_log(
            session,
            run.id,
            f"Placement {job.placement_id} finished: {outcome.status.value}",
            level="info" if outcome.status == JobStatus.SUCCESS else "warning",
            metadata={
                "placement_id": job.placement_id,
                "status": outcome.status.value,
                "retry_count": outcome.retry_count,
                "image_key": outcome.image_key,
                "error_code": outcome.error_code,
                "error": outcome.error_message,
            },
        )

    def _write_back_handles(
        self,
        handles: FileHandleRegistry,
        keys: Mapping[uuid.UUID, Optional[PreparedImageKey]],
        assets: Mapping[uuid.UUID, ProductAsset],
        jobs: List[RenderJob],
        run: RenderRun,
    ) -> None:
        for job in jobs:
            key = keys.get(job.id)
            handle = handles.refreshed.get(key.key) if key else None
            asset = assets.get(job.product_asset_id or run.product_asset_id)
            if handle is None or asset is None:
                continue
            asset.gemini_file_uri = handle.uri
            asset.gemini_file_expires_at = handle.expires_at
            asset.updated_at = self.clock()

    def _abort(
        self,
        run: RenderRun,
        jobs: List[RenderJob],
        recorder: TelemetryRecorder,
        error: RenderPipelineError,
    ) -> None:
        for job in jobs:
            if job.finished_at is None:
                job.status = JobStatus.CANCELLED
                job.finished_at = self.clock()
        run.status = RunStatus.FAILED
        run.error_message = f"{error.code}: {error}"
        run.waterfall_ms = recorder.flush(run.id)
        run.telemetry_dropped = recorder.dropped
        run.completed_at = self.clock()
        self.session.commit()
        logger.error("render.run.aborted", run_id=str(run.id), error=str(error), code=error.code)
        emit_log(
            self.session,
            run.id,
            "Render run aborted",
            level="error",
            metadata={"error_code": error.code, "error": str(error)},
            final=True,
        )
