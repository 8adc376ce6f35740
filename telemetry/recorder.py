"""Run-scoped telemetry: waterfall timings, outcome tallies and metric sinks."""
from __future__ import annotations

import uuid
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter as PrometheusCounter, Histogram
from prometheus_client import push_to_gateway

from shared.errors import TelemetryError
from shared.pipeline import empty_waterfall

logger = structlog.get_logger(__name__)


class TelemetrySink:
    """Destination for telemetry emitted during a run."""

    def record_stage(self, trace_id: str, stage: str, duration_ms: int) -> None:
        raise NotImplementedError

    def record_outcome(self, trace_id: str, outcome: str) -> None:
        raise NotImplementedError

    def flush(self, run_id: uuid.UUID) -> None:
        raise NotImplementedError


class PrometheusTelemetrySink(TelemetrySink):
    """Prometheus metrics, optionally pushed to a Pushgateway on flush."""

    def __init__(self, namespace: str, pushgateway_url: Optional[str] = None) -> None:
        self.namespace = namespace
        self.pushgateway_url = pushgateway_url
        self.registry = CollectorRegistry()
        self.stage_duration = Histogram(
            "render_stage_duration_seconds",
            "Duration of render pipeline stages.",
            ["stage"],
            namespace=namespace,
            registry=self.registry,
        )
        self.placements = PrometheusCounter(
            "render_placements",
            "Placement outcomes partitioned by terminal status.",
            ["outcome"],
            namespace=namespace,
            registry=self.registry,
        )

    def record_stage(self, trace_id: str, stage: str, duration_ms: int) -> None:
        self.stage_duration.labels(stage=stage).observe(duration_ms / 1000.0)

    def record_outcome(self, trace_id: str, outcome: str) -> None:
        self.placements.labels(outcome=outcome).inc()

    def flush(self, run_id: uuid.UUID) -> None:
        if not self.pushgateway_url:
            return
        try:
            push_to_gateway(
                self.pushgateway_url,
                job=f"{self.namespace}_render",
                registry=self.registry,
                grouping_key={"run_id": str(run_id)},
            )
        except OSError as exc:
            raise TelemetryError(f"Pushgateway unreachable: {exc}") from exc


class TelemetryRecorder:
    """Collects a single run's telemetry.

    Sink failures never reach the caller: the recorder logs them, marks
    itself ``dropped`` and keeps accumulating locally so the run can still
    persist its waterfall.
    """

    def __init__(self, trace_id: str, sinks: Optional[Iterable[TelemetrySink]] = None) -> None:
        self.trace_id = trace_id
        self.sinks: List[TelemetrySink] = list(sinks or [])
        self.waterfall_ms: Dict[str, int] = empty_waterfall()
        self.tallies: Counter[str] = Counter()
        self.dropped = False

    def _deliver(self, action: str, send: Callable[[TelemetrySink], None]) -> None:
        for sink in self.sinks:
            try:
                send(sink)
            except Exception as exc:  # telemetry must never fail a render
                self.dropped = True
                logger.warning(
                    "telemetry.dropped",
                    trace_id=self.trace_id,
                    action=action,
                    sink=type(sink).__name__,
                    error=str(exc),
                )

    def record(self, trace_id: str, stage: str, duration_ms: int) -> None:
        duration_ms = max(int(duration_ms), 0)
        self.waterfall_ms[stage] = self.waterfall_ms.get(stage, 0) + duration_ms
        self._deliver("record", lambda sink: sink.record_stage(trace_id, stage, duration_ms))

    def record_outcome(self, outcome: str) -> None:
        self.tallies[outcome] += 1
        self._deliver("outcome", lambda sink: sink.record_outcome(self.trace_id, outcome))

    def flush(self, run_id: uuid.UUID) -> Dict[str, int]:
        self._deliver("flush", lambda sink: sink.flush(run_id))
        return dict(self.waterfall_ms)
