from __future__ import annotations

import sys
import uuid
from pathlib import Path
from typing import List, Tuple

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from shared.errors import TelemetryError
from telemetry.recorder import PrometheusTelemetrySink, TelemetryRecorder, TelemetrySink


class ListSink(TelemetrySink):
    def __init__(self) -> None:
        self.stages: List[Tuple[str, str, int]] = []
        self.outcomes: List[str] = []
        self.flushed: List[uuid.UUID] = []

    def record_stage(self, trace_id: str, stage: str, duration_ms: int) -> None:
        self.stages.append((trace_id, stage, duration_ms))

    def record_outcome(self, trace_id: str, outcome: str) -> None:
        self.outcomes.append(outcome)

    def flush(self, run_id: uuid.UUID) -> None:
        self.flushed.append(run_id)


class UnreachableSink(TelemetrySink):
    def record_stage(self, trace_id: str, stage: str, duration_ms: int) -> None:
        raise TelemetryError("collector offline")

    def record_outcome(self, trace_id: str, outcome: str) -> None:
        raise TelemetryError("collector offline")

    def flush(self, run_id: uuid.UUID) -> None:
        raise ConnectionRefusedError("collector offline")


def test_record_accumulates_waterfall_per_stage() -> None:
    sink = ListSink()
    recorder = TelemetryRecorder("trace-1", [sink])

    recorder.record("trace-1", "download", 120)
    recorder.record("trace-1", "download", 30)
    recorder.record("trace-1", "inference", 900)
    recorder.record("trace-1", "upload", -5)

    run_id = uuid.uuid4()
    waterfall = recorder.flush(run_id)

    assert waterfall == {
        "download": 150,
        "prompt_build": 0,
        "inference": 900,
        "upload": 0,
        "total": 0,
    }
    assert sink.stages[0] == ("trace-1", "download", 120)
    assert sink.flushed == [run_id]
    assert recorder.dropped is False


def test_unreachable_sink_sets_dropped_and_keeps_local_state() -> None:
    healthy = ListSink()
    recorder = TelemetryRecorder("trace-2", [UnreachableSink(), healthy])

    recorder.record("trace-2", "inference", 400)
    recorder.record_outcome("success")
    waterfall = recorder.flush(uuid.uuid4())

    assert recorder.dropped is True
    assert waterfall["inference"] == 400
    assert recorder.tallies["success"] == 1
    assert healthy.outcomes == ["success"]


def test_prometheus_sink_observes_stage_and_outcome() -> None:
    sink = PrometheusTelemetrySink("roomrender_test")

    sink.record_stage("trace-3", "inference", 1500)
    sink.record_outcome("trace-3", "timeout")
    sink.record_outcome("trace-3", "timeout")
    sink.flush(uuid.uuid4())

    registry = sink.registry
    assert registry.get_sample_value(
        "roomrender_test_render_stage_duration_seconds_sum", {"stage": "inference"}
    ) == 1.5
    assert registry.get_sample_value(
        "roomrender_test_render_placements_total", {"outcome": "timeout"}
    ) == 2.0


def test_pushgateway_failure_is_flagged_as_dropped() -> None:
    sink = PrometheusTelemetrySink("roomrender_push", pushgateway_url="http://127.0.0.1:9")
    recorder = TelemetryRecorder("trace-4", [sink])

    recorder.record("trace-4", "total", 10)
    recorder.flush(uuid.uuid4())

    assert recorder.dropped is True
