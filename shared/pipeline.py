"""Stage names used for waterfall timings of a render run."""
from __future__ import annotations

from typing import Dict, List

WATERFALL_STAGES: List[str] = [
    "download",
    "prompt_build",
    "inference",
    "upload",
    "total",
]


def empty_waterfall() -> Dict[str, int]:
    return {stage: 0 for stage in WATERFALL_STAGES}


def empty_totals() -> Dict[str, float]:
    return {
        "tokens_in": 0,
        "tokens_out": 0,
        "cost_estimate": 0.0,
        "calls_total": 0,
        "calls_failed": 0,
    }
