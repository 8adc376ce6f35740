from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from prompts.library import COMPOSITE_PROMPT
from prompts.resolver import PromptOverride
from shared.models import JobStatus, RunStatus

PromptOverrides = Dict[str, Dict[str, Any]]


def _check_overrides(value: Optional[PromptOverrides]) -> Optional[PromptOverrides]:
    for override in (value or {}).values():
        PromptOverride.from_mapping(override)
    return value


class PlacementSpec(BaseModel):
    placement_id: str = Field(..., min_length=1, max_length=64)
    room_image_key: str = Field(..., min_length=1)
    mask_key: Optional[str] = None
    cleaned_room_key: Optional[str] = None
    product_asset_id: Optional[UUID] = None
    variant_id: Optional[str] = None
    instruction: Optional[str] = None
    prompt_overrides: Optional[PromptOverrides] = None

    @field_validator("prompt_overrides")
    @classmethod
    def overrides_valid(cls, value: Optional[PromptOverrides]) -> Optional[PromptOverrides]:
        return _check_overrides(value)


class RunCreateRequest(BaseModel):
    shop_id: str = Field(..., min_length=1, max_length=64)
    product_asset_id: UUID
    prompt_name: str = COMPOSITE_PROMPT
    placements: List[PlacementSpec] = Field(..., min_length=1)
    prompt_overrides: Optional[PromptOverrides] = None

    @field_validator("prompt_overrides")
    @classmethod
    def overrides_valid(cls, value: Optional[PromptOverrides]) -> Optional[PromptOverrides]:
        return _check_overrides(value)

    @field_validator("placements")
    @classmethod
    def placement_ids_unique(cls, value: List[PlacementSpec]) -> List[PlacementSpec]:
        ids = [placement.placement_id for placement in value]
        if len(ids) != len(set(ids)):
            raise ValueError("placement_id values must be unique within a run")
        return value


class RenderJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    placement_id: str
    status: JobStatus
    retry_count: int
    image_key: Optional[str] = None
    cleaned_room_key: Optional[str] = None
    prepared_image_key: Optional[str] = None
    prepared_image_version: Optional[int] = None
    latency_ms: Optional[int] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: float = 0.0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    shop_id: str
    trace_id: str
    status: RunStatus
    prompt_name: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    success_count: int = 0
    fail_count: int = 0
    timeout_count: int = 0
    telemetry_dropped: bool = False
    cancel_requested: bool = False
    waterfall_ms: Dict[str, int] = Field(default_factory=dict)
    run_totals: Dict[str, Any] = Field(default_factory=dict)
    config_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    jobs: List[RenderJobResponse] = Field(default_factory=list)
