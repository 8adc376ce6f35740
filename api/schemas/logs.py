from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RunLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    run_id: UUID
    created_at: datetime
    level: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="data")


class RunLogListResponse(BaseModel):
    logs: List[RunLogEntry] = Field(default_factory=list)
    next_cursor: Optional[UUID] = None
