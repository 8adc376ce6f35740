from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


class ResolvedPromptDetail(BaseModel):
    shop_id: str
    prompt_name: str
    scope: str
    version: Optional[int] = None
    version_id: Optional[str] = None
    template_hash: str
    resolution_hash: str
    model: str
    params: Dict[str, Any] = Field(default_factory=dict)
    templates: Dict[str, Optional[str]] = Field(default_factory=dict)
    messages: List[Dict[str, str]] = Field(default_factory=list)
    text: str


class ResolvedPromptEnvelope(BaseModel):
    success: bool = True
    data: ResolvedPromptDetail
