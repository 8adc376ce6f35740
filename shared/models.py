"""Database models read and written by the render pipeline."""
from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()

SYSTEM_SCOPE = "SYSTEM"


class RunStatus(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAIL = "fail"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class CallStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"


class PromptVersionStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(UTC)


class Shop(Base):
    __tablename__ = "shops"

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_domain = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ShopRuntimeConfig(Base):
    __tablename__ = "shop_runtime_configs"

    shop_id = Column(String(64), primary_key=True)
    max_concurrency = Column(Integer, default=5, nullable=False)
    model_allow_list = Column(JSON, default=list, nullable=False)
    max_tokens_output_cap = Column(Integer, default=8192, nullable=False)
    disabled_prompt_names = Column(JSON, default=list, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ProductAsset(Base):
    __tablename__ = "product_assets"

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(128), nullable=False)
    source_image_url = Column(Text)
    prepared_image_key = Column(String(512))
    prepared_image_url = Column(Text)
    prepared_product_image_version = Column(Integer)
    product_type = Column(String(128))
    detected_archetype = Column(String(128))
    generated_prompt = Column(Text)
    prompt_variants = Column(JSON, default=list, nullable=False)
    use_generated_prompt = Column(Boolean, default=False, nullable=False)
    gemini_file_uri = Column(String(512))
    gemini_file_expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SavedRoomOwner(Base):
    __tablename__ = "saved_room_owners"
    __table_args__ = (UniqueConstraint("shop_id", "email", name="uq_room_owner_shop_email"),)

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False)
    email = Column(String(320), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    rooms = relationship("SavedRoom", back_populates="owner")


class SavedRoom(Base):
    __tablename__ = "saved_rooms"

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("saved_room_owners.id"), nullable=False)
    title = Column(String(255))
    original_image_key = Column(String(512), nullable=False)
    cleaned_image_key = Column(String(512))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    owner = relationship("SavedRoomOwner", back_populates="rooms")


class PromptDefinition(Base):
    __tablename__ = "prompt_definitions"
    __table_args__ = (UniqueConstraint("shop_id", "name", name="uq_prompt_shop_name"),)

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False)
    name = Column(String(128), nullable=False)
    description = Column(Text, default="")
    default_model = Column(String(128), nullable=False)
    default_params = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    versions = relationship(
        "PromptVersion", back_populates="definition", cascade="all, delete-orphan"
    )


class PromptVersion(Base):
    __tablename__ = "prompt_versions"

    id = Column(UUID(as_uuid=True), primary_key=True)
    definition_id = Column(UUID(as_uuid=True), ForeignKey("prompt_definitions.id"), nullable=False)
    version = Column(Integer, nullable=False)
    status = Column(Enum(PromptVersionStatus), default=PromptVersionStatus.DRAFT, nullable=False)
    system_template = Column(Text)
    developer_template = Column(Text)
    user_template = Column(Text)
    model = Column(String(128))
    params = Column(JSON, default=dict, nullable=False)
    template_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    definition = relationship("PromptDefinition", back_populates="versions")


class PromptAuditLog(Base):
    __tablename__ = "prompt_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False)
    actor = Column(String(320), nullable=False)
    action = Column(String(64), nullable=False)
    target_type = Column(String(64), nullable=False)
    target_id = Column(String(64), nullable=False)
    before = Column(JSON)
    after = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class RenderRun(Base):
    __tablename__ = "render_runs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    shop_id = Column(String(64), nullable=False, index=True)
    product_asset_id = Column(UUID(as_uuid=True), ForeignKey("product_assets.id"))
    trace_id = Column(String(64), nullable=False, index=True)
    status = Column(Enum(RunStatus), default=RunStatus.CREATED, nullable=False)
    prompt_name = Column(String(128), nullable=False)
    request_payload = Column(JSON, default=dict, nullable=False)
    prompt_overrides = Column(JSON)
    resolved_config_snapshot = Column(JSON)
    config_hash = Column(String(64))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    success_count = Column(Integer, default=0, nullable=False)
    fail_count = Column(Integer, default=0, nullable=False)
    timeout_count = Column(Integer, default=0, nullable=False)
    telemetry_dropped = Column(Boolean, default=False, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    waterfall_ms = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    run_totals = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    product_asset = relationship("ProductAsset")
    jobs = relationship(
        "RenderJob",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RenderJob.placement_id",
    )
    calls = relationship("RenderCall", back_populates="run", cascade="all, delete-orphan")
    logs = relationship("RunLog", back_populates="run", cascade="all, delete-orphan")


class RenderJob(Base):
    __tablename__ = "render_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("render_runs.id"), nullable=False)
    placement_id = Column(String(64), nullable=False)
    product_asset_id = Column(UUID(as_uuid=True), ForeignKey("product_assets.id"))
    room_image_key = Column(String(512), nullable=False)
    mask_key = Column(String(512))
    cleaned_room_key = Column(String(512))
    placement_instruction = Column(Text)
    prepared_image_key = Column(Text)
    prepared_image_version = Column(Integer)
    image_key = Column(String(512))
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    prompt_overrides = Column(JSON)
    prompt_snapshot = Column(JSON)
    latency_ms = Column(Integer)
    tokens_in = Column(Integer, default=0, nullable=False)
    tokens_out = Column(Integer, default=0, nullable=False)
    cost_estimate = Column(Float, default=0.0, nullable=False)
    error_code = Column(String(64))
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    run = relationship("RenderRun", back_populates="jobs")


class RenderCall(Base):
    __tablename__ = "render_calls"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("render_runs.id"), nullable=False)
    job_id = Column(UUID(as_uuid=True), ForeignKey("render_jobs.id"))
    service = Column(String(32), nullable=False)
    attempt = Column(Integer, default=0, nullable=False)
    status = Column(Enum(CallStatus), nullable=False)
    latency_ms = Column(Integer, default=0, nullable=False)
    tokens_in = Column(Integer, default=0, nullable=False)
    tokens_out = Column(Integer, default=0, nullable=False)
    cost_estimate = Column(Float, default=0.0, nullable=False)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    run = relationship("RenderRun", back_populates="calls")


class RunLog(Base):
    __tablename__ = "run_logs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("render_runs.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    level = Column(String(16), default="info", nullable=False)
    message = Column(Text, nullable=False)
    data = Column("metadata", JSON, default=dict, nullable=False)

    run = relationship("RenderRun", back_populates="logs")
