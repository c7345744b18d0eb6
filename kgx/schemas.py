from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MODEL_VARIANT = "gemini-3-pro"
DEFAULT_MAX_RETRIES = 3


class KGXBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EntityType(str, Enum):
    stock = "Stock"
    industry = "Industry"


class TaskStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled})


class LogLevel(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_timestamp(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_text(value: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError("must be non-empty")
    return text


class NewTask(KGXBaseModel):
    entity_type: EntityType
    entity_id: int
    entity_name: str
    prompt_text: str
    model_variant: str = DEFAULT_MODEL_VARIANT
    priority: int = 0
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    @field_validator("entity_name", "prompt_text", "model_variant")
    @classmethod
    def validate_non_empty_text(cls, value: str) -> str:
        return _require_text(value)


class Task(KGXBaseModel):
    id: int
    entity_type: EntityType
    entity_id: int
    entity_name: str
    prompt_text: str
    model_variant: str = DEFAULT_MODEL_VARIANT
    status: TaskStatus = TaskStatus.queued
    assigned_account_id: int | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    priority: int = 0
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class NewAccount(KGXBaseModel):
    display_name: str
    email: str
    encrypted_credential: str

    @field_validator("display_name", "email", "encrypted_credential")
    @classmethod
    def validate_non_empty_text(cls, value: str) -> str:
        return _require_text(value)


class Account(KGXBaseModel):
    id: int
    display_name: str
    email: str
    encrypted_credential: str
    persisted_session: str | None = None
    is_active: bool = True
    is_in_use: bool = False
    holder_task_id: int | None = None
    rate_limited_until: datetime | None = None
    last_used_at: datetime | None = None
    total_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    def is_available(self, now: datetime) -> bool:
        if not self.is_active or self.is_in_use:
            return False
        deadline = normalize_timestamp(self.rate_limited_until)
        if deadline is None:
            return True
        return deadline <= normalize_timestamp(now)


class NewStock(KGXBaseModel):
    symbol: str
    company_name: str | None = None
    industry: str | None = None
    status: str = "pending"

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return _require_text(value).upper()


class Stock(NewStock):
    id: int
    created_at: datetime
    updated_at: datetime


class NewIndustry(KGXBaseModel):
    industry_name: str
    sector: str | None = None
    status: str = "pending"

    @field_validator("industry_name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _require_text(value)


class Industry(NewIndustry):
    id: int
    created_at: datetime
    updated_at: datetime


class KnowledgeGraphRecord(KGXBaseModel):
    id: int
    entity_type: EntityType
    entity_id: int
    entity_name: str
    source_task_id: int
    raw_json: Any
    model_used: str
    account_used: int
    extracted_at: datetime


class LogEvent(KGXBaseModel):
    id: int | None = None
    level: LogLevel
    message: str
    task_id: int | None = None
    account_id: int | None = None
    entity_type: EntityType | None = None
    entity_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
