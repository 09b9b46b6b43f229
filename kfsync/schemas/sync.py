from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TriggerResponse(_CamelModel):
    started: bool
    reason: str | None = None
    run_id: str | None = Field(default=None, alias="runId")


class ItemProgressResponse(BaseModel):
    done: int
    total: int


class SyncStatusResponse(_CamelModel):
    is_running: bool = Field(alias="isRunning")
    started_at: float | None = Field(default=None, alias="startedAt")
    stage: str
    items: dict[str, ItemProgressResponse]
    counts: dict[str, int] | None = None
    last_error: str | None = Field(default=None, alias="lastError")
    last_run: float | None = Field(default=None, alias="lastRun")


class RunLogEntry(BaseModel):
    ts: datetime
    level: str
    message: str
    stage: str | None = None
    meta: dict[str, Any] | None = None


class RunSummaryResponse(_CamelModel):
    id: str
    status: str
    started_at: datetime = Field(alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")
    requested_by: str | None = Field(default=None, alias="requestedBy")
    summary: dict[str, Any] | None = None
    error: str | None = None


class RunDetailResponse(RunSummaryResponse):
    logs: list[RunLogEntry] = []


class DedupResponse(_CamelModel):
    dry_run: bool = Field(alias="dryRun")
    collections: list[dict[str, Any]]
    total_groups: int = Field(alias="totalGroups")
    total_deleted: int = Field(alias="totalDeleted")
    total_backfilled: int = Field(alias="totalBackfilled")
    actions: list[dict[str, Any]]
