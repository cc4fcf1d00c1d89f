"""Pydantic schemas for automation runs."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class RunCreate(BaseModel):
    trigger: Literal["manual", "scheduled"] = "manual"
    wait: bool = False


class RunResponse(BaseModel):
    id: str
    tenant_id: str | None
    trigger: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    heartbeat_at: datetime | None
    cancel_requested_at: datetime | None
    processed_count: int
    created_count: int
    updated_count: int
    skipped_count: int
    error_count: int
    details: dict | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RunListResponse(BaseModel):
    runs: list[RunResponse]
    total: int
    limit: int
    offset: int


class RunStatusResponse(BaseModel):
    tenant_id: str | None
    scope: str
    active_run: RunResponse | None
    last_run: RunResponse | None
    recent_runs: list[RunResponse]
    total_runs: int
    counts: dict[str, int]


class CancelResponse(BaseModel):
    run_id: str
    cancel_requested: bool


class SweepResponse(BaseModel):
    failed_run_ids: list[str]
