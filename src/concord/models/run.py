"""Automation run model — durable record of every reconciliation pass."""

import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from concord.core.database import Base
import enum


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED.value, RunStatus.FAILED.value})

SYSTEM_SCOPE = "system"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def slot_scope(tenant_id: str | None) -> str:
    """Exclusivity scope for a tenant; null-tenant runs share the system scope."""
    return SYSTEM_SCOPE if tenant_id is None else f"tenant:{tenant_id}"


class AutomationRun(Base):
    __tablename__ = "automation_runs"
    __table_args__ = (Index("ix_automation_runs_tenant_started", "tenant_id", "started_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    trigger: Mapped[str] = mapped_column(String(20), default=RunTrigger.SCHEDULED.value)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RunSlot(Base):
    """One row per active run; the primary key is the per-tenant run lock."""

    __tablename__ = "automation_run_slots"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("automation_runs.id"), nullable=False, unique=True
    )
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
