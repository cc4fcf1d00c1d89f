"""Persisted state that candidates are compared against."""

import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from concord.core.database import Base
from concord.models.run import utcnow


class ReconciledRecord(Base):
    __tablename__ = "reconciled_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "record_type", "natural_key", name="uq_reconciled_record_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    record_type: Mapped[str] = mapped_column(String(80), nullable=False)
    natural_key: Mapped[str] = mapped_column(String(255), nullable=False)
    fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
