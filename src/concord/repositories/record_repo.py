"""Reconciled record repository.

Methods flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from concord.models.record import ReconciledRecord


class RecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str | None, record_type: str, natural_key: str) -> ReconciledRecord | None:
        result = await self.session.execute(
            select(ReconciledRecord)
            .where(ReconciledRecord.tenant_id.is_not_distinct_from(tenant_id))
            .where(ReconciledRecord.record_type == record_type)
            .where(ReconciledRecord.natural_key == natural_key)
        )
        return result.scalar_one_or_none()

    async def insert(
        self,
        tenant_id: str | None,
        record_type: str,
        natural_key: str,
        fields: dict[str, Any],
        run_id: str | None = None,
    ) -> ReconciledRecord:
        record = ReconciledRecord(
            tenant_id=tenant_id,
            record_type=record_type,
            natural_key=natural_key,
            fields=dict(fields),
            created_run_id=run_id,
            updated_run_id=run_id,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def update_fields(
        self,
        record: ReconciledRecord,
        changes: dict[str, Any],
        run_id: str | None = None,
    ) -> ReconciledRecord:
        # New dict so the JSON column registers the change
        record.fields = {**(record.fields or {}), **changes}
        record.updated_run_id = run_id
        await self.session.flush()
        return record

    async def list_by_type(self, tenant_id: str | None, record_type: str) -> list[ReconciledRecord]:
        result = await self.session.execute(
            select(ReconciledRecord)
            .where(ReconciledRecord.tenant_id.is_not_distinct_from(tenant_id))
            .where(ReconciledRecord.record_type == record_type)
            .order_by(ReconciledRecord.natural_key)
        )
        return list(result.scalars().all())
