"""Automation run repository — the durable run record store.

Every public method is one atomic unit: it commits (or rolls back) before it
returns. Rows are only ever updated while still ``running``, so terminal runs
are frozen.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, NamedTuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from concord.engine.errors import RunAlreadyActive
from concord.models.run import AutomationRun, RunSlot, RunStatus, slot_scope, utcnow


class FlushAck(NamedTuple):
    running: bool
    cancel_requested: bool


def _tenant_filter(tenant_id: str | None):
    if tenant_id is None:
        return AutomationRun.tenant_id.is_(None)
    return AutomationRun.tenant_id == tenant_id


class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def try_acquire_run_slot(self, run: AutomationRun) -> bool:
        """Insert the run together with its scope slot.

        Returns False, leaving nothing behind, when another run already holds
        the slot for the same tenant.
        """
        slot = RunSlot(scope=slot_scope(run.tenant_id), run_id=run.id)
        self.session.add_all([run, slot])
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        await self.session.refresh(run)
        return True

    async def create_if_no_active_run(self, tenant_id: str | None, trigger: str) -> AutomationRun:
        now = utcnow()
        run = AutomationRun(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            trigger=trigger,
            status=RunStatus.RUNNING.value,
            started_at=now,
            heartbeat_at=now,
            processed_count=0,
            created_count=0,
            updated_count=0,
            skipped_count=0,
            error_count=0,
        )
        if not await self.try_acquire_run_slot(run):
            active = await self.get_active_run(tenant_id)
            raise RunAlreadyActive(tenant_id, active.id if active else None)
        return run

    async def get_by_id(self, id: str) -> AutomationRun | None:
        result = await self.session.execute(select(AutomationRun).where(AutomationRun.id == id))
        return result.scalar_one_or_none()

    async def get_active_run(self, tenant_id: str | None) -> AutomationRun | None:
        result = await self.session.execute(
            select(AutomationRun)
            .join(RunSlot, RunSlot.run_id == AutomationRun.id)
            .where(RunSlot.scope == slot_scope(tenant_id))
        )
        return result.scalar_one_or_none()

    async def get_last_completed(self, tenant_id: str | None) -> AutomationRun | None:
        result = await self.session.execute(
            select(AutomationRun)
            .where(_tenant_filter(tenant_id))
            .where(AutomationRun.status == RunStatus.COMPLETED.value)
            .order_by(AutomationRun.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_runs(
        self,
        tenant_id: str | None,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
    ) -> tuple[list[AutomationRun], int]:
        """Page through a tenant's runs, newest first. Returns (page, total)."""
        filters = [_tenant_filter(tenant_id)]
        if status:
            filters.append(AutomationRun.status == status)

        total = await self.session.scalar(
            select(func.count(AutomationRun.id)).where(*filters)
        )
        result = await self.session.execute(
            select(AutomationRun)
            .where(*filters)
            .order_by(AutomationRun.started_at.desc(), AutomationRun.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def count_by_status(self, tenant_id: str | None) -> dict[str, int]:
        result = await self.session.execute(
            select(AutomationRun.status, func.count(AutomationRun.id))
            .where(_tenant_filter(tenant_id))
            .group_by(AutomationRun.status)
        )
        return {status: count for status, count in result.all()}

    async def update_counters(self, run_id: str, counters: dict[str, int]) -> FlushAck:
        """Persist interim counters and heartbeat.

        The ack tells the owner whether the run is still ``running`` (the
        stale sweep may have failed it) and whether an external cancel has
        been requested.
        """
        result = await self.session.execute(
            update(AutomationRun)
            .where(AutomationRun.id == run_id)
            .where(AutomationRun.status == RunStatus.RUNNING.value)
            .values(heartbeat_at=utcnow(), **counters)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount == 0:
            return FlushAck(running=False, cancel_requested=False)
        requested = await self.session.scalar(
            select(AutomationRun.cancel_requested_at).where(AutomationRun.id == run_id)
        )
        return FlushAck(running=True, cancel_requested=requested is not None)

    async def finalize_run(
        self,
        run_id: str,
        status: str,
        counters: dict[str, int],
        details: dict | None,
    ) -> bool:
        """Move a running run to a terminal status and release its slot.

        Returns False when the run was no longer running (already finalized,
        e.g. by the stale sweep); nothing is written in that case.
        """
        if status not in (RunStatus.COMPLETED.value, RunStatus.FAILED.value):
            raise ValueError(f"Not a terminal run status: {status}")

        result = await self.session.execute(
            update(AutomationRun)
            .where(AutomationRun.id == run_id)
            .where(AutomationRun.status == RunStatus.RUNNING.value)
            .values(status=status, completed_at=utcnow(), details=details, **counters)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Nothing was written; end the transaction without expiring loaded rows
            await self.session.commit()
            return False
        await self.session.execute(
            delete(RunSlot).where(RunSlot.run_id == run_id).execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return True

    async def request_cancel(self, run_id: str) -> bool:
        result = await self.session.execute(
            update(AutomationRun)
            .where(AutomationRun.id == run_id)
            .where(AutomationRun.status == RunStatus.RUNNING.value)
            .where(AutomationRun.cancel_requested_at.is_(None))
            .values(cancel_requested_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def fail_stale_runs(
        self,
        cutoff: datetime,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        """Fail running runs with no heartbeat since ``cutoff``; returns their ids."""
        excluded = list(exclude)
        query = (
            select(AutomationRun)
            .where(AutomationRun.status == RunStatus.RUNNING.value)
            .where(
                or_(
                    AutomationRun.heartbeat_at < cutoff,
                    AutomationRun.heartbeat_at.is_(None) & (AutomationRun.started_at < cutoff),
                )
            )
        )
        if excluded:
            query = query.where(AutomationRun.id.not_in(excluded))
        stale = list((await self.session.execute(query)).scalars().all())

        failed: list[str] = []
        for run in stale:
            details = {**(run.details or {}), "reason": "stale", "error": "No heartbeat observed before the staleness cutoff"}
            result = await self.session.execute(
                update(AutomationRun)
                .where(AutomationRun.id == run.id)
                .where(AutomationRun.status == RunStatus.RUNNING.value)
                .values(status=RunStatus.FAILED.value, completed_at=utcnow(), details=details)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await self.session.execute(
                    delete(RunSlot).where(RunSlot.run_id == run.id).execution_options(synchronize_session=False)
                )
                failed.append(run.id)
        await self.session.commit()
        return failed
