"""Read-side business logic for automation runs."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from concord.models.run import AutomationRun, RunStatus, slot_scope
from concord.repositories.run_repo import RunRepository


class RunService:
    def __init__(self, session: AsyncSession):
        self.repo = RunRepository(session)

    async def get_run(self, run_id: str, tenant_id: str | None = None) -> AutomationRun | None:
        """Fetch a run, hidden when it belongs to another tenant scope."""
        run = await self.repo.get_by_id(run_id)
        if run is None or run.tenant_id != tenant_id:
            return None
        return run

    async def list_runs(
        self,
        tenant_id: str | None,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
    ) -> tuple[list[AutomationRun], int]:
        return await self.repo.list_runs(tenant_id, limit=limit, offset=offset, status=status)

    async def get_active_run(self, tenant_id: str | None) -> AutomationRun | None:
        return await self.repo.get_active_run(tenant_id)

    async def get_status(self, tenant_id: str | None, recent: int = 5) -> dict[str, Any]:
        """Dashboard summary: active run, last terminal run, recent history, counts."""
        active = await self.repo.get_active_run(tenant_id)
        runs, total = await self.repo.list_runs(tenant_id, limit=recent)
        last = next((r for r in runs if r.status != RunStatus.RUNNING.value), None)
        counts = await self.repo.count_by_status(tenant_id)
        return {
            "tenant_id": tenant_id,
            "scope": slot_scope(tenant_id),
            "active_run": active,
            "last_run": last,
            "recent_runs": runs,
            "total_runs": total,
            "counts": {status.value: counts.get(status.value, 0) for status in RunStatus},
        }
