"""APScheduler entry points: per-tenant scheduled runs and the stale sweep."""

import asyncio
import logging

from concord.engine.coordinator import RunCoordinator, RunResult
from concord.engine.errors import ConcordError, RunAlreadyActive
from concord.models.run import RunStatus, RunTrigger, slot_scope

logger = logging.getLogger("concord.scheduler")


async def _run_one(coordinator: RunCoordinator, tenant_id: str | None) -> RunResult | None:
    try:
        handle = await coordinator.start_run(tenant_id, RunTrigger.SCHEDULED)
    except RunAlreadyActive as e:
        logger.info(f"Skipping scheduled run for {slot_scope(tenant_id)}: {e}")
        return None
    except ConcordError as e:
        logger.error(f"Scheduled run for {slot_scope(tenant_id)} not started: {e}")
        return None
    return await handle.wait()


async def scheduled_run(coordinator: RunCoordinator, tenants: list[str] | None = None) -> list[RunResult]:
    """Start one scheduled run per tenant (system scope when none are configured)."""
    scopes: list[str | None] = list(tenants) if tenants else [None]
    logger.info(f"Scheduled run triggered for {len(scopes)} scope(s)")

    results = await asyncio.gather(*(_run_one(coordinator, tenant) for tenant in scopes))
    finished = [r for r in results if r is not None]

    failed = [r for r in finished if r.status != RunStatus.COMPLETED.value]
    if failed:
        logger.error(f"Scheduled runs finished with {len(failed)} failure(s) out of {len(finished)}")
    else:
        logger.info(f"Scheduled runs finished: {len(finished)} completed, {len(scopes) - len(finished)} skipped")
    return finished


async def scheduled_sweep(coordinator: RunCoordinator) -> list[str]:
    return await coordinator.sweep_stale_runs()
