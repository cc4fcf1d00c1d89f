"""Run API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from concord.core.auth import tenant_context, verify_api_key
from concord.core.database import get_session
from concord.engine.coordinator import RunCoordinator
from concord.engine.errors import RunAlreadyActive, StoreUnavailable
from concord.models.run import RunStatus
from concord.schemas.run import (
    CancelResponse,
    RunCreate,
    RunListResponse,
    RunResponse,
    RunStatusResponse,
    SweepResponse,
)
from concord.services.run_service import RunService

router = APIRouter(prefix="/runs", tags=["runs"])


def get_coordinator(request: Request) -> RunCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(503, "Run coordinator not initialized")
    return coordinator


@router.post("", response_model=RunResponse, status_code=202)
async def start_run(
    body: RunCreate | None = None,
    tenant_id: str | None = Depends(tenant_context),
    coordinator: RunCoordinator = Depends(get_coordinator),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    """Start a run for the caller's tenant. 409 when one is already active."""
    body = body or RunCreate()
    try:
        handle = await coordinator.start_run(tenant_id, body.trigger)
    except RunAlreadyActive as e:
        raise HTTPException(
            409,
            detail={"message": str(e), "active_run_id": e.active_run_id},
        )
    except StoreUnavailable as e:
        raise HTTPException(503, str(e))

    if body.wait:
        await handle.wait()

    run = await RunService(session).get_run(handle.run_id, tenant_id)
    if not run:
        raise HTTPException(404, f"Run '{handle.run_id}' not found")
    return run


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: RunStatus | None = None,
    tenant_id: str | None = Depends(tenant_context),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    """List the tenant's runs, newest first."""
    limit = max(1, min(limit, 200))
    runs, total = await RunService(session).list_runs(
        tenant_id, limit=limit, offset=max(offset, 0), status=status.value if status else None
    )
    return RunListResponse(runs=runs, total=total, limit=limit, offset=offset)


@router.get("/active", response_model=RunResponse)
async def get_active_run(
    tenant_id: str | None = Depends(tenant_context),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    """Get the tenant's in-progress run."""
    run = await RunService(session).get_active_run(tenant_id)
    if not run:
        raise HTTPException(404, "No active run")
    return run


@router.get("/status", response_model=RunStatusResponse)
async def get_status(
    recent: int = 5,
    tenant_id: str | None = Depends(tenant_context),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    """Active run, last finished run and recent history for the tenant."""
    return await RunService(session).get_status(tenant_id, recent=max(1, min(recent, 50)))


@router.post("/sweep", response_model=SweepResponse)
async def sweep_stale_runs(
    coordinator: RunCoordinator = Depends(get_coordinator),
    _: str = Depends(verify_api_key),
):
    """Fail runs whose heartbeat went stale."""
    failed = await coordinator.sweep_stale_runs()
    return SweepResponse(failed_run_ids=failed)


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    tenant_id: str | None = Depends(tenant_context),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    run = await RunService(session).get_run(run_id, tenant_id)
    if not run:
        raise HTTPException(404, f"Run '{run_id}' not found")
    return run


@router.post("/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(
    run_id: str,
    tenant_id: str | None = Depends(tenant_context),
    coordinator: RunCoordinator = Depends(get_coordinator),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(verify_api_key),
):
    """Request cooperative cancellation. 409 when the run already finished."""
    run = await RunService(session).get_run(run_id, tenant_id)
    if not run:
        raise HTTPException(404, f"Run '{run_id}' not found")
    if run.is_terminal:
        raise HTTPException(409, f"Run '{run_id}' already {run.status}")
    requested = await coordinator.cancel(run_id)
    return CancelResponse(run_id=run_id, cancel_requested=requested)
