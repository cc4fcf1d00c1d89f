"""Concord daemon — FastAPI app with the run coordinator and built-in scheduler."""

import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI

from concord import __version__
from concord.core.config import get_settings
from concord.core.database import init_engine, create_tables, dispose_engine, get_session_factory
from concord.api.router import api_router
from concord.daemon.scheduler import start_scheduler, stop_scheduler, add_cron_job, add_interval_job, list_jobs
from concord.daemon.scheduled_runner import scheduled_run, scheduled_sweep
from concord.engine.coordinator import EngineSettings, RunCoordinator
from concord.sources.registry import SourceRegistry

logger = logging.getLogger("concord")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    settings = get_settings()

    # Init database
    init_engine(settings.database_url)
    await create_tables()
    logger.info(f"Database initialized: {settings.database_url}")

    # Build the coordinator from configured sources
    registry = SourceRegistry(settings.sources)
    coordinator = RunCoordinator(
        get_session_factory(),
        registry.bindings(),
        settings=EngineSettings.from_settings(settings),
    )
    app.state.coordinator = coordinator
    logger.info(f"Coordinator ready with sources: {', '.join(registry.list_sources()) or '(none)'}")

    # Recover runs orphaned by a previous process before taking new work
    await coordinator.sweep_stale_runs()

    # Start scheduler
    if settings.schedule_cron:
        add_cron_job(
            "concord-scheduled-run",
            scheduled_run,
            settings.schedule_cron,
            kwargs={"coordinator": coordinator, "tenants": settings.tenants},
            timezone=settings.timezone,
        )
    if settings.sweep_interval_seconds > 0:
        add_interval_job(
            "concord-stale-sweep",
            scheduled_sweep,
            settings.sweep_interval_seconds,
            kwargs={"coordinator": coordinator},
        )
    start_scheduler()

    yield

    # Shutdown
    stop_scheduler()
    await coordinator.shutdown()
    await dispose_engine()
    logger.info("Concord daemon stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Concord",
        description="Multi-tenant automation reconciliation daemon",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        coordinator = getattr(app.state, "coordinator", None)
        return {
            "status": "ok",
            "version": __version__,
            "scheduler_jobs": list_jobs(),
            "active_runs": coordinator.active_runs if coordinator else [],
        }

    return app


def main():
    """Entry point for `concordd` command."""
    import sys

    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    host = settings.host
    port = settings.port

    # Parse CLI args (simple, no dep on typer for daemon)
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
        if arg == "--host" and i + 1 < len(args):
            host = args[i + 1]

    logger.info(f"Starting Concord daemon v{__version__} on {host}:{port}")

    app = create_app()
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
