"""Run coordinator — owns the automation run lifecycle.

A run is opened as ``running`` (guarded by the per-tenant slot in the store),
fed from each configured source in bounded batches, reconciled item by item
with bounded concurrency, flushed periodically, and closed exactly once as
``completed`` or ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concord.engine.errors import (
    RunAlreadyActive,
    RunInterrupted,
    SourceStreamError,
    SourceUnavailable,
    StoreUnavailable,
)
from concord.engine.progress import RunCounters, RunDetails
from concord.models.run import AutomationRun, RunStatus, RunTrigger, slot_scope, utcnow
from concord.reconcile.reconciler import Reconciler
from concord.reconcile.target import SqlTargetStore, TargetStore
from concord.reconcile.types import ItemOutcome, Outcome, RecordScope
from concord.repositories.run_repo import RunRepository
from concord.sources.base import SourceContext
from concord.sources.registry import SourceBinding

logger = logging.getLogger("concord.coordinator")


@dataclass
class EngineSettings:
    batch_size: int = 100
    max_concurrent: int = 4
    flush_every: int = 50
    flush_interval_seconds: float = 5.0
    max_run_seconds: float = 1800
    stale_after_seconds: float = 900
    apply_error_threshold: int = 25
    max_detail_items: int = 50

    @classmethod
    def from_settings(cls, settings: Any) -> "EngineSettings":
        return cls(
            batch_size=settings.batch_size,
            max_concurrent=settings.max_concurrent,
            flush_every=settings.flush_every,
            flush_interval_seconds=settings.flush_interval_seconds,
            max_run_seconds=settings.max_run_seconds,
            stale_after_seconds=settings.stale_after_seconds,
            apply_error_threshold=settings.apply_error_threshold,
            max_detail_items=settings.max_detail_items,
        )


@dataclass
class RunResult:
    run_id: str
    tenant_id: str | None
    trigger: str
    status: str
    counters: RunCounters
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    details: dict[str, Any]
    persisted: bool = True

    @property
    def reason(self) -> str | None:
        return self.details.get("reason")

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "trigger": self.trigger,
            "status": self.status,
            **self.counters.as_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "details": self.details,
            "persisted": self.persisted,
        }


class RunHandle:
    """Live view of a run started by this coordinator."""

    def __init__(self, run: AutomationRun, max_run_seconds: float):
        loop = asyncio.get_running_loop()
        self.run_id = run.id
        self.tenant_id = run.tenant_id
        self.trigger = run.trigger
        self.started_at = run.started_at
        self.counters = RunCounters()
        self._loop = loop
        self._started = loop.time()
        self._deadline = self._started + max_run_seconds
        self._stop = asyncio.Event()
        self._stop_reason: str | None = None
        self._task: asyncio.Task | None = None
        self._last_flush = self._started
        self._flushed_processed = 0
        self.consecutive_apply_failures = 0

    @property
    def elapsed(self) -> float:
        return self._loop.time() - self._started

    def remaining(self) -> float:
        return max(self._deadline - self._loop.time(), 0.0)

    def stop(self, reason: str) -> None:
        """Ask the run to stop before its next item. The first reason wins."""
        if self._stop_reason is None:
            self._stop_reason = reason
        self._stop.set()

    def cancel(self) -> None:
        self.stop("cancelled")

    def stop_reason(self) -> str | None:
        if self._stop_reason is not None:
            return self._stop_reason
        if self.remaining() <= 0:
            return "timeout"
        return None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> RunResult:
        return await asyncio.shield(self._task)

    def progress(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "status": RunStatus.RUNNING.value if not self.done else "finishing",
            "elapsed_ms": int(self.elapsed * 1000),
            **self.counters.as_dict(),
        }


class RunCoordinator:
    """Starts, drives, and finalizes automation runs.

    Usage:
        coordinator = RunCoordinator(session_factory, registry.bindings())
        handle = await coordinator.start_run("tenant-a", "manual")
        result = await handle.wait()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sources: Iterable[SourceBinding],
        target: TargetStore | None = None,
        settings: EngineSettings | None = None,
    ):
        self._session_factory = session_factory
        self.sources = list(sources)
        self.target = target or SqlTargetStore(session_factory)
        self.settings = settings or EngineSettings()
        self._handles: dict[str, RunHandle] = {}

    @property
    def active_runs(self) -> list[str]:
        return list(self._handles)

    def get_handle(self, run_id: str) -> RunHandle | None:
        return self._handles.get(run_id)

    # ─── Lifecycle ───

    async def start_run(self, tenant_id: str | None, trigger: str | RunTrigger = RunTrigger.MANUAL) -> RunHandle:
        """Open a run for the tenant and start executing it in the background.

        Raises:
            RunAlreadyActive: another run holds the tenant's slot
            StoreUnavailable: the run record could not be written
        """
        trigger = RunTrigger(trigger).value
        try:
            async with self._session_factory() as session:
                run = await RunRepository(session).create_if_no_active_run(tenant_id, trigger)
        except RunAlreadyActive:
            logger.info(f"Run not started for {slot_scope(tenant_id)}: another run is active")
            raise
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not open run for {slot_scope(tenant_id)}: {e}") from e

        handle = RunHandle(run, self.settings.max_run_seconds)
        self._handles[run.id] = handle
        handle._task = asyncio.create_task(self._execute(handle), name=f"concord-run-{run.id}")
        logger.info(f"Run {run.id} started for {slot_scope(tenant_id)} (trigger={trigger})")
        return handle

    async def run(self, tenant_id: str | None, trigger: str | RunTrigger = RunTrigger.MANUAL) -> RunResult:
        handle = await self.start_run(tenant_id, trigger)
        return await handle.wait()

    async def cancel(self, run_id: str) -> bool:
        """Cancel a run: directly when it is ours, via the store otherwise."""
        handle = self._handles.get(run_id)
        if handle is not None:
            handle.cancel()
            return True
        async with self._session_factory() as session:
            return await RunRepository(session).request_cancel(run_id)

    async def sweep_stale_runs(self) -> list[str]:
        """Fail runs left ``running`` without a recent heartbeat."""
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_after_seconds)
        async with self._session_factory() as session:
            failed = await RunRepository(session).fail_stale_runs(cutoff, exclude=self._handles.keys())
        if failed:
            logger.warning(f"Marked {len(failed)} stale run(s) failed: {', '.join(failed)}")
        return failed

    async def shutdown(self) -> None:
        """Cancel local runs and wait for them to finalize."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)

    # ─── Execution ───

    async def _execute(self, handle: RunHandle) -> RunResult:
        details = RunDetails(self.settings.max_detail_items)
        status = RunStatus.COMPLETED.value
        reason = error = None
        try:
            try:
                for binding in self.sources:
                    await self._run_source(handle, binding, details)
            except RunInterrupted as e:
                status, reason, error = RunStatus.FAILED.value, e.reason, str(e)
            except SourceUnavailable as e:
                status, reason, error = RunStatus.FAILED.value, "source_unavailable", str(e)
            except SourceStreamError as e:
                status, reason, error = RunStatus.FAILED.value, "source_error", str(e)
            except StoreUnavailable as e:
                status, reason, error = RunStatus.FAILED.value, "store_unavailable", str(e)
            except asyncio.CancelledError:
                await asyncio.shield(self._finalize(
                    handle, RunStatus.FAILED.value,
                    self._summary(handle, details, "cancelled", "Run task cancelled"),
                ))
                raise
            except Exception as e:
                logger.exception(f"Run {handle.run_id} crashed")
                status, reason, error = RunStatus.FAILED.value, "internal_error", f"{type(e).__name__}: {e}"

            summary = self._summary(handle, details, reason, error)
            persisted = await self._finalize(handle, status, summary)
            c = handle.counters
            if status == RunStatus.COMPLETED.value:
                logger.info(
                    f"Run {handle.run_id} completed: processed={c.processed}, created={c.created}, "
                    f"updated={c.updated}, skipped={c.skipped}, errors={c.errors}, "
                    f"duration={summary['elapsed_ms']}ms"
                )
            else:
                logger.error(f"Run {handle.run_id} failed ({reason}): {error}")
            return RunResult(
                run_id=handle.run_id,
                tenant_id=handle.tenant_id,
                trigger=handle.trigger,
                status=status,
                counters=handle.counters,
                started_at=handle.started_at,
                completed_at=utcnow(),
                duration_ms=summary["elapsed_ms"],
                details=summary,
                persisted=persisted,
            )
        finally:
            self._handles.pop(handle.run_id, None)

    def _summary(self, handle: RunHandle, details: RunDetails, reason: str | None, error: str | None) -> dict:
        return details.build(
            scope=slot_scope(handle.tenant_id),
            trigger=handle.trigger,
            elapsed_ms=int(handle.elapsed * 1000),
            reason=reason,
            error=error,
        )

    async def _run_source(self, handle: RunHandle, binding: SourceBinding, details: RunDetails) -> None:
        adapter = binding.create()
        cursor = None
        if binding.resume and adapter.supports_cursor:
            cursor = await self._resume_cursor(handle.tenant_id, binding.name)
        context = SourceContext(
            tenant_id=handle.tenant_id,
            run_id=handle.run_id,
            trigger=handle.trigger,
            cursor=cursor,
        )
        reconciler = Reconciler(binding.spec, self.target)
        scope = RecordScope(handle.tenant_id, binding.spec.record_type, handle.run_id)
        entry = details.source(binding.name, binding.spec.record_type)

        try:
            try:
                await self._interruptible(handle, adapter.open(context))
            except RunInterrupted:
                raise
            except Exception as e:
                raise SourceUnavailable(binding.name, e) from e

            stream = adapter.records(context)
            try:
                while True:
                    batch, exhausted, failure = await self._next_batch(handle, stream)
                    await self._process_batch(handle, binding, reconciler, scope, batch, details)
                    if failure is not None:
                        raise SourceStreamError(binding.name, failure) from failure
                    if exhausted:
                        break
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        finally:
            if adapter.supports_cursor:
                entry["cursor"] = adapter.cursor
            entry["metadata"] = adapter.metadata()
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Closing source '{binding.name}' failed: {e}")

    async def _resume_cursor(self, tenant_id: str | None, source_name: str) -> Any:
        async with self._session_factory() as session:
            last = await RunRepository(session).get_last_completed(tenant_id)
        if last is None or not last.details:
            return None
        return last.details.get("sources", {}).get(source_name, {}).get("cursor")

    async def _next_batch(
        self,
        handle: RunHandle,
        stream: AsyncIterator[dict],
    ) -> tuple[list[dict], bool, BaseException | None]:
        """Pull up to ``batch_size`` candidates.

        Returns (batch, exhausted, failure); a mid-stream failure still hands
        back what was pulled before it.
        """
        size = max(self.settings.batch_size, 1)

        async def pull():
            batch: list[dict] = []
            while len(batch) < size:
                try:
                    batch.append(await anext(stream))
                except StopAsyncIteration:
                    return batch, True, None
                except Exception as e:
                    return batch, True, e
            return batch, False, None

        return await self._interruptible(handle, pull())

    async def _interruptible(self, handle: RunHandle, awaitable: Awaitable) -> Any:
        """Await ``awaitable`` unless the run is stopped or its deadline passes first.

        While waiting, the heartbeat is flushed every ``flush_interval_seconds``
        so a slow source does not make a live run look stale.
        """
        reason = handle.stop_reason()
        if reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunInterrupted(reason, f"Run stopped: {reason}")

        interval = self.settings.flush_interval_seconds
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(handle._stop.wait())
        try:
            while True:
                timeout = handle.remaining()
                if interval > 0:
                    timeout = min(timeout, interval)
                done, _ = await asyncio.wait(
                    {task, waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if done or handle.remaining() <= 0:
                    break
                await self._flush(handle)
        except (asyncio.CancelledError, StoreUnavailable):
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        reason = handle.stop_reason() or "timeout"
        if reason == "timeout":
            raise RunInterrupted(reason, f"Run exceeded {self.settings.max_run_seconds}s")
        raise RunInterrupted(reason, f"Run stopped: {reason}")

    async def _process_batch(
        self,
        handle: RunHandle,
        binding: SourceBinding,
        reconciler: Reconciler,
        scope: RecordScope,
        batch: list[dict],
        details: RunDetails,
    ) -> None:
        if not batch:
            return

        semaphore = asyncio.Semaphore(max(self.settings.max_concurrent, 1))
        key_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        async def work(candidate: dict) -> ItemOutcome | None:
            async with semaphore:
                # Cancellation is honored between items, never mid-item
                if handle.stop_reason() is not None:
                    return None
                key = binding.spec.key_of(candidate)
                if key is None:
                    return await reconciler.reconcile(candidate, scope)
                async with key_locks[key]:
                    return await reconciler.reconcile(candidate, scope)

        tasks = [asyncio.create_task(work(candidate)) for candidate in batch]
        failure: BaseException | None = None
        try:
            # Outcomes are recorded in stream order by this loop alone
            for task in tasks:
                try:
                    outcome = await task
                except Exception as e:
                    if failure is None:
                        failure = e
                        handle.stop("internal_error")
                    continue
                if outcome is None:
                    continue
                self._record(handle, binding, details, outcome)
                if failure is None:
                    try:
                        await self._maybe_flush(handle)
                    except StoreUnavailable as e:
                        failure = e
                        handle.stop("store_unavailable")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if failure is not None:
            raise failure
        reason = handle.stop_reason()
        if reason is not None:
            if reason == "apply_error_threshold":
                raise RunInterrupted(
                    reason,
                    f"Aborted after {handle.consecutive_apply_failures} consecutive apply failures",
                )
            if reason == "timeout":
                raise RunInterrupted(reason, f"Run exceeded {self.settings.max_run_seconds}s")
            raise RunInterrupted(reason, f"Run stopped: {reason}")

    def _record(self, handle: RunHandle, binding: SourceBinding, details: RunDetails, item: ItemOutcome) -> None:
        handle.counters.record(item.outcome)
        details.record(binding.name, item)

        if item.is_apply_failure:
            handle.consecutive_apply_failures += 1
            threshold = self.settings.apply_error_threshold
            if threshold and handle.consecutive_apply_failures > threshold:
                handle.stop("apply_error_threshold")
        elif item.outcome is not Outcome.ERROR:
            handle.consecutive_apply_failures = 0

    async def _maybe_flush(self, handle: RunHandle) -> None:
        every = self.settings.flush_every
        due_by_count = every > 0 and handle.counters.processed - handle._flushed_processed >= every
        due_by_time = handle._loop.time() - handle._last_flush >= self.settings.flush_interval_seconds
        if due_by_count or due_by_time:
            await self._flush(handle)

    async def _flush(self, handle: RunHandle) -> None:
        try:
            async with self._session_factory() as session:
                ack = await RunRepository(session).update_counters(
                    handle.run_id, handle.counters.as_columns()
                )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Counter flush failed for run {handle.run_id}: {e}") from e
        handle._last_flush = handle._loop.time()
        handle._flushed_processed = handle.counters.processed
        if not ack.running:
            logger.warning(f"Run {handle.run_id} is no longer running in the store; stopping")
            handle.stop("stale")
        elif ack.cancel_requested:
            logger.info(f"Run {handle.run_id}: cancel requested externally")
            handle.cancel()

    async def _finalize(self, handle: RunHandle, status: str, details: dict) -> bool:
        """Best-effort terminal write; a failed write leaves the run to the sweep."""
        try:
            async with self._session_factory() as session:
                finalized = await RunRepository(session).finalize_run(
                    handle.run_id, status, handle.counters.as_columns(), details
                )
        except SQLAlchemyError as e:
            logger.error(f"Could not finalize run {handle.run_id}; leaving it for the stale sweep: {e}")
            return False
        if not finalized:
            logger.warning(f"Run {handle.run_id} was already finalized elsewhere; result not written")
        return finalized
