"""Tests for the run coordinator."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from concord.engine.coordinator import RunCoordinator
from concord.engine.errors import ApplyFailure, RunAlreadyActive, StoreUnavailable
from concord.models.run import AutomationRun, utcnow
from concord.reconcile.spec import ReconcileSpec
from concord.reconcile.target import MemoryTargetStore
from concord.repositories.record_repo import RecordRepository
from concord.repositories.run_repo import RunRepository
from concord.sources.registry import SourceBinding
from concord.sources.static import JsonFileSource


async def _stored_run(session_factory, run_id):
    async with session_factory() as session:
        return await RunRepository(session).get_by_id(run_id)


async def _records(session_factory, tenant_id, record_type="contact"):
    async with session_factory() as session:
        rows = await RecordRepository(session).list_by_type(tenant_id, record_type)
    return {r.natural_key: r.fields for r in rows}


class RejectingStore(MemoryTargetStore):
    """Rejects every create."""

    async def create(self, scope, key, values):
        raise ApplyFailure(f"insert rejected for {key}")


class TestRunOutcomes:
    @pytest.mark.asyncio
    async def test_new_records_are_created(self, coordinator, session_factory):
        result = await coordinator.run("acme")

        assert result.status == "completed"
        assert result.reason is None
        assert result.counters.as_dict() == {
            "processed": 3, "created": 3, "updated": 0, "skipped": 0, "errors": 0,
        }
        stored = await _stored_run(session_factory, result.run_id)
        assert stored.status == "completed"
        assert stored.processed_count == 3
        assert stored.created_count == 3
        assert stored.completed_at is not None
        assert stored.details["scope"] == "tenant:acme"
        assert stored.details["sources"]["contacts"]["created"] == 3
        assert set(await _records(session_factory, "acme")) == {"c1", "c2", "c3"}

    @pytest.mark.asyncio
    async def test_changed_record_updated_rest_skipped(
        self, session_factory, make_binding, sample_contacts, fast_settings
    ):
        data = {"rows": sample_contacts}
        coord = RunCoordinator(session_factory, [make_binding(lambda: data["rows"])], settings=fast_settings)
        await coord.run("acme")

        data["rows"] = [dict(c) for c in sample_contacts]
        data["rows"][1]["email"] = "robert@example.com"
        result = await coord.run("acme")

        assert result.status == "completed"
        assert result.counters.updated == 1
        assert result.counters.skipped == 2
        assert result.counters.created == 0
        records = await _records(session_factory, "acme")
        assert records["c2"]["email"] == "robert@example.com"
        assert records["c1"]["email"] == "alice@example.com"

    @pytest.mark.asyncio
    async def test_ten_new_candidates(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"n{i}", "name": f"New {i}"} for i in range(10)]
        settings = replace(fast_settings, batch_size=4)
        result = await RunCoordinator(session_factory, [make_binding(rows)], settings=settings).run("acme")

        assert result.status == "completed"
        assert result.counters.processed == 10
        assert result.counters.created == 10

    @pytest.mark.asyncio
    async def test_second_identical_run_is_all_skips(self, session_factory, make_binding, sample_contacts):
        store = MemoryTargetStore()
        coord = RunCoordinator(session_factory, [make_binding(sample_contacts)], target=store)
        await coord.run("acme")
        writes = len(store.writes)

        result = await coord.run("acme")
        assert result.status == "completed"
        assert result.counters.skipped == 3
        assert result.counters.created == result.counters.updated == 0
        assert len(store.writes) == writes

    @pytest.mark.asyncio
    async def test_invalid_candidate_counted_and_run_completes(
        self, session_factory, make_binding, sample_contacts, fast_settings
    ):
        rows = sample_contacts + [{"name": "No Key"}, {"id": "c9", "age": "not a number"}]
        coord = RunCoordinator(session_factory, [make_binding(rows)], settings=fast_settings)
        result = await coord.run("acme")

        assert result.status == "completed"
        assert result.counters.processed == 5
        assert result.counters.created == 3
        assert result.counters.errors == 2
        errors = result.details["errors"]
        assert [e["kind"] for e in errors] == ["validation", "validation"]
        assert errors[1]["key"] == "c9"

    @pytest.mark.asyncio
    async def test_counters_always_add_up(self, session_factory, make_binding, sample_contacts, fast_settings):
        rows = sample_contacts + [{"id": "c1", "name": "Alice again"}, {"bad": True}]
        coord = RunCoordinator(session_factory, [make_binding(rows)], settings=fast_settings)
        result = await coord.run("acme")

        c = result.counters
        assert c.processed == len(rows)
        assert c.created + c.updated + c.skipped + c.errors == c.processed

    @pytest.mark.asyncio
    async def test_error_details_are_bounded(self, session_factory, make_binding, fast_settings):
        rows = [{"name": f"keyless {i}"} for i in range(7)]
        settings = replace(fast_settings, max_detail_items=2)
        coord = RunCoordinator(session_factory, [make_binding(rows)], settings=settings)
        result = await coord.run("acme")

        assert result.status == "completed"
        assert result.counters.errors == 7
        assert len(result.details["errors"]) == 2
        assert result.details["errors_truncated"] == 5

    @pytest.mark.asyncio
    async def test_empty_source_completes(self, session_factory, make_binding):
        coord = RunCoordinator(session_factory, [make_binding([])])
        result = await coord.run("acme")
        assert result.status == "completed"
        assert result.counters.processed == 0


class TestSourceFailures:
    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_applied_work(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}", "name": f"Row {i}"} for i in range(10)]
        coord = RunCoordinator(session_factory, [make_binding(rows, fail_after=3)], settings=fast_settings)
        result = await coord.run("acme")

        assert result.status == "failed"
        assert result.reason == "source_error"
        assert result.counters.processed == 3
        assert result.counters.created == 3
        assert "ConnectionError" in result.details["error"]

        stored = await _stored_run(session_factory, result.run_id)
        assert stored.status == "failed"
        assert stored.processed_count == 3
        assert set(await _records(session_factory, "acme")) == {"r0", "r1", "r2"}

    @pytest.mark.asyncio
    async def test_unreachable_source(self, session_factory, contact_spec, tmp_path):
        binding = SourceBinding(
            name="missing",
            factory=lambda: JsonFileSource(str(tmp_path / "nowhere" / "{tenant}.json")),
            spec=contact_spec,
        )
        result = await RunCoordinator(session_factory, [binding]).run("acme")

        assert result.status == "failed"
        assert result.reason == "source_unavailable"
        assert result.counters.processed == 0
        assert "missing" in result.details["error"]

    @pytest.mark.asyncio
    async def test_failed_run_releases_slot(self, session_factory, make_binding):
        coord = RunCoordinator(session_factory, [make_binding([{"id": "a"}, {"id": "b"}], fail_after=1)])
        first = await coord.run("acme")
        assert first.status == "failed"
        second = await coord.run("acme")
        assert second.run_id != first.run_id


class TestApplyErrors:
    @pytest.mark.asyncio
    async def test_apply_failures_are_item_errors(self, session_factory, make_binding, sample_contacts, fast_settings):
        coord = RunCoordinator(
            session_factory, [make_binding(sample_contacts)], target=RejectingStore(), settings=fast_settings
        )
        result = await coord.run("acme")

        assert result.status == "completed"
        assert result.counters.errors == 3
        assert all(e["kind"] == "apply" for e in result.details["errors"])

    @pytest.mark.asyncio
    async def test_consecutive_apply_failures_abort_run(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(10)]
        settings = replace(fast_settings, batch_size=1, apply_error_threshold=3)
        coord = RunCoordinator(session_factory, [make_binding(rows)], target=RejectingStore(), settings=settings)
        result = await coord.run("acme")

        assert result.status == "failed"
        assert result.reason == "apply_error_threshold"
        assert result.counters.errors == 4
        assert result.counters.processed == 4

    @pytest.mark.asyncio
    async def test_threshold_zero_never_aborts(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(6)]
        settings = replace(fast_settings, batch_size=1, apply_error_threshold=0)
        coord = RunCoordinator(session_factory, [make_binding(rows)], target=RejectingStore(), settings=settings)
        result = await coord.run("acme")
        assert result.status == "completed"
        assert result.counters.errors == 6


class TestExclusivityAndIsolation:
    @pytest.mark.asyncio
    async def test_concurrent_start_for_same_tenant_rejected(self, session_factory, make_binding):
        rows = [{"id": f"r{i}"} for i in range(50)]
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.02)])
        handle = await coord.start_run("acme")

        with pytest.raises(RunAlreadyActive) as exc:
            await coord.start_run("acme", "scheduled")
        assert exc.value.active_run_id == handle.run_id

        other = await coord.start_run("globex")
        assert other.run_id != handle.run_id
        assert set(coord.active_runs) == {handle.run_id, other.run_id}

        await coord.shutdown()
        assert (await handle.wait()).reason == "cancelled"

    @pytest.mark.asyncio
    async def test_exclusivity_across_coordinators(self, session_factory, make_binding):
        rows = [{"id": f"r{i}"} for i in range(50)]
        first = RunCoordinator(session_factory, [make_binding(rows, delay=0.02)])
        second = RunCoordinator(session_factory, [make_binding(rows)])
        handle = await first.start_run("acme")

        with pytest.raises(RunAlreadyActive):
            await second.start_run("acme")

        await first.shutdown()
        assert (await handle.wait()).reason == "cancelled"

    @pytest.mark.asyncio
    async def test_tenants_run_in_parallel_without_sharing(self, session_factory, make_binding):
        rows = {
            "acme": [{"id": "x", "name": "Acme X"}, {"id": "y", "name": "Acme Y"}],
            "globex": [{"id": "x", "name": "Globex X"}],
        }
        coord = RunCoordinator(session_factory, [make_binding(rows)])
        acme, globex = await asyncio.gather(coord.run("acme"), coord.run("globex"))

        assert acme.status == globex.status == "completed"
        assert acme.counters.created == 2
        assert globex.counters.created == 1
        assert (await _records(session_factory, "acme"))["x"] == {"name": "Acme X"}
        assert (await _records(session_factory, "globex"))["x"] == {"name": "Globex X"}

    @pytest.mark.asyncio
    async def test_system_scope_run(self, session_factory, make_binding, sample_contacts):
        coord = RunCoordinator(session_factory, [make_binding(sample_contacts)])
        result = await coord.run(None)
        assert result.status == "completed"
        assert result.details["scope"] == "system"
        assert set(await _records(session_factory, None)) == {"c1", "c2", "c3"}
        assert await _records(session_factory, "acme") == {}

    @pytest.mark.asyncio
    async def test_unknown_trigger_rejected(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.start_run("acme", "webhook")


class TestOrderingAndConcurrency:
    @pytest.mark.asyncio
    async def test_same_key_applied_in_stream_order(self, session_factory, make_binding, fast_settings):
        rows = [
            {"id": "k", "name": "first"},
            {"id": "other", "name": "o"},
            {"id": "k", "name": "second"},
            {"id": "k", "name": "third"},
        ]
        settings = replace(fast_settings, max_concurrent=4)
        coord = RunCoordinator(session_factory, [make_binding(rows)], settings=settings)
        result = await coord.run("acme")

        assert result.counters.created == 2
        assert result.counters.updated == 2
        assert (await _records(session_factory, "acme"))["k"] == {"name": "third"}

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, session_factory, make_binding, fast_settings):
        class TrackingStore(MemoryTargetStore):
            def __init__(self):
                super().__init__()
                self.in_flight = 0
                self.peak = 0

            async def create(self, scope, key, values):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return await super().create(scope, key, values)

        store = TrackingStore()
        rows = [{"id": f"r{i}"} for i in range(20)]
        settings = replace(fast_settings, max_concurrent=3, batch_size=20)
        result = await RunCoordinator(session_factory, [make_binding(rows)], target=store, settings=settings).run("acme")

        assert result.counters.created == 20
        assert 1 < store.peak <= 3

    @pytest.mark.asyncio
    async def test_multiple_sources_share_one_run(self, session_factory, make_binding, fast_settings):
        company_spec = ReconcileSpec.from_config("company", "domain", ["name"])
        bindings = [
            make_binding([{"id": "c1", "name": "Alice"}]),
            make_binding([{"domain": "acme.io", "name": "Acme"}], name="companies", spec=company_spec),
        ]
        result = await RunCoordinator(session_factory, bindings, settings=fast_settings).run("acme")

        assert result.counters.created == 2
        assert set(result.details["sources"]) == {"contacts", "companies"}
        assert await _records(session_factory, "acme", "company") == {"acme.io": {"name": "Acme"}}


class TestCancellationAndTimeout:
    @pytest.mark.asyncio
    async def test_cancel_local_run(self, session_factory, make_binding):
        rows = [{"id": f"r{i}"} for i in range(100)]
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)])
        handle = await coord.start_run("acme")
        await asyncio.sleep(0.1)

        assert await coord.cancel(handle.run_id)
        result = await handle.wait()

        assert result.status == "failed"
        assert result.reason == "cancelled"
        assert result.counters.processed < 100
        stored = await _stored_run(session_factory, handle.run_id)
        assert stored.status == "failed"
        assert stored.details["reason"] == "cancelled"
        assert stored.processed_count == result.counters.processed
        assert handle.run_id not in coord.active_runs

    @pytest.mark.asyncio
    async def test_cancel_from_another_coordinator(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(200)]
        settings = replace(fast_settings, batch_size=1, flush_every=1)
        owner = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)], settings=settings)
        other = RunCoordinator(session_factory, [])
        handle = await owner.start_run("acme")
        await asyncio.sleep(0.05)

        assert await other.cancel(handle.run_id)
        result = await asyncio.wait_for(handle.wait(), timeout=5)

        assert result.status == "failed"
        assert result.reason == "cancelled"
        assert result.counters.processed < 200

    @pytest.mark.asyncio
    async def test_run_times_out(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(100)]
        settings = replace(fast_settings, max_run_seconds=0.2)
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.02)], settings=settings)
        result = await coord.run("acme")

        assert result.status == "failed"
        assert result.reason == "timeout"
        assert result.counters.processed < 100

    @pytest.mark.asyncio
    async def test_progress_is_flushed_while_running(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(100)]
        settings = replace(fast_settings, batch_size=2, flush_every=2)
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)], settings=settings)
        handle = await coord.start_run("acme")
        await asyncio.sleep(0.3)

        stored = await _stored_run(session_factory, handle.run_id)
        assert stored.status == "running"
        assert stored.processed_count > 0
        assert handle.progress()["processed"] >= stored.processed_count

        handle.cancel()
        await handle.wait()

    @pytest.mark.asyncio
    async def test_shutdown_finalizes_local_runs(self, session_factory, make_binding):
        rows = [{"id": f"r{i}"} for i in range(100)]
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)])
        handle = await coord.start_run("acme")
        await coord.shutdown()

        stored = await _stored_run(session_factory, handle.run_id)
        assert stored.status == "failed"
        assert stored.details["reason"] == "cancelled"


class TestStaleSweep:
    @pytest.mark.asyncio
    async def test_sweep_fails_orphaned_run_and_frees_tenant(self, coordinator, session_factory):
        async with session_factory() as session:
            orphan = await RunRepository(session).create_if_no_active_run("acme", "scheduled")
            await session.execute(
                update(AutomationRun)
                .where(AutomationRun.id == orphan.id)
                .values(heartbeat_at=utcnow() - timedelta(hours=1))
            )
            await session.commit()

        with pytest.raises(RunAlreadyActive):
            await coordinator.start_run("acme")

        assert await coordinator.sweep_stale_runs() == [orphan.id]
        stored = await _stored_run(session_factory, orphan.id)
        assert stored.status == "failed"
        assert stored.details["reason"] == "stale"

        result = await coordinator.run("acme")
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_sweep_skips_runs_owned_locally(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(100)]
        settings = replace(fast_settings, stale_after_seconds=0)
        coord = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)], settings=settings)
        handle = await coord.start_run("acme")
        await asyncio.sleep(0.05)

        assert await coord.sweep_stale_runs() == []
        handle.cancel()
        result = await handle.wait()
        assert result.persisted

    @pytest.mark.asyncio
    async def test_swept_run_stops_on_its_own(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(100)]
        settings = replace(fast_settings, stale_after_seconds=0)
        owner = RunCoordinator(session_factory, [make_binding(rows, delay=0.01)], settings=settings)
        sweeper = RunCoordinator(session_factory, [], settings=settings)
        handle = await owner.start_run("acme")
        await asyncio.sleep(0.05)

        assert await sweeper.sweep_stale_runs() == [handle.run_id]
        result = await asyncio.wait_for(handle.wait(), timeout=5)

        assert result.status == "failed"
        assert result.reason == "stale"
        assert not result.persisted
        # Stopped at the first flush after the sweep, well before the source ran dry
        assert result.counters.processed <= settings.batch_size
        stored = await _stored_run(session_factory, handle.run_id)
        assert stored.status == "failed"
        assert stored.details["reason"] == "stale"
        assert stored.processed_count == 0

        replacement = await RunCoordinator(session_factory, [make_binding(rows)], settings=fast_settings).run("acme")
        assert replacement.status == "completed"
        assert replacement.counters.processed == 100

    @pytest.mark.asyncio
    async def test_heartbeat_while_waiting_on_slow_source(self, session_factory, make_binding, fast_settings):
        rows = [{"id": f"r{i}"} for i in range(3)]
        settings = replace(fast_settings, flush_interval_seconds=0.05, stale_after_seconds=0.2)
        owner = RunCoordinator(session_factory, [make_binding(rows, delay=0.4)], settings=settings)
        sweeper = RunCoordinator(session_factory, [], settings=settings)
        handle = await owner.start_run("acme")
        await asyncio.sleep(0.4)

        stored = await _stored_run(session_factory, handle.run_id)
        assert stored.processed_count == 0
        assert stored.heartbeat_at > stored.started_at
        assert await sweeper.sweep_stale_runs() == []

        handle.cancel()
        result = await handle.wait()
        assert result.reason == "cancelled"
        assert result.persisted


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_failed_flush_ends_run(self, session_factory, make_binding, fast_settings, monkeypatch):
        async def disk_error(self, run_id, counters):
            raise OperationalError("UPDATE automation_runs", {}, Exception("disk I/O error"))

        monkeypatch.setattr(RunRepository, "update_counters", disk_error)
        rows = [{"id": f"r{i}"} for i in range(20)]
        coord = RunCoordinator(session_factory, [make_binding(rows)], settings=fast_settings)
        result = await coord.run("acme")

        assert result.status == "failed"
        assert result.reason == "store_unavailable"
        assert "disk I/O error" in result.details["error"]
        assert result.persisted
        stored = await _stored_run(session_factory, result.run_id)
        assert stored.status == "failed"
        assert stored.details["reason"] == "store_unavailable"
        assert stored.processed_count == result.counters.processed

    @pytest.mark.asyncio
    async def test_failed_finalize_leaves_run_for_sweep(self, coordinator, session_factory, monkeypatch):
        async def disk_error(self, run_id, status, counters, details):
            raise OperationalError("UPDATE automation_runs", {}, Exception("disk I/O error"))

        monkeypatch.setattr(RunRepository, "finalize_run", disk_error)
        result = await coordinator.run("acme")

        assert result.status == "completed"
        assert not result.persisted
        stored = await _stored_run(session_factory, result.run_id)
        assert stored.status == "running"
        assert result.run_id not in coordinator.active_runs
        with pytest.raises(RunAlreadyActive):
            await coordinator.start_run("acme")

    @pytest.mark.asyncio
    async def test_start_run_maps_store_errors(self, coordinator, monkeypatch):
        async def locked(self, tenant_id, trigger):
            raise OperationalError("INSERT INTO automation_runs", {}, Exception("database is locked"))

        monkeypatch.setattr(RunRepository, "create_if_no_active_run", locked)
        with pytest.raises(StoreUnavailable):
            await coordinator.start_run("acme")
        assert coordinator.active_runs == []


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_from_last_completed_cursor(self, session_factory, make_binding):
        data = {"rows": [{"id": f"r{i}"} for i in range(3)]}
        binding = make_binding(lambda: data["rows"], resume=True)
        coord = RunCoordinator(session_factory, [binding])

        first = await coord.run("acme")
        assert first.counters.created == 3
        assert first.details["sources"]["contacts"]["cursor"] == 3

        data["rows"] = [{"id": f"r{i}"} for i in range(5)]
        second = await coord.run("acme")
        assert second.counters.processed == 2
        assert second.counters.created == 2
        assert second.details["sources"]["contacts"]["cursor"] == 5

    @pytest.mark.asyncio
    async def test_without_resume_every_run_reads_everything(self, session_factory, make_binding, sample_contacts):
        coord = RunCoordinator(session_factory, [make_binding(sample_contacts)])
        await coord.run("acme")
        second = await coord.run("acme")
        assert second.counters.processed == 3
