"""Tests for run persistence."""

import random
from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import DateTime, event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from costalloc.db.models import RequiredResourcesRecord, RunRecord
from costalloc.db.store import RunStore, group_rows
from costalloc.errors import ConnectionUnavailable, StatementFailed
from costalloc.models import RequiredResources, Run

T1 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
T2 = datetime(2024, 3, 1, 13, 0, tzinfo=UTC)


def make_run(measured_time: datetime = T1, resources: list[RequiredResources] | None = None) -> Run:
    if resources is None:
        resources = [
            RequiredResources("a", "prod", "web", cpu_millicores=150, memory_mega_bytes=256, replicas=3),
            RequiredResources("a", "prod", "worker", cpu_millicores=50, memory_mega_bytes=128, replicas=1),
            RequiredResources("b", "dev", "api", cpu_millicores=10, memory_mega_bytes=0, replicas=1),
        ]
    return Run(
        measured_time_utc=measured_time,
        cluster_cpu_millicores=4000,
        cluster_memory_mega_bytes=16384,
        resources=resources,
    )


def resource_rows(store: RunStore) -> list[RequiredResourcesRecord]:
    with Session(store.verify_connection()) as session:
        return list(session.exec(select(RequiredResourcesRecord)).all())


def comparable(resources: list[RequiredResources]) -> set[tuple]:
    return {
        (r.application, r.environment, r.component, r.cpu_millicores, r.memory_mega_bytes, r.replicas)
        for r in resources
    }


class TestConnection:
    """Tests for connection handling."""

    def test_verify_connection(self, store):
        assert store.verify_connection() is not None

    def test_closed_store(self):
        run_store = RunStore.from_url("sqlite:///:memory:")
        run_store.close()

        with pytest.raises(ConnectionUnavailable):
            run_store.save_run(T1, 1, 1)
        with pytest.raises(ConnectionUnavailable):
            run_store.get_runs_between(T1, T2)

    def test_close_is_idempotent(self):
        run_store = RunStore.from_url("sqlite:///:memory:")
        run_store.close()
        run_store.close()

    def test_unreachable_database(self, tmp_path):
        run_store = RunStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'runs.db'}")
        try:
            with pytest.raises(ConnectionUnavailable, match="not reachable"):
                run_store.verify_connection()
        finally:
            run_store.close()

    def test_context_manager_closes(self):
        with RunStore.from_url("sqlite:///:memory:") as run_store:
            run_store.init_schema()
        with pytest.raises(ConnectionUnavailable):
            run_store.verify_connection()


class TestSchema:
    """Tests for the table definitions."""

    def test_measured_time_is_naive_datetime_column(self):
        """Stored times are naive UTC whatever the sqlmodel release."""
        column = RunRecord.__table__.c.measured_time_utc
        assert type(column.type) is DateTime
        assert column.type.timezone is False
        assert column.index
        assert not column.nullable


class TestSaveRun:
    """Tests for saving runs."""

    def test_returns_generated_ids(self, store):
        first = store.save_run(T1, 4000, 16384)
        second = store.save_run(T2, 4000, 16384)
        assert isinstance(first, int)
        assert second != first

    def test_missing_table_fails(self):
        with RunStore.from_url("sqlite:///:memory:") as run_store:
            with pytest.raises(StatementFailed, match="failed to insert run"):
                run_store.save_run(T1, 1, 1)


class TestSaveRequiredResources:
    """Tests for saving resources of a run."""

    def test_requires_saved_run(self, store):
        with pytest.raises(ValueError):
            store.save_required_resources(make_run())

    def test_assigns_ids(self, store):
        run = store.save(make_run())
        assert run.id is not None
        assert all(resource.id is not None for resource in run.resources)
        rows = resource_rows(store)
        assert len(rows) == 3
        assert {row.run_id for row in rows} == {run.id}
        assert {row.wbs for row in rows} == {""}

    def test_failure_keeps_earlier_rows(self, store):
        """Second of three inserts fails: first committed, third never tried."""
        run = make_run(
            resources=[
                RequiredResources("a", "prod", "web", replicas=1),
                RequiredResources(None, "prod", "broken", replicas=1),
                RequiredResources("c", "prod", "api", replicas=1),
            ]
        )
        run.id = store.save_run(run.measured_time_utc, 1, 1)

        with pytest.raises(StatementFailed, match="broken"):
            store.save_required_resources(run)

        rows = resource_rows(store)
        assert [row.component for row in rows] == ["web"]
        assert run.resources[0].id is not None
        assert run.resources[2].id is None

    def test_id_read_back_failure_is_statement_failed(self, store):
        """Reading the generated id after commit is covered by the same error."""
        engine = store.verify_connection()

        def fail_reload(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("SELECT") and "required_resources" in statement:
                raise OperationalError(statement, parameters, Exception("connection lost"))

        run = make_run(resources=[RequiredResources("a", "prod", "web", replicas=1)])
        run.id = store.save_run(run.measured_time_utc, 1, 1)

        event.listen(engine, "before_cursor_execute", fail_reload)
        try:
            with pytest.raises(StatementFailed, match="connection lost"):
                store.save_required_resources(run)
        finally:
            event.remove(engine, "before_cursor_execute", fail_reload)

    def test_atomic_failure_keeps_nothing(self, store):
        """With atomic=True a failure rolls back the whole batch."""
        run = make_run(
            resources=[
                RequiredResources("a", "prod", "web", replicas=1),
                RequiredResources(None, "prod", "broken", replicas=1),
                RequiredResources("c", "prod", "api", replicas=1),
            ]
        )
        run.id = store.save_run(run.measured_time_utc, 1, 1)

        with pytest.raises(StatementFailed, match="rolled back"):
            store.save_required_resources(run, atomic=True)

        assert resource_rows(store) == []
        assert all(resource.id is None for resource in run.resources)

    def test_atomic_success(self, store):
        run = store.save(make_run(), atomic=True)
        assert len(resource_rows(store)) == 3
        assert all(resource.id is not None for resource in run.resources)


class TestGetRunsBetween:
    """Tests for loading runs by time range."""

    def test_round_trip(self, store):
        saved = store.save(make_run())

        [loaded] = store.get_runs_between(T1 - timedelta(minutes=1), T1 + timedelta(minutes=1))

        assert loaded.id == saved.id
        assert loaded.measured_time_utc == T1
        assert loaded.cluster_cpu_millicores == 4000
        assert loaded.cluster_memory_mega_bytes == 16384
        assert comparable(loaded.resources) == comparable(saved.resources)
        assert {r.id for r in loaded.resources} == {r.id for r in saved.resources}
        assert all(r.wbs == "" for r in loaded.resources)

    def test_exact_bounds_are_inclusive(self, store):
        saved = store.save(make_run())
        runs = store.get_runs_between(T1, T1)
        assert [run.id for run in runs] == [saved.id]

    def test_range_selects_runs(self, store):
        first = store.save(make_run(T1))
        second = store.save(make_run(T2))

        assert [run.id for run in store.get_runs_between(T1, T1)] == [first.id]
        assert {run.id for run in store.get_runs_between(T1, T2)} == {first.id, second.id}
        assert store.get_runs_between(T2 + timedelta(seconds=1), T2 + timedelta(hours=1)) == []

    def test_run_without_resources_is_returned(self, store):
        saved = store.save(make_run(resources=[]))
        [loaded] = store.get_runs_between(T1, T1)
        assert loaded.id == saved.id
        assert loaded.resources == []

    def test_each_run_gets_its_own_resources(self, store):
        store.save(make_run(T1))
        store.save(
            make_run(T2, resources=[RequiredResources("z", "test", "job", cpu_millicores=5, replicas=1)])
        )

        runs = {run.measured_time_utc: run for run in store.get_runs_between(T1, T2)}

        assert len(runs[T1].resources) == 3
        assert comparable(runs[T2].resources) == {("z", "test", "job", 5, 0, 1)}

    def test_bounds_in_other_timezone(self, store):
        """Aware bounds are compared in UTC."""
        saved = store.save(make_run(T1))
        cet = timezone(timedelta(hours=1))
        runs = store.get_runs_between(T1.astimezone(cet), T1.astimezone(cet))
        assert [run.id for run in runs] == [saved.id]

    def test_naive_times_are_utc(self, store):
        saved = store.save(make_run(datetime(2024, 3, 1, 12, 0)))
        runs = store.get_runs_between(T1, T1)
        assert [run.id for run in runs] == [saved.id]
        assert runs[0].measured_time_utc.tzinfo is not None

    def test_reversed_range_is_empty(self, store):
        store.save(make_run(T1))
        assert store.get_runs_between(T2, T1) == []


class TestGroupRows:
    """Tests for rebuilding runs from join rows."""

    def test_rows_in_any_order(self):
        run_a = RunRecord(id=1, measured_time_utc=T1, cluster_cpu_millicores=1, cluster_memory_mega_bytes=2)
        run_b = RunRecord(id=2, measured_time_utc=T2, cluster_cpu_millicores=3, cluster_memory_mega_bytes=4)
        rows = [
            (run, RequiredResourcesRecord(id=i, run_id=run.id, application="app", environment="env", component=f"c{i}"))
            for i, run in enumerate([run_a, run_b, run_a, run_b, run_a], start=1)
        ]
        random.Random(7).shuffle(rows)

        runs = {run.id: run for run in group_rows(rows)}

        assert sorted(r.id for r in runs[1].resources) == [1, 3, 5]
        assert sorted(r.id for r in runs[2].resources) == [2, 4]
        assert runs[2].cluster_cpu_millicores == 3

    def test_run_without_resource_row(self):
        run = RunRecord(id=9, measured_time_utc=T1, cluster_cpu_millicores=1, cluster_memory_mega_bytes=1)
        [loaded] = group_rows([(run, None)])
        assert loaded.id == 9
        assert loaded.resources == []
