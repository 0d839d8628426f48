"""Run store: persist runs with their resources and load them back by time.

Usage:
    with RunStore.from_url("sqlite:///./costalloc.db") as store:
        store.init_schema()
        run = store.save(Run(measured_time_utc=now, ...))
        runs = store.get_runs_between(start, end)

Resource inserts commit one row at a time by default: if an insert fails,
rows written before it stay committed and the remaining records are not
attempted. Pass ``atomic=True`` to write the whole batch in one transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from costalloc.db.engine import create_db_engine, init_db
from costalloc.db.models import RequiredResourcesRecord, RunRecord
from costalloc.errors import ConnectionUnavailable, StatementFailed
from costalloc.logging import get_logger
from costalloc.models import RequiredResources, Run, to_utc

logger = get_logger(__name__)


def _to_db_time(value: datetime) -> datetime:
    return to_utc(value).replace(tzinfo=None)


def _to_resource_record(run_id: int, resource: RequiredResources) -> RequiredResourcesRecord:
    return RequiredResourcesRecord(
        run_id=run_id,
        wbs=resource.wbs or "",
        application=resource.application,
        environment=resource.environment,
        component=resource.component,
        cpu_millicores=resource.cpu_millicores,
        memory_mega_bytes=resource.memory_mega_bytes,
        replicas=resource.replicas,
    )


def group_rows(
    rows: Iterable[tuple[RunRecord, RequiredResourcesRecord | None]],
) -> list[Run]:
    """Rebuild runs from (run, resource) join rows.

    Rows may arrive in any order. A ``None`` resource marks a run without
    resources.
    """
    runs: dict[int, Run] = {}
    for run_row, resource_row in rows:
        run = runs.get(run_row.id)
        if run is None:
            run = Run(
                id=run_row.id,
                measured_time_utc=run_row.measured_time_utc,
                cluster_cpu_millicores=run_row.cluster_cpu_millicores,
                cluster_memory_mega_bytes=run_row.cluster_memory_mega_bytes,
            )
            runs[run_row.id] = run
        if resource_row is not None:
            run.resources.append(
                RequiredResources(
                    id=resource_row.id,
                    wbs=resource_row.wbs,
                    application=resource_row.application,
                    environment=resource_row.environment,
                    component=resource_row.component,
                    cpu_millicores=resource_row.cpu_millicores,
                    memory_mega_bytes=resource_row.memory_mega_bytes,
                    replicas=resource_row.replicas,
                )
            )
    return list(runs.values())


class RunStore:
    """Persistence for runs and required resources.

    The store owns its engine: it is checked for liveness before every
    operation and disposed by :meth:`close`. Not safe for concurrent use.

    Args:
        engine: SQLAlchemy engine to use.
    """

    def __init__(self, engine: Engine):
        self._engine: Engine | None = engine

    @classmethod
    def from_url(cls, url: str | None = None, echo: bool | None = None) -> RunStore:
        """Create a store with its own engine (see :func:`create_db_engine`)."""
        return cls(create_db_engine(url, echo=echo))

    def __enter__(self) -> RunStore:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Dispose of the engine. Further operations raise ConnectionUnavailable."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def verify_connection(self) -> Engine:
        """Probe the database and return the live engine.

        Raises:
            ConnectionUnavailable: The store is closed or the database does
                not answer.
        """
        if self._engine is None:
            raise ConnectionUnavailable("run store is closed")
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise ConnectionUnavailable(f"database is not reachable: {exc}") from exc
        return self._engine

    def init_schema(self) -> None:
        """Create the runs and required_resources tables if missing."""
        engine = self.verify_connection()
        try:
            init_db(engine)
        except SQLAlchemyError as exc:
            raise StatementFailed(f"failed to create schema: {exc}") from exc

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save_run(
        self,
        measured_time: datetime,
        cluster_cpu_millicores: int,
        cluster_memory_mega_bytes: int,
    ) -> int:
        """Insert a run row and return its id.

        Raises:
            ConnectionUnavailable: See :meth:`verify_connection`.
            StatementFailed: The insert failed; nothing was written.
        """
        engine = self.verify_connection()
        record = RunRecord(
            measured_time_utc=_to_db_time(measured_time),
            cluster_cpu_millicores=cluster_cpu_millicores,
            cluster_memory_mega_bytes=cluster_memory_mega_bytes,
        )
        try:
            with Session(engine) as session:
                session.add(record)
                session.commit()
                run_id = record.id
        except SQLAlchemyError as exc:
            raise StatementFailed(f"failed to insert run: {exc}") from exc

        logger.info("run_saved", run_id=run_id, measured_time=measured_time.isoformat())
        return run_id

    def save_required_resources(self, run: Run, atomic: bool = False) -> None:
        """Insert one row per resource of ``run``.

        Args:
            run: A run that has already been saved (``run.id`` is set).
            atomic: Write all rows in a single transaction.

        Raises:
            ValueError: ``run`` has not been saved.
            ConnectionUnavailable: See :meth:`verify_connection`.
            StatementFailed: An insert failed. Without ``atomic``, rows
                inserted before the failing one remain committed.
        """
        if run.id is None:
            raise ValueError("run must be saved before its resources")
        engine = self.verify_connection()
        if atomic:
            self._insert_resources_atomic(engine, run)
        else:
            self._insert_resources_each(engine, run)
        logger.info("resources_saved", run_id=run.id, count=len(run.resources), atomic=atomic)

    def _insert_resources_each(self, engine: Engine, run: Run) -> None:
        with Session(engine) as session:
            for resource in run.resources:
                record = _to_resource_record(run.id, resource)
                try:
                    session.add(record)
                    session.commit()
                    resource.id = record.id
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise StatementFailed(
                        f"failed to insert required resources for "
                        f"{resource.application}/{resource.environment}/{resource.component}: {exc}"
                    ) from exc

    def _insert_resources_atomic(self, engine: Engine, run: Run) -> None:
        records = [_to_resource_record(run.id, resource) for resource in run.resources]
        current = None
        try:
            with Session(engine) as session:
                for resource, record in zip(run.resources, records):
                    current = resource
                    session.add(record)
                    session.flush()
                session.commit()
                ids = [record.id for record in records]
        except SQLAlchemyError as exc:
            where = ""
            if current is not None:
                where = f" for {current.application}/{current.environment}/{current.component}"
            raise StatementFailed(
                f"failed to insert required resources{where}, batch rolled back: {exc}"
            ) from exc
        for resource, record_id in zip(run.resources, ids):
            resource.id = record_id

    def save(self, run: Run, atomic: bool = False) -> Run:
        """Save ``run`` and its resources; sets ``run.id`` and resource ids."""
        run.id = self.save_run(
            run.measured_time_utc,
            run.cluster_cpu_millicores,
            run.cluster_memory_mega_bytes,
        )
        self.save_required_resources(run, atomic=atomic)
        return run

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_runs_between(self, start: datetime, end: datetime) -> list[Run]:
        """Return runs measured within ``[start, end]``, with their resources.

        Runs without resources are included with an empty resource list.

        Raises:
            ConnectionUnavailable: See :meth:`verify_connection`.
            StatementFailed: The query failed.
        """
        engine = self.verify_connection()
        statement = (
            select(RunRecord, RequiredResourcesRecord)
            .join(
                RequiredResourcesRecord,
                col(RunRecord.id) == col(RequiredResourcesRecord.run_id),
                isouter=True,
            )
            .where(col(RunRecord.measured_time_utc).between(_to_db_time(start), _to_db_time(end)))
            .order_by(col(RunRecord.measured_time_utc), col(RunRecord.id))
        )
        try:
            with Session(engine) as session:
                rows = session.exec(statement).all()
                runs = group_rows(rows)
        except SQLAlchemyError as exc:
            raise StatementFailed(f"failed to load runs: {exc}") from exc

        logger.debug("runs_loaded", count=len(runs))
        return runs
