"""One collection run: sample Prometheus, aggregate, persist."""

from __future__ import annotations

from datetime import UTC, datetime

from costalloc.aggregation import cluster_totals
from costalloc.db.store import RunStore
from costalloc.logging import bind_context, get_logger, unbind_context
from costalloc.models import Run, to_utc
from costalloc.prometheus.client import PrometheusClient

logger = get_logger(__name__)


def collect_run(
    prometheus: PrometheusClient,
    store: RunStore,
    measured_time: datetime | None = None,
    cluster_cpu_millicores: int | None = None,
    cluster_memory_mega_bytes: int | None = None,
    strict: bool = False,
    atomic: bool = False,
) -> Run:
    """Collect required resources at ``measured_time`` and save them as a run.

    Args:
        prometheus: Metrics backend client.
        store: Run store to persist into.
        measured_time: Measurement timestamp; defaults to now (UTC, whole
            seconds).
        cluster_cpu_millicores: Cluster-wide cpu total; defaults to the sum
            over all collected resources.
        cluster_memory_mega_bytes: Cluster-wide memory total; defaults to
            the sum over all collected resources.
        strict: Fail on cpu/memory samples without a replicas sample.
        atomic: Insert all resource rows in one transaction.

    Returns:
        The saved run, with ids assigned.
    """
    if measured_time is None:
        measured_time = datetime.now(UTC).replace(microsecond=0)
    measured_time = to_utc(measured_time)

    bind_context(measured_time=measured_time.isoformat())
    try:
        resources = prometheus.get_required_resources(measured_time, strict=strict)
        cpu_total, memory_total = cluster_totals(resources)
        if cluster_cpu_millicores is not None:
            cpu_total = cluster_cpu_millicores
        if cluster_memory_mega_bytes is not None:
            memory_total = cluster_memory_mega_bytes

        run = Run(
            measured_time_utc=measured_time,
            cluster_cpu_millicores=cpu_total,
            cluster_memory_mega_bytes=memory_total,
            resources=resources,
        )
        store.save(run, atomic=atomic)
        logger.info(
            "run_collected",
            run_id=run.id,
            resources=len(resources),
            cluster_cpu_millicores=cpu_total,
            cluster_memory_mega_bytes=memory_total,
        )
        return run
    finally:
        unbind_context("measured_time")
