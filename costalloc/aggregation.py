"""Merge cpu, memory and replica vectors into resource records.

The replica vector decides which components exist in the result. CPU and
memory samples are then attached to those records; a cpu or memory sample
whose key never appeared among the replicas is either skipped with a warning
or, in strict mode, reported as :class:`AggregationInconsistency`.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from costalloc.errors import AggregationInconsistency
from costalloc.logging import get_logger
from costalloc.models import RequiredResources, ResourceKey, Sample

logger = get_logger(__name__)


def _truncate(value: float, metric: str, key: ResourceKey) -> int:
    if not math.isfinite(value):
        logger.warning(
            "non_finite_sample",
            metric=metric,
            value=str(value),
            **key._asdict(),
        )
        return 0
    return int(value)


def _attach(
    records: dict[ResourceKey, RequiredResources],
    samples: Iterable[Sample],
    metric: str,
    attribute: str,
    strict: bool,
) -> None:
    for sample in samples:
        key = sample.key
        record = records.get(key)
        if record is None:
            if strict:
                raise AggregationInconsistency(metric, key)
            logger.warning("unmatched_sample_skipped", metric=metric, **key._asdict())
            continue
        setattr(record, attribute, _truncate(sample.value, metric, key))


def map_to_required_resources(
    cpu: Iterable[Sample],
    memory: Iterable[Sample],
    replicas: Iterable[Sample],
    strict: bool = False,
) -> list[RequiredResources]:
    """Join the three vectors by (application, environment, component).

    Args:
        cpu: Requested CPU samples, in millicores.
        memory: Requested memory samples, in megabytes.
        replicas: Requested replica samples. One record is produced per
            distinct key in this vector.
        strict: Raise instead of skipping cpu/memory samples without a
            matching replica sample.

    Returns:
        Flat list of records. Order is unspecified.

    Raises:
        AggregationInconsistency: ``strict`` is set and a cpu or memory sample
            has no replica counterpart.
    """
    records: dict[ResourceKey, RequiredResources] = {}

    for sample in replicas:
        key = sample.key
        records[key] = RequiredResources.for_key(
            key, replicas=_truncate(sample.value, "replicas", key)
        )

    _attach(records, cpu, "cpu", "cpu_millicores", strict)
    _attach(records, memory, "memory", "memory_mega_bytes", strict)

    return list(records.values())


def cluster_totals(resources: Iterable[RequiredResources]) -> tuple[int, int]:
    """Sum cpu millicores and memory megabytes over ``resources``."""
    cpu = 0
    memory = 0
    for resource in resources:
        cpu += resource.cpu_millicores
        memory += resource.memory_mega_bytes
    return cpu, memory
