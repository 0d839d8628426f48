"""Domain types shared by the adapter, the aggregator and the run store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import NamedTuple

# Labels every required-resources query groups by.
APPLICATION_LABEL = "application"
ENVIRONMENT_LABEL = "environment"
COMPONENT_LABEL = "component"


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive datetimes are taken to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ResourceKey(NamedTuple):
    """Identifies one component's resource usage within a measurement."""

    application: str
    environment: str
    component: str


@dataclass(frozen=True)
class Sample:
    """One element of an instant-query vector."""

    labels: dict[str, str]
    value: float
    timestamp: float | None = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(
            self.labels.get(APPLICATION_LABEL, ""),
            self.labels.get(ENVIRONMENT_LABEL, ""),
            self.labels.get(COMPONENT_LABEL, ""),
        )


@dataclass
class RequiredResources:
    """Requested CPU, memory and replicas for one component.

    ``wbs`` and ``id`` are only set on records loaded from (or written to)
    the run store.
    """

    application: str
    environment: str
    component: str
    cpu_millicores: int = 0
    memory_mega_bytes: int = 0
    replicas: int = 0
    wbs: str | None = None
    id: int | None = None

    @classmethod
    def for_key(cls, key: ResourceKey, **values) -> RequiredResources:
        return cls(key.application, key.environment, key.component, **values)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.application, self.environment, self.component)


@dataclass
class Run:
    """A timestamped snapshot of cluster totals and per-component usage."""

    measured_time_utc: datetime
    cluster_cpu_millicores: int
    cluster_memory_mega_bytes: int
    resources: list[RequiredResources] = field(default_factory=list)
    id: int | None = None

    def __post_init__(self) -> None:
        self.measured_time_utc = to_utc(self.measured_time_utc)
