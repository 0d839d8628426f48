"""Database tables for runs and their required resources.

All models use SQLModel for Pydantic + SQLAlchemy integration.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


class RunRecord(SQLModel, table=True):
    """One measurement: timestamp plus cluster-wide totals.

    ``measured_time_utc`` is stored as a naive UTC datetime; the column type
    is explicit so timezone handling does not change with the sqlmodel release.
    """

    __tablename__ = "runs"
    __table_args__ = {"extend_existing": True}

    id: int | None = Field(default=None, primary_key=True)
    measured_time_utc: datetime = Field(
        sa_column=Column(DateTime(timezone=False), index=True, nullable=False)
    )
    cluster_cpu_millicores: int
    cluster_memory_mega_bytes: int


class RequiredResourcesRecord(SQLModel, table=True):
    """Requested resources of one component within a run."""

    __tablename__ = "required_resources"
    __table_args__ = {"extend_existing": True}

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(foreign_key="runs.id", index=True)
    wbs: str = Field(default="")  # Cost code, assigned downstream
    application: str
    environment: str
    component: str
    cpu_millicores: int = Field(default=0)
    memory_mega_bytes: int = Field(default=0)
    replicas: int = Field(default=0)
