"""Database module for run persistence."""

from costalloc.db.engine import create_db_engine, init_db
from costalloc.db.models import RequiredResourcesRecord, RunRecord
from costalloc.db.store import RunStore

__all__ = [
    "create_db_engine",
    "init_db",
    "RequiredResourcesRecord",
    "RunRecord",
    "RunStore",
]
