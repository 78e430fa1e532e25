"""
Database Layer for EvidenceChain

Provides:
- PostgreSQL schema
- RecordStore abstraction (InMemory for dev, Postgres for prod)
- Environment-based configuration
"""

from .store import (
    RecordStore,
    InMemoryRecordStore,
    PostgresRecordStore,
    WriteContext,
    create_record_store,
    SCHEMA_SQL,
)
from .config import DatabaseConfig, RecordStoreDriver, get_database_url, get_recordstore_driver

__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "WriteContext",
    "create_record_store",
    "SCHEMA_SQL",
    "DatabaseConfig",
    "RecordStoreDriver",
    "get_database_url",
    "get_recordstore_driver",
]
