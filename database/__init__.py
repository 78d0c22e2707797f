"""
Database layer — Multi-backend persistence for the job engine.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_stores
  stores = create_stores({"store_backend": "memory"})
  job_id = await stores.jobs.enqueue("VerifyEmail", {...}, "ws-1")
"""
from database.models import (
    Base, JobRow, RateWindowRow, UsageMetricRow, JobEventRow,
)
from database.session import (
    get_engine, get_session, init_db, close_db, create_engine_for, make_session_scope,
)
from database.store_base import BaseJobStore, BaseRateWindowStore, BaseMetricsStore
from database.store import SqlJobStore, SqlRateWindowStore, SqlMetricsStore
from database.store_memory import InMemoryJobStore, InMemoryRateWindowStore, InMemoryMetricsStore
from database.store_factory import Stores, create_stores, get_stores, reset_stores

__all__ = [
    # ORM models
    "Base", "JobRow", "RateWindowRow", "UsageMetricRow", "JobEventRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    "create_engine_for", "make_session_scope",
    # Store interfaces
    "BaseJobStore", "BaseRateWindowStore", "BaseMetricsStore",
    # Store backends
    "SqlJobStore", "SqlRateWindowStore", "SqlMetricsStore",
    "InMemoryJobStore", "InMemoryRateWindowStore", "InMemoryMetricsStore",
    # Factory
    "Stores", "create_stores", "get_stores", "reset_stores",
]
