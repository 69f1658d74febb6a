"""
PostgreSQL to PostgreSQL Sync Utilities

This package provides schema comparison, migration generation and batched,
resumable data sync between two PostgreSQL databases using Apache Airflow.

Modules:
- schema_inspector: Read table snapshots from a PostgreSQL schema
- diff_engine: Dry-run comparison of schemas and row deltas
- migration_generator: Idempotent remediation DDL from diff issues
- statement_splitter: Split SQL scripts on top-level semicolons
- batch_optimizer: Adaptive per-table batch sizing
- orchestrator: Job lifecycle, batch loop, pause/stop and checkpoints
- metrics: Per-job counters and span tracing
- data_transfer: Keyset reads and upsert writes
- conflict_resolver: Two-way conflict detection and merge policy
- job_store: Durable job state, logs and conflicts
- migration_executor: Statement-by-statement DDL execution
- runner: Entry points for Airflow tasks

Configuration:
- SYNC_* environment variables (see config.SyncSettings), optionally from .env
"""

__version__ = "1.0.0"

# Analysis modules
from pg_sync import schema_inspector
from pg_sync import diff_engine
from pg_sync import migration_generator
from pg_sync import statement_splitter

# Sync modules
from pg_sync import batch_optimizer
from pg_sync import data_transfer
from pg_sync import conflict_resolver
from pg_sync import orchestrator
from pg_sync import metrics

# Collaborators
from pg_sync import job_store
from pg_sync import progress
from pg_sync import connections
from pg_sync import migration_executor

__all__ = [
    "schema_inspector",
    "diff_engine",
    "migration_generator",
    "statement_splitter",
    "batch_optimizer",
    "data_transfer",
    "conflict_resolver",
    "orchestrator",
    "metrics",
    "job_store",
    "progress",
    "connections",
    "migration_executor",
]
