"""
Sync Job Store Module

Durable storage for sync jobs, their logs and deferred conflicts.

Two implementations share the JobStore interface:
- InMemoryJobStore: process-local, for tests and single-process use
- PostgresJobStore: tables in a metadata database reached through an
  Airflow connection (_pg_sync_jobs, _pg_sync_logs, _pg_sync_conflicts)

Both enforce the same rules through apply_patch():
- a completed/failed job's checkpoint is frozen; only a patch that moves
  the job back to running (a retry) may change it
- the per-user active job cap is checked atomically with the insert
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import json
import logging
import threading
import uuid

from airflow.providers.postgres.hooks.postgres import PostgresHook

from pg_sync.errors import ConcurrencyLimitExceeded, JobNotFound
from pg_sync.models import (
    Checkpoint,
    Conflict,
    JobStatus,
    RequestedAction,
    SyncDirection,
    SyncJob,
    SyncProgress,
    TableConfig,
)
from pg_sync.utils import truncate_string

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    'status',
    'checkpoint',
    'progress',
    'started_at',
    'completed_at',
    'requested_action',
})

LOG_LEVELS = ('debug', 'info', 'warn', 'error')


@dataclass(frozen=True)
class JobLogEntry:
    job_id: str
    level: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def apply_patch(job: SyncJob, patch: Dict[str, Any]) -> SyncJob:
    """
    Apply a partial update to a job.

    Args:
        job: Current job
        patch: Field name -> new value (only mutable fields)

    Returns:
        Updated job

    Raises:
        ValueError: For unknown/immutable fields, or a checkpoint change on a
            terminal job that is not being restarted
    """
    unknown = set(patch) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

    if (
        job.status.is_terminal
        and 'checkpoint' in patch
        and patch['checkpoint'] != job.checkpoint
        and patch.get('status') != JobStatus.RUNNING
    ):
        raise ValueError(f"Checkpoint of {job.status.value} job {job.id} is frozen")

    return replace(job, **patch)


class JobStore:
    """Interface for job persistence."""

    def create(
        self,
        user_id: str,
        source_connection_id: str,
        target_connection_id: str,
        direction: SyncDirection,
        tables_config: Sequence[TableConfig],
        max_active: Optional[int] = None,
    ) -> SyncJob:
        raise NotImplementedError

    def update(self, job_id: str, patch: Dict[str, Any]) -> SyncJob:
        raise NotImplementedError

    def get_by_id(self, job_id: str, user_id: str) -> SyncJob:
        raise NotImplementedError

    def append_log(self, job_id: str, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    def count_active(self, user_id: str) -> int:
        raise NotImplementedError

    def record_conflicts(self, job_id: str, conflicts: List[Conflict]) -> None:
        raise NotImplementedError

    def get_logs(self, job_id: str) -> List[JobLogEntry]:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """Thread-safe process-local job store."""

    def __init__(self):
        self._jobs: Dict[str, SyncJob] = {}
        self._logs: Dict[str, List[JobLogEntry]] = {}
        self._conflicts: Dict[str, List[Conflict]] = {}
        self._lock = threading.Lock()

    def create(
        self,
        user_id: str,
        source_connection_id: str,
        target_connection_id: str,
        direction: SyncDirection,
        tables_config: Sequence[TableConfig],
        max_active: Optional[int] = None,
    ) -> SyncJob:
        with self._lock:
            if max_active is not None:
                active = sum(1 for j in self._jobs.values() if j.user_id == user_id and j.status.is_active)
                if active >= max_active:
                    raise ConcurrencyLimitExceeded(user_id, max_active)

            job = SyncJob(
                id=str(uuid.uuid4()),
                user_id=user_id,
                source_connection_id=source_connection_id,
                target_connection_id=target_connection_id,
                direction=direction,
                tables_config=tuple(tables_config),
                progress=SyncProgress(total_tables=sum(1 for t in tables_config if t.enabled)),
                created_at=datetime.now(timezone.utc),
            )
            self._jobs[job.id] = job
            return job

    def update(self, job_id: str, patch: Dict[str, Any]) -> SyncJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            updated = apply_patch(job, patch)
            self._jobs[job_id] = updated
            return updated

    def get_by_id(self, job_id: str, user_id: str) -> SyncJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFound(job_id)
        return job

    def append_log(self, job_id: str, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._logs.setdefault(job_id, []).append(
                JobLogEntry(job_id=job_id, level=level, message=message, metadata=dict(metadata or {}))
            )

    def count_active(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.user_id == user_id and j.status.is_active)

    def record_conflicts(self, job_id: str, conflicts: List[Conflict]) -> None:
        with self._lock:
            self._conflicts.setdefault(job_id, []).extend(conflicts)

    def get_logs(self, job_id: str) -> List[JobLogEntry]:
        with self._lock:
            return list(self._logs.get(job_id, []))

    def get_conflicts(self, job_id: str) -> List[Conflict]:
        with self._lock:
            return list(self._conflicts.get(job_id, []))


# =============================================================================
# PostgreSQL-backed store
# =============================================================================

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS _pg_sync_jobs (
    id VARCHAR(64) PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL,
    source_connection_id VARCHAR(255) NOT NULL,
    target_connection_id VARCHAR(255) NOT NULL,
    direction VARCHAR(20) NOT NULL,
    tables_config JSONB NOT NULL,

    -- Lifecycle
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    requested_action VARCHAR(20),
    started_at TIMESTAMP WITH TIME ZONE,
    completed_at TIMESTAMP WITH TIME ZONE,

    -- Resumability
    checkpoint JSONB,
    progress JSONB NOT NULL DEFAULT '{}'::jsonb,

    -- Metadata
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_pg_sync_jobs_user_status
    ON _pg_sync_jobs(user_id, status);

CREATE TABLE IF NOT EXISTS _pg_sync_logs (
    id BIGSERIAL PRIMARY KEY,
    job_id VARCHAR(64) NOT NULL REFERENCES _pg_sync_jobs(id) ON DELETE CASCADE,
    level VARCHAR(10) NOT NULL,
    message TEXT NOT NULL,
    metadata JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_pg_sync_logs_job
    ON _pg_sync_logs(job_id, id);

CREATE TABLE IF NOT EXISTS _pg_sync_conflicts (
    id BIGSERIAL PRIMARY KEY,
    job_id VARCHAR(64) NOT NULL REFERENCES _pg_sync_jobs(id) ON DELETE CASCADE,
    table_name VARCHAR(255) NOT NULL,
    row_key JSONB NOT NULL,
    source_row JSONB,
    target_row JSONB,
    resolved BOOLEAN NOT NULL DEFAULT FALSE,
    detected_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
"""

UPDATE_TIMESTAMP_FUNCTION = """
CREATE OR REPLACE FUNCTION update_pg_sync_jobs_timestamp()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = CURRENT_TIMESTAMP;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

UPDATE_TIMESTAMP_TRIGGER = """
DO $$
BEGIN
    IF NOT EXISTS (
        SELECT 1 FROM pg_trigger WHERE tgname = 'trg_pg_sync_jobs_updated'
    ) THEN
        CREATE TRIGGER trg_pg_sync_jobs_updated
            BEFORE UPDATE ON _pg_sync_jobs
            FOR EACH ROW
            EXECUTE FUNCTION update_pg_sync_jobs_timestamp();
    END IF;
END;
$$;
"""

JOB_COLUMNS = (
    'id, user_id, source_connection_id, target_connection_id, direction, tables_config, '
    'status, checkpoint, progress, started_at, completed_at, requested_action, created_at'
)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _row_to_job(row: Sequence[Any]) -> SyncJob:
    (job_id, user_id, source_id, target_id, direction, tables_config, status,
     checkpoint, progress, started_at, completed_at, requested_action, created_at) = row
    return SyncJob(
        id=job_id,
        user_id=user_id,
        source_connection_id=source_id,
        target_connection_id=target_id,
        direction=SyncDirection(direction),
        tables_config=tuple(TableConfig.from_dict(t) for t in (_load_json(tables_config) or [])),
        status=JobStatus(status),
        checkpoint=Checkpoint.from_dict(_load_json(checkpoint)),
        progress=SyncProgress.from_dict(_load_json(progress)),
        started_at=started_at,
        completed_at=completed_at,
        requested_action=RequestedAction(requested_action) if requested_action else None,
        created_at=created_at,
    )


class PostgresJobStore(JobStore):
    """
    Job store backed by tables in a PostgreSQL metadata database.

    Every method opens its own connection through PostgresHook and closes it
    before returning, so one store can be shared by concurrent tasks.
    """

    def __init__(self, postgres_conn_id: str):
        """
        Initialize the job store.

        Args:
            postgres_conn_id: Airflow connection ID for the metadata database
        """
        self.postgres_conn_id = postgres_conn_id
        self._hook = PostgresHook(postgres_conn_id=postgres_conn_id)

    def ensure_tables_exist(self) -> None:
        """
        Create the job tables if they don't exist.

        Safe to call multiple times (idempotent).
        """
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(JOBS_TABLE_DDL)
                cursor.execute(UPDATE_TIMESTAMP_FUNCTION)
                cursor.execute(UPDATE_TIMESTAMP_TRIGGER)
            conn.commit()
            logger.info("Ensured _pg_sync_jobs tables exist")
        except Exception as e:
            logger.error(f"Error creating job tables: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def create(
        self,
        user_id: str,
        source_connection_id: str,
        target_connection_id: str,
        direction: SyncDirection,
        tables_config: Sequence[TableConfig],
        max_active: Optional[int] = None,
    ) -> SyncJob:
        """
        Insert a pending job.

        The active job count and the insert run under a per-user advisory
        lock, so concurrent submissions cannot overshoot ``max_active``.

        Raises:
            ConcurrencyLimitExceeded: If the user already has max_active active jobs
        """
        job_id = str(uuid.uuid4())
        progress = SyncProgress(total_tables=sum(1 for t in tables_config if t.enabled))

        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))
                if max_active is not None:
                    cursor.execute(
                        """
                        SELECT COUNT(*) FROM _pg_sync_jobs
                        WHERE user_id = %s AND status IN ('pending', 'running')
                        """,
                        (user_id,)
                    )
                    if cursor.fetchone()[0] >= max_active:
                        raise ConcurrencyLimitExceeded(user_id, max_active)

                cursor.execute(
                    f"""
                    INSERT INTO _pg_sync_jobs (
                        id, user_id, source_connection_id, target_connection_id,
                        direction, tables_config, status, progress
                    ) VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s)
                    RETURNING {JOB_COLUMNS}
                    """,
                    (
                        job_id,
                        user_id,
                        source_connection_id,
                        target_connection_id,
                        direction.value,
                        _dump_json([t.to_dict() for t in tables_config]),
                        _dump_json(progress.to_dict()),
                    )
                )
                job = _row_to_job(cursor.fetchone())
            conn.commit()
            logger.info(f"Created sync job {job_id} for user {user_id}")
            return job
        except Exception as e:
            if not isinstance(e, ConcurrencyLimitExceeded):
                logger.error(f"Error creating sync job: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def update(self, job_id: str, patch: Dict[str, Any]) -> SyncJob:
        """
        Apply a partial update under a row lock.

        Raises:
            JobNotFound: If the job does not exist
            ValueError: If the patch violates apply_patch rules
        """
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {JOB_COLUMNS} FROM _pg_sync_jobs WHERE id = %s FOR UPDATE",
                    (job_id,)
                )
                row = cursor.fetchone()
                if not row:
                    raise JobNotFound(job_id)

                job = apply_patch(_row_to_job(row), patch)

                cursor.execute(
                    """
                    UPDATE _pg_sync_jobs SET
                        status = %s,
                        checkpoint = %s,
                        progress = %s,
                        started_at = %s,
                        completed_at = %s,
                        requested_action = %s
                    WHERE id = %s
                    """,
                    (
                        job.status.value,
                        _dump_json(job.checkpoint.to_dict()) if job.checkpoint else None,
                        _dump_json(job.progress.to_dict()),
                        job.started_at,
                        job.completed_at,
                        job.requested_action.value if job.requested_action else None,
                        job_id,
                    )
                )
            conn.commit()
            logger.debug(f"Updated job {job_id}: {', '.join(sorted(patch))}")
            return job
        except Exception as e:
            logger.error(f"Error updating job {job_id}: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get_by_id(self, job_id: str, user_id: str) -> SyncJob:
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {JOB_COLUMNS} FROM _pg_sync_jobs WHERE id = %s AND user_id = %s",
                    (job_id, user_id)
                )
                row = cursor.fetchone()
        finally:
            if conn:
                conn.close()

        if not row:
            raise JobNotFound(job_id)
        return _row_to_job(row)

    def append_log(self, job_id: str, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Add a user-visible log line to a job.

        Failures are logged and swallowed; a lost log line must not stop a sync.
        """
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO _pg_sync_logs (job_id, level, message, metadata)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (job_id, level, truncate_string(message, 2000), _dump_json(metadata or {}))
                )
            conn.commit()
        except Exception as e:
            logger.warning(f"Error writing job log for {job_id}: {e}")
            if conn:
                conn.rollback()
        finally:
            if conn:
                conn.close()

    def count_active(self, user_id: str) -> int:
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    SELECT COUNT(*) FROM _pg_sync_jobs
                    WHERE user_id = %s AND status IN ('pending', 'running')
                    """,
                    (user_id,)
                )
                return cursor.fetchone()[0]
        finally:
            if conn:
                conn.close()

    def record_conflicts(self, job_id: str, conflicts: List[Conflict]) -> None:
        if not conflicts:
            return

        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.executemany(
                    """
                    INSERT INTO _pg_sync_conflicts (
                        job_id, table_name, row_key, source_row, target_row, detected_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            job_id,
                            c.table_name,
                            _dump_json(c.row_key),
                            _dump_json(c.source_row),
                            _dump_json(c.target_row),
                            c.detected_at,
                        )
                        for c in conflicts
                    ]
                )
            conn.commit()
            logger.info(f"Recorded {len(conflicts)} conflict(s) for job {job_id}")
        except Exception as e:
            logger.error(f"Error recording conflicts for job {job_id}: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get_logs(self, job_id: str) -> List[JobLogEntry]:
        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    SELECT job_id, level, message, metadata, created_at
                    FROM _pg_sync_logs
                    WHERE job_id = %s
                    ORDER BY id
                    """,
                    (job_id,)
                )
                rows = cursor.fetchall()
        finally:
            if conn:
                conn.close()

        return [
            JobLogEntry(
                job_id=row[0],
                level=row[1],
                message=row[2],
                metadata=_load_json(row[3]) or {},
                created_at=row[4],
            )
            for row in rows
        ]
