"""
Sync Orchestrator Module

Drives a sync job through its lifecycle:

    pending -> running -> {paused, completed, failed}
    paused  -> running (resume) | failed (stop)
    failed  -> running (retry from the last checkpoint)

A job's tables are processed in the order they were configured, one batch at
a time. After every batch the orchestrator:
1. persists the checkpoint (before the next batch is read)
2. feeds the batch timing to the BatchOptimizer and MetricsCollector
3. publishes a progress event
4. checks for a pause or stop request

Pause and stop are cooperative. They are requested through a
CancellationToken (same process) or the job's durable requested_action
(any process) and only take effect between batches, so a batch transaction
is never interrupted. A stopped job ends as failed; the job log and log
metadata mark it as stopped by the user.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union
import logging
import threading
import time

from pg_sync.batch_optimizer import BatchConfig, BatchOptimizer, DEFAULT_ROW_SIZE_BYTES
from pg_sync.config import SyncSettings
from pg_sync.connections import ConnectionProvider, require_confirmation
from pg_sync.data_transfer import BatchOutcome, RowBatch, TablePlan, TableTransfer
from pg_sync.diff_engine import DiffEngine, compare_schemas
from pg_sync.errors import (
    BatchWriteError,
    DatabaseConnectionError,
    InvalidJobTransition,
    SchemaIncompatibility,
    SyncError,
)
from pg_sync.job_store import JobStore
from pg_sync.metrics import MetricsCollector, SyncTracer
from pg_sync.models import (
    BatchResult,
    Checkpoint,
    JobStatus,
    RequestedAction,
    SchemaDiff,
    Severity,
    SyncDirection,
    SyncJob,
    SyncProgress,
    TableConfig,
    TableSchema,
)
from pg_sync.progress import NullProgressStream, ProgressEvent, ProgressStream
from pg_sync.schema_inspector import SchemaInspector
from pg_sync.utils import validate_sql_identifier

logger = logging.getLogger(__name__)

ROW_SIZE_SAMPLE = 20
STOPPED_BY_USER = 'Sync stopped by user'


class CancellationToken:
    """Pause/stop request shared between a running job and its controllers."""

    def __init__(self):
        self._event = threading.Event()
        self._action: Optional[RequestedAction] = None
        self._lock = threading.Lock()

    def request(self, action: RequestedAction) -> None:
        # stop overrides an earlier pause
        with self._lock:
            if self._action != RequestedAction.STOP:
                self._action = action
        self._event.set()

    @property
    def action(self) -> Optional[RequestedAction]:
        with self._lock:
            return self._action

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefix messages with the job id."""

    def process(self, msg, kwargs):
        return f"[job {self.extra['job_id']}] {msg}", kwargs


def batch_config_from_settings(settings: SyncSettings) -> BatchConfig:
    return BatchConfig(
        min_batch_size=settings.min_batch_size,
        max_batch_size=settings.max_batch_size,
        target_batch_time_ms=settings.target_batch_time_ms,
        max_memory_mb=settings.max_memory_mb,
        initial_batch_size=settings.initial_batch_size,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """
    Create, validate, run, pause and stop sync jobs.

    Collaborators are injected; one orchestrator owns one BatchOptimizer so
    batch history never leaks between orchestrators.
    """

    def __init__(
        self,
        job_store: JobStore,
        connection_provider: ConnectionProvider,
        progress_stream: Optional[ProgressStream] = None,
        batch_optimizer: Optional[BatchOptimizer] = None,
        settings: Optional[SyncSettings] = None,
        transfer_factory: Callable[..., TableTransfer] = TableTransfer,
        diff_engine: Optional[DiffEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            job_store: Durable job persistence
            connection_provider: Resolves connection ids to database handles
            progress_stream: Receives progress events (default: discard)
            batch_optimizer: Batch sizing (default: built from settings)
            settings: Tunables (default: SyncSettings())
            transfer_factory: Builds a TableTransfer from (source_conn, target_conn, schema_name)
            diff_engine: Dry-run engine (default: built from settings)
            sleep: Used for retry backoff
        """
        self.settings = settings or SyncSettings()
        self.job_store = job_store
        self.connection_provider = connection_provider
        self.progress_stream = progress_stream or NullProgressStream()
        self.batch_optimizer = batch_optimizer or BatchOptimizer(batch_config_from_settings(self.settings))
        self.diff_engine = diff_engine or DiffEngine(
            inspector=SchemaInspector(self.settings.schema_name, self.settings.exclude_tables),
            change_detection=self.settings.change_detection,
        )
        self.transfer_factory = transfer_factory
        self._sleep = sleep
        self._tokens: Dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Job creation and dry run
    # -------------------------------------------------------------------------

    def create_job(
        self,
        user_id: str,
        source_connection_id: str,
        target_connection_id: str,
        direction: Union[SyncDirection, str],
        tables_config: Sequence[Union[TableConfig, Dict[str, Any]]],
        confirmation_token: Optional[str] = None,
    ) -> SyncJob:
        """
        Validate and persist a new pending job.

        Args:
            user_id: Owner of the job
            source_connection_id: Connection rows are read from
            target_connection_id: Connection rows are written to
            direction: one_way or two_way
            tables_config: Tables in sync scope (TableConfig or dicts)
            confirmation_token: Target display name, required for production targets

        Returns:
            The pending SyncJob

        Raises:
            ValueError: If the request is malformed
            DatabaseConnectionError: If a connection cannot be resolved for the user
            ProductionConfirmationRequired: If the production gate is not satisfied
            ConcurrencyLimitExceeded: If the user already has the maximum active jobs
        """
        if not user_id:
            raise ValueError("user_id is required")
        if source_connection_id == target_connection_id:
            raise ValueError("Source and target connections must be different")

        direction = SyncDirection(direction)
        tables = [t if isinstance(t, TableConfig) else TableConfig.from_dict(t) for t in tables_config]
        if not any(t.enabled for t in tables):
            raise ValueError("At least one table must be enabled")

        seen = set()
        for table in tables:
            validate_sql_identifier(table.table_name, "table name")
            if table.table_name in seen:
                raise ValueError(f"Table {table.table_name} is listed more than once")
            seen.add(table.table_name)

        self.connection_provider.get(source_connection_id, user_id)
        target = self.connection_provider.get(target_connection_id, user_id)
        require_confirmation(target, confirmation_token)

        job = self.job_store.create(
            user_id=user_id,
            source_connection_id=source_connection_id,
            target_connection_id=target_connection_id,
            direction=direction,
            tables_config=tables,
            max_active=self.settings.max_concurrent_jobs,
        )
        logger.info(
            f"Created {direction.value} sync job {job.id} for user {user_id}: "
            f"{len(job.enabled_tables)} table(s), {source_connection_id} -> {target_connection_id}"
        )
        self.job_store.append_log(
            job.id, 'info', 'Sync job created',
            {'tables': [t.table_name for t in job.enabled_tables], 'direction': direction.value},
        )
        return job

    def dry_run(self, job_id: str, user_id: str) -> SchemaDiff:
        """
        Compare source and target for the job's tables without writing anything.

        Raises:
            JobNotFound: If the job does not exist for this user
            DatabaseConnectionError: If either database cannot be read
        """
        job = self.job_store.get_by_id(job_id, user_id)
        source_conn, target_conn = self._open_connections(job)
        try:
            diff = self.diff_engine.calculate_diff(
                source_conn, target_conn, [t.table_name for t in job.enabled_tables]
            )
        finally:
            self._close(source_conn, target_conn)

        self.job_store.append_log(job.id, 'info', 'Dry run completed', diff.summary())
        return diff

    # -------------------------------------------------------------------------
    # Lifecycle control
    # -------------------------------------------------------------------------

    def pause(self, job_id: str, user_id: str) -> SyncJob:
        """
        Ask a running job to pause after its in-flight batch.

        Raises:
            InvalidJobTransition: If the job is not running
        """
        job = self.job_store.get_by_id(job_id, user_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidJobTransition(job.id, job.status.value, 'pause')

        self._request(job.id, RequestedAction.PAUSE)
        job = self.job_store.update(job.id, {'requested_action': RequestedAction.PAUSE})
        self.job_store.append_log(job.id, 'info', 'Pause requested')
        logger.info(f"Pause requested for job {job.id}")
        return job

    def stop(self, job_id: str, user_id: str) -> SyncJob:
        """
        Stop a job.

        A running job stops after its in-flight batch; a pending or paused
        job is failed immediately.

        Raises:
            InvalidJobTransition: If the job already completed or failed
        """
        job = self.job_store.get_by_id(job_id, user_id)

        if job.status == JobStatus.RUNNING:
            self._request(job.id, RequestedAction.STOP)
            job = self.job_store.update(job.id, {'requested_action': RequestedAction.STOP})
            self.job_store.append_log(job.id, 'info', 'Stop requested')
            logger.info(f"Stop requested for job {job.id}")
            return job

        if job.status in (JobStatus.PENDING, JobStatus.PAUSED):
            logger.info(f"Stopping {job.status.value} job {job.id}")
            return self._finish_stopped(job.id, job.progress)

        raise InvalidJobTransition(job.id, job.status.value, 'stop')

    def _request(self, job_id: str, action: RequestedAction) -> None:
        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token:
            token.request(action)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    def start(self, job_id: str, user_id: str, token: Optional[CancellationToken] = None) -> SyncJob:
        """
        Run a job until it completes, pauses, stops or fails.

        Pending jobs start at the first table; paused and failed jobs resume
        from their checkpoint. Blocks for the duration of the sync.

        Args:
            job_id: Job to run
            user_id: Owner of the job
            token: Optional cancellation token for in-process pause/stop

        Returns:
            The job in its final state for this run (completed, paused or failed)

        Raises:
            JobNotFound: If the job does not exist for this user
            InvalidJobTransition: If the job is running or completed
            SchemaIncompatibility: If pre-start validation finds critical
                issues (the job is marked failed first)
        """
        job = self.job_store.get_by_id(job_id, user_id)
        if job.status not in (JobStatus.PENDING, JobStatus.PAUSED, JobStatus.FAILED):
            raise InvalidJobTransition(job.id, job.status.value, 'start')

        tables = job.enabled_tables
        resuming = job.checkpoint is not None and job.status != JobStatus.PENDING
        if resuming:
            checkpoint = job.checkpoint
            progress = job.progress
        else:
            checkpoint = Checkpoint(current_table_index=0)
            progress = SyncProgress(total_tables=len(tables))

        job = self.job_store.update(job.id, {
            'status': JobStatus.RUNNING,
            'checkpoint': checkpoint,
            'progress': progress,
            'started_at': job.started_at or _now(),
            'completed_at': None,
            'requested_action': None,
        })

        log = JobLoggerAdapter(logger, {'job_id': job.id, 'user_id': user_id})
        if resuming:
            log.info(
                f"Resuming at table {checkpoint.current_table_index + 1}/{len(tables)} "
                f"after {checkpoint.rows_done_for_table:,} row(s)"
            )
            self.job_store.append_log(job.id, 'info', 'Sync resumed', checkpoint.to_dict())
        else:
            log.info(f"Starting sync of {len(tables)} table(s)")
            self.job_store.append_log(job.id, 'info', 'Sync started')

        token = token or CancellationToken()
        with self._tokens_lock:
            self._tokens[job.id] = token

        metrics = MetricsCollector(job.id, user_id)
        metrics.start_collection()
        tracer = SyncTracer(job.id)
        self._publish(job, 'started', progress)

        source_conn = target_conn = None
        try:
            with tracer.span('sync', tables=len(tables)) as root_span:
                source_conn, target_conn = self._open_connections(job)
                source_tables, target_tables = self._load_schemas(job, source_conn, target_conn, log)
                transfer = self.transfer_factory(source_conn, target_conn, self.settings.schema_name)

                for index in range(checkpoint.current_table_index, len(tables)):
                    table_config = tables[index]
                    action = self._pending_action(job, token)
                    if action:
                        return self._finish_requested(job, action, progress, metrics, log)

                    resume_from = checkpoint if index == checkpoint.current_table_index else None
                    with tracer.span('table', parent=root_span, table=table_config.table_name) as table_span:
                        action, checkpoint = self._sync_table(
                            job, index, table_config, resume_from,
                            source_tables, target_tables, transfer,
                            progress, metrics, tracer, table_span, token, log,
                        )
                    if action:
                        return self._finish_requested(job, action, progress, metrics, log)

            return self._finish_completed(job, len(tables), progress, metrics, log)

        except SchemaIncompatibility as e:
            log.error(f"Schema validation failed: {e}")
            self._finish_failed(job, progress, metrics, e.public_message, {
                'issues': [i.to_dict() for i in e.issues],
            })
            raise
        except DatabaseConnectionError as e:
            log.error(f"Database error: {e}")
            return self._finish_failed(job, progress, metrics, e.public_message)
        except SyncError as e:
            log.error(f"Sync failed: {e}")
            return self._finish_failed(job, progress, metrics, e.public_message)
        except Exception as e:
            log.error(f"Unexpected error during sync: {e}")
            self._finish_failed(job, progress, metrics, 'Sync failed due to an internal error')
            raise
        finally:
            self._close(source_conn, target_conn)
            with self._tokens_lock:
                self._tokens.pop(job.id, None)
            log.debug(f"Trace summary: {tracer.summary()}")

    def _load_schemas(
        self,
        job: SyncJob,
        source_conn,
        target_conn,
        log: logging.LoggerAdapter,
    ) -> Tuple[Dict[str, TableSchema], Dict[str, TableSchema]]:
        """Inspect both sides and, if enabled, block on critical schema issues."""
        inspector = self.diff_engine.inspector
        source_tables = {t.name: t for t in inspector.inspect(source_conn)}
        target_tables = {t.name: t for t in inspector.inspect(target_conn)}

        if self.settings.validate_before_start:
            issues_by_table, _ = compare_schemas(
                source_tables, target_tables, [t.table_name for t in job.enabled_tables]
            )
            issues = [i for table_issues in issues_by_table.values() for i in table_issues]
            critical = [i for i in issues if i.severity == Severity.CRITICAL]
            if critical:
                raise SchemaIncompatibility(critical)
            log.info(f"Schema validation passed ({len(issues)} non-critical issue(s))")

        return source_tables, target_tables

    def _sync_table(
        self,
        job: SyncJob,
        index: int,
        table_config: TableConfig,
        resume_from: Optional[Checkpoint],
        source_tables: Dict[str, TableSchema],
        target_tables: Dict[str, TableSchema],
        transfer: TableTransfer,
        progress: SyncProgress,
        metrics: MetricsCollector,
        tracer: SyncTracer,
        table_span,
        token: CancellationToken,
        log: logging.LoggerAdapter,
    ) -> Tuple[Optional[RequestedAction], Checkpoint]:
        """
        Transfer one table batch by batch.

        Returns:
            Tuple of (requested action that interrupted the table or None,
            latest persisted checkpoint)
        """
        name = table_config.table_name
        source = source_tables.get(name)
        target = target_tables.get(name)
        progress.current_table = name

        if source is None:
            log.warning(f"Table {name} not found in source, skipping")
            self.job_store.append_log(job.id, 'warn', f"Table {name} not found in source; skipped")
            return None, self._complete_table(job, index, progress)
        if target is None:
            raise SyncError(
                f"Table {name} does not exist in target",
                public_message=f"Table {name} does not exist in target; apply the schema migration first",
            )

        try:
            plan = transfer.prepare_table(source, target)
        except ValueError as e:
            raise SyncError(str(e)) from e

        after_key = resume_from.last_processed_key if resume_from else None
        rows_done = resume_from.rows_done_for_table if resume_from else 0
        checkpoint = resume_from or Checkpoint(current_table_index=index)

        progress.current_table_rows = rows_done
        metrics.start_table(name)
        log.info(f"Syncing table {index + 1}/{progress.total_tables}: {name}")

        row_size = (
            self.batch_optimizer.get_average_row_size(name)
            or plan.avg_row_size_bytes
            or DEFAULT_ROW_SIZE_BYTES
        )

        while True:
            if rows_done or after_key is not None:
                action = self._pending_action(job, token)
                if action:
                    return action, checkpoint

            recommendation = self.batch_optimizer.recommend(name, row_size)
            started = time.perf_counter()

            with tracer.span('batch', parent=table_span, table=name, size=recommendation.batch_size):
                batch = transfer.read_batch(plan, after_key, recommendation.batch_size)
                if not batch.rows:
                    break
                outcome = self._apply_with_retry(job, transfer, plan, batch, table_config, progress, metrics, log)

            duration_ms = (time.perf_counter() - started) * 1000
            row_size = self.batch_optimizer.estimate_row_size(batch.rows[:ROW_SIZE_SAMPLE])
            row_count = len(batch.rows)

            rows_done += row_count
            after_key = batch.last_key
            progress.current_table_rows = rows_done
            progress.processed_rows += row_count
            progress.inserted_rows += outcome.inserted
            progress.updated_rows += outcome.updated
            progress.skipped_rows += outcome.skipped
            progress.conflicts += len(outcome.conflicts)

            if outcome.conflicts:
                self.job_store.record_conflicts(job.id, outcome.conflicts)
                self.job_store.append_log(
                    job.id, 'warn', f"{len(outcome.conflicts)} conflict(s) in {name} deferred for manual review"
                )

            checkpoint = Checkpoint(
                current_table_index=index,
                rows_done_for_table=rows_done,
                last_processed_key=after_key,
            )
            self.job_store.update(job.id, {'checkpoint': checkpoint, 'progress': progress})

            self.batch_optimizer.record_result(BatchResult(
                table_name=name,
                batch_size=recommendation.batch_size,
                row_count=row_count,
                avg_row_size_bytes=row_size,
                duration_ms=duration_ms,
                timestamp=_now(),
            ))
            metrics.record_batch(
                name, row_count, duration_ms,
                inserted=outcome.inserted,
                updated=outcome.updated,
                skipped=outcome.skipped,
                bytes_processed=row_size * row_count,
            )
            self._publish(job, 'progress', progress)

            log.debug(
                f"{name}: batch of {row_count} in {duration_ms:.0f}ms "
                f"({recommendation.confidence.value} confidence), {rows_done:,} row(s) done"
            )

            if row_count < recommendation.batch_size:
                break

        metrics.end_table(name)
        log.info(f"Finished table {name}: {rows_done:,} row(s)")
        return None, self._complete_table(job, index, progress)

    def _complete_table(self, job: SyncJob, index: int, progress: SyncProgress) -> Checkpoint:
        table_name = progress.current_table
        checkpoint = Checkpoint(current_table_index=index + 1)
        progress.completed_tables += 1
        progress.current_table_rows = 0
        self.job_store.update(job.id, {'checkpoint': checkpoint, 'progress': progress})
        self._publish(job, 'table_completed', progress, message=table_name)
        return checkpoint

    def _apply_with_retry(
        self,
        job: SyncJob,
        transfer: TableTransfer,
        plan: TablePlan,
        batch: RowBatch,
        table_config: TableConfig,
        progress: SyncProgress,
        metrics: MetricsCollector,
        log: logging.LoggerAdapter,
    ) -> BatchOutcome:
        """
        Write a batch, retrying the same batch on BatchWriteError.

        Raises:
            BatchWriteError: When max_batch_retries retries are exhausted
        """
        max_retries = self.settings.max_batch_retries
        attempt = 0
        while True:
            try:
                return transfer.apply_batch(plan, batch, job.direction, table_config.conflict_strategy)
            except BatchWriteError as e:
                attempt += 1
                progress.errors += 1
                metrics.record_error(plan.table_name)
                if attempt > max_retries:
                    log.error(f"Giving up on batch for {plan.table_name} after {max_retries} retries: {e}")
                    raise

                delay = self.settings.retry_delay_seconds * (2 ** (attempt - 1))
                metrics.record_retry(plan.table_name)
                log.warning(f"{e}; retry {attempt}/{max_retries} in {delay:.1f}s")
                self.job_store.append_log(
                    job.id, 'warn', f"{e.public_message}; retrying ({attempt}/{max_retries})"
                )
                self._sleep(delay)

    def _pending_action(self, job: SyncJob, token: CancellationToken) -> Optional[RequestedAction]:
        """Check the in-process token, then the durable request column."""
        if token.is_set():
            return token.action
        current = self.job_store.get_by_id(job.id, job.user_id)
        return current.requested_action

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    def _finish_completed(
        self,
        job: SyncJob,
        table_count: int,
        progress: SyncProgress,
        metrics: MetricsCollector,
        log: logging.LoggerAdapter,
    ) -> SyncJob:
        progress.current_table = None
        progress.current_table_rows = 0
        job = self.job_store.update(job.id, {
            'status': JobStatus.COMPLETED,
            'checkpoint': Checkpoint(current_table_index=table_count),
            'progress': progress,
            'completed_at': _now(),
            'requested_action': None,
        })
        summary = metrics.complete('completed')
        self.job_store.append_log(job.id, 'info', 'Sync completed', summary.to_dict())
        self._publish(job, 'completed', progress)
        log.info(
            f"Completed: {progress.processed_rows:,} row(s), {progress.inserted_rows:,} inserted, "
            f"{progress.updated_rows:,} updated, {progress.skipped_rows:,} skipped"
        )
        return job

    def _finish_requested(
        self,
        job: SyncJob,
        action: RequestedAction,
        progress: SyncProgress,
        metrics: MetricsCollector,
        log: logging.LoggerAdapter,
    ) -> SyncJob:
        if action == RequestedAction.STOP:
            metrics.complete('stopped')
            log.info("Stopped by user")
            return self._finish_stopped(job.id, progress)

        job = self.job_store.update(job.id, {
            'status': JobStatus.PAUSED,
            'progress': progress,
            'requested_action': None,
        })
        metrics.complete('paused')
        self.job_store.append_log(job.id, 'info', 'Sync paused', job.checkpoint.to_dict() if job.checkpoint else None)
        self._publish(job, 'paused', progress)
        log.info("Paused")
        return job

    def _finish_stopped(self, job_id: str, progress: SyncProgress) -> SyncJob:
        job = self.job_store.update(job_id, {
            'status': JobStatus.FAILED,
            'progress': progress,
            'completed_at': _now(),
            'requested_action': None,
        })
        self.job_store.append_log(job.id, 'info', STOPPED_BY_USER, {'stopped_by_user': True})
        self._publish(job, 'failed', progress, message=STOPPED_BY_USER)
        return job

    def _finish_failed(
        self,
        job: SyncJob,
        progress: SyncProgress,
        metrics: MetricsCollector,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncJob:
        job = self.job_store.update(job.id, {
            'status': JobStatus.FAILED,
            'progress': progress,
            'completed_at': _now(),
            'requested_action': None,
        })
        summary = metrics.complete('failed')
        self.job_store.append_log(
            job.id, 'error', message, {**(metadata or {}), 'stopped_by_user': False, 'metrics': summary.to_dict()}
        )
        self._publish(job, 'failed', progress, message=message)
        return job

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _publish(self, job: SyncJob, event_type: str, progress: SyncProgress, message: Optional[str] = None) -> None:
        status = {
            'started': JobStatus.RUNNING,
            'progress': JobStatus.RUNNING,
            'table_completed': JobStatus.RUNNING,
            'paused': JobStatus.PAUSED,
            'completed': JobStatus.COMPLETED,
            'failed': JobStatus.FAILED,
        }[event_type]
        try:
            self.progress_stream.publish(job.id, ProgressEvent(
                job_id=job.id,
                type=event_type,
                status=status.value,
                progress=progress.to_dict(),
                message=message,
            ))
        except Exception as e:
            logger.warning(f"Could not publish {event_type} event for job {job.id}: {e}")

    def _open_connections(self, job: SyncJob):
        source_info = self.connection_provider.get(job.source_connection_id, job.user_id)
        target_info = self.connection_provider.get(job.target_connection_id, job.user_id)
        source_conn = source_info.open_handle()
        try:
            target_conn = target_info.open_handle()
        except Exception:
            source_conn.close()
            raise
        return source_conn, target_conn

    @staticmethod
    def _close(*conns) -> None:
        for conn in conns:
            if conn is None:
                continue
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"Error closing connection: {e}")
