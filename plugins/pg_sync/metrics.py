"""
Sync Metrics and Tracing Module

MetricsCollector accumulates per-job and per-table counters while a sync
runs; observers read copies via get_metrics() and never touch the live
record. SyncTracer records timed spans (job -> table -> batch) for
post-mortem analysis of slow or failed runs.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
import copy
import logging
import threading
import time
import uuid

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass
class TableMetrics:
    table_name: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    batch_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    bytes_processed: int = 0
    total_batch_time_ms: float = 0.0
    peak_batch_memory_mb: float = 0.0

    @property
    def avg_batch_time_ms(self) -> float:
        return self.total_batch_time_ms / self.batch_count if self.batch_count else 0.0

    @property
    def rows_per_second(self) -> float:
        if self.total_batch_time_ms <= 0:
            return 0.0
        return self.rows_processed / (self.total_batch_time_ms / 1000)


@dataclass
class SyncMetrics:
    job_id: str
    user_id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: str = 'running'
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    batch_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    bytes_processed: int = 0
    total_batch_time_ms: float = 0.0
    peak_batch_memory_mb: float = 0.0
    tables: Dict[str, TableMetrics] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds() * 1000

    @property
    def rows_per_second(self) -> float:
        if self.total_batch_time_ms <= 0:
            return 0.0
        return self.rows_processed / (self.total_batch_time_ms / 1000)

    @property
    def avg_batch_time_ms(self) -> float:
        return self.total_batch_time_ms / self.batch_count if self.batch_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'status': self.status,
            'duration_ms': round(self.duration_ms, 1),
            'rows_processed': self.rows_processed,
            'rows_inserted': self.rows_inserted,
            'rows_updated': self.rows_updated,
            'rows_skipped': self.rows_skipped,
            'batch_count': self.batch_count,
            'error_count': self.error_count,
            'retry_count': self.retry_count,
            'rows_per_second': round(self.rows_per_second, 1),
            'avg_batch_time_ms': round(self.avg_batch_time_ms, 1),
            'peak_batch_memory_mb': round(self.peak_batch_memory_mb, 2),
            'tables': {
                name: {
                    'rows_processed': t.rows_processed,
                    'rows_inserted': t.rows_inserted,
                    'rows_updated': t.rows_updated,
                    'rows_skipped': t.rows_skipped,
                    'batch_count': t.batch_count,
                    'error_count': t.error_count,
                    'retry_count': t.retry_count,
                    'rows_per_second': round(t.rows_per_second, 1),
                }
                for name, t in self.tables.items()
            },
        }


class MetricsCollector:
    """Collects counters for one sync job."""

    def __init__(
        self,
        job_id: str,
        user_id: str,
        on_update: Optional[Callable[[SyncMetrics], None]] = None,
    ):
        """
        Initialize the collector.

        Args:
            job_id: Sync job being measured
            user_id: Owner of the job
            on_update: Optional callback receiving a snapshot after each batch
        """
        self._metrics = SyncMetrics(job_id=job_id, user_id=user_id)
        self._on_update = on_update
        self._lock = threading.Lock()

    def start_collection(self) -> None:
        with self._lock:
            self._metrics.started_at = datetime.now(timezone.utc)
            self._metrics.status = 'running'

    def start_table(self, table_name: str) -> None:
        with self._lock:
            table = self._metrics.tables.setdefault(table_name, TableMetrics(table_name=table_name))
            if table.started_at is None:
                table.started_at = datetime.now(timezone.utc)

    def record_batch(
        self,
        table_name: str,
        row_count: int,
        duration_ms: float,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        bytes_processed: int = 0,
    ) -> None:
        """
        Record one committed batch.

        Peak memory is estimated from the batch's byte size, which is what
        the batch optimizer budgets against.
        """
        batch_mb = bytes_processed / BYTES_PER_MB
        with self._lock:
            table = self._metrics.tables.setdefault(table_name, TableMetrics(table_name=table_name))
            for target in (self._metrics, table):
                target.rows_processed += row_count
                target.rows_inserted += inserted
                target.rows_updated += updated
                target.rows_skipped += skipped
                target.batch_count += 1
                target.bytes_processed += bytes_processed
                target.total_batch_time_ms += duration_ms
                target.peak_batch_memory_mb = max(target.peak_batch_memory_mb, batch_mb)
            snapshot = self._snapshot()

        if self._on_update:
            self._on_update(snapshot)

    def record_error(self, table_name: Optional[str] = None) -> None:
        with self._lock:
            self._metrics.error_count += 1
            if table_name:
                self._metrics.tables.setdefault(table_name, TableMetrics(table_name=table_name)).error_count += 1

    def record_retry(self, table_name: Optional[str] = None) -> None:
        with self._lock:
            self._metrics.retry_count += 1
            if table_name:
                self._metrics.tables.setdefault(table_name, TableMetrics(table_name=table_name)).retry_count += 1

    def end_table(self, table_name: str) -> None:
        with self._lock:
            table = self._metrics.tables.get(table_name)
            if table:
                table.completed_at = datetime.now(timezone.utc)

    def complete(self, status: str) -> SyncMetrics:
        with self._lock:
            self._metrics.completed_at = datetime.now(timezone.utc)
            self._metrics.status = status
            snapshot = self._snapshot()
        logger.info(
            f"Job {snapshot.job_id} {status}: {snapshot.rows_processed:,} rows in "
            f"{snapshot.batch_count} batches ({snapshot.rows_per_second:,.0f} rows/sec, "
            f"{snapshot.error_count} errors, {snapshot.retry_count} retries)"
        )
        return snapshot

    def get_metrics(self) -> SyncMetrics:
        """Deep copy of the current metrics."""
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> SyncMetrics:
        return replace(self._metrics, tables=copy.deepcopy(self._metrics.tables))


@dataclass
class TraceSpan:
    span_id: str
    trace_id: str
    operation_name: str
    parent_span_id: Optional[str] = None
    start_time: float = 0.0
    end_time: Optional[float] = None
    status: str = 'running'
    tags: Dict[str, Any] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    def log(self, message: str, **fields: Any) -> None:
        self.logs.append({'timestamp': time.time(), 'message': message, **fields})


class SyncTracer:
    """Records spans for one job; the trace id is the job id."""

    def __init__(self, job_id: str):
        self.trace_id = job_id
        self._spans: List[TraceSpan] = []
        self._lock = threading.Lock()

    def start_span(self, operation_name: str, parent: Optional[TraceSpan] = None, **tags: Any) -> TraceSpan:
        span = TraceSpan(
            span_id=uuid.uuid4().hex[:16],
            trace_id=self.trace_id,
            operation_name=operation_name,
            parent_span_id=parent.span_id if parent else None,
            start_time=time.monotonic(),
            tags=dict(tags),
        )
        with self._lock:
            self._spans.append(span)
        return span

    def finish_span(self, span: TraceSpan, error: Optional[BaseException] = None) -> None:
        span.end_time = time.monotonic()
        if error is not None:
            span.status = 'error'
            span.error_message = str(error)
        else:
            span.status = 'completed'

    @contextmanager
    def span(self, operation_name: str, parent: Optional[TraceSpan] = None, **tags: Any) -> Iterator[TraceSpan]:
        """Time a block; exceptions mark the span as failed and propagate."""
        span = self.start_span(operation_name, parent, **tags)
        try:
            yield span
        except BaseException as e:
            self.finish_span(span, e)
            raise
        else:
            self.finish_span(span)

    def get_spans(self) -> List[TraceSpan]:
        with self._lock:
            return list(self._spans)

    def summary(self) -> Dict[str, Any]:
        spans = self.get_spans()
        return {
            'trace_id': self.trace_id,
            'span_count': len(spans),
            'error_count': sum(1 for s in spans if s.status == 'error'),
            'slowest': sorted(
                (
                    {'operation': s.operation_name, 'duration_ms': round(s.duration_ms, 1), **s.tags}
                    for s in spans if s.duration_ms is not None
                ),
                key=lambda s: s['duration_ms'],
                reverse=True,
            )[:5],
        }
