"""
Data Model Module

Records shared by every stage of the sync pipeline:
- Schema snapshots (TableSchema, ColumnDefinition, ForeignKeyReference)
- Diff results (ValidationIssue, TableDiff, SchemaDiff)
- Jobs and their durable state (SyncJob, Checkpoint, SyncProgress)
- Batch sizing records (BatchResult, BatchRecommendation)

Enumerations are str-valued so they serialize directly into JSON columns.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueKind(str, Enum):
    """Discriminator for ValidationIssue; drives remediation generation."""

    TABLE_MISSING_IN_TARGET = "table_missing_in_target"
    TABLE_MISSING_IN_SOURCE = "table_missing_in_source"
    TABLE_MISSING = "table_missing"
    COLUMN_MISSING_IN_TARGET = "column_missing_in_target"
    COLUMN_EXTRA_IN_TARGET = "column_extra_in_target"
    TYPE_MISMATCH = "type_mismatch"
    NULLABLE_MISMATCH = "nullable_mismatch"
    DEFAULT_MISMATCH = "default_mismatch"
    PRIMARY_KEY_MISSING_IN_TARGET = "primary_key_missing_in_target"
    PRIMARY_KEY_MISSING_IN_SOURCE = "primary_key_missing_in_source"
    PRIMARY_KEY_MISMATCH = "primary_key_mismatch"
    FOREIGN_KEY_MISSING_IN_TARGET = "foreign_key_missing_in_target"
    FOREIGN_KEY_EXTRA_IN_TARGET = "foreign_key_extra_in_target"
    CIRCULAR_DEPENDENCY = "circular_dependency"


class ConflictStrategy(str, Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MERGE = "merge"
    MANUAL = "manual"


class SyncDirection(str, Enum):
    ONE_WAY = "one_way"
    TWO_WAY = "two_way"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """Active jobs count against the per-user concurrency cap."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RequestedAction(str, Enum):
    PAUSE = "pause"
    STOP = "stop"


# =============================================================================
# Schema snapshots
# =============================================================================

@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    type: str
    nullable: bool = True
    is_primary_key: bool = False
    default: Optional[str] = None


@dataclass(frozen=True)
class ForeignKeyReference:
    constraint_name: str
    columns: Tuple[str, ...]
    referenced_table: str
    referenced_columns: Tuple[str, ...]
    on_delete: str = "NO ACTION"

    def same_shape(self, other: "ForeignKeyReference") -> bool:
        """Compare by structure, ignoring the constraint name."""
        return (
            self.columns == other.columns
            and self.referenced_table == other.referenced_table
            and self.referenced_columns == other.referenced_columns
        )


@dataclass(frozen=True)
class TableSchema:
    """
    Snapshot of one table as read by the SchemaInspector.

    Snapshots are immutable once produced; diffs reference them directly.
    """

    name: str
    columns: Tuple[ColumnDefinition, ...]
    foreign_keys: Tuple[ForeignKeyReference, ...] = ()
    approximate_row_count: int = 0
    approximate_size_bytes: int = 0
    primary_key_name: Optional[str] = None
    primary_key_order: Tuple[str, ...] = ()

    @property
    def primary_key(self) -> List[str]:
        """PK column names in key order (falls back to column order)."""
        if self.primary_key_order:
            return list(self.primary_key_order)
        return [c.name for c in self.columns if c.is_primary_key]

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDefinition]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def avg_row_size_bytes(self) -> Optional[int]:
        if self.approximate_row_count > 0 and self.approximate_size_bytes > 0:
            return max(1, self.approximate_size_bytes // self.approximate_row_count)
        return None


# =============================================================================
# Diff results
# =============================================================================

@dataclass(frozen=True)
class ValidationIssue:
    id: str
    table_name: str
    kind: IssueKind
    severity: Severity
    message: str
    recommendation: str = ""
    column_name: Optional[str] = None
    constraint_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'table_name': self.table_name,
            'column_name': self.column_name,
            'constraint_name': self.constraint_name,
            'kind': self.kind.value,
            'severity': self.severity.value,
            'message': self.message,
            'recommendation': self.recommendation,
        }


@dataclass(frozen=True)
class TableDiff:
    table_name: str
    issues: Tuple[ValidationIssue, ...] = ()
    inserts: int = 0
    updates: int = 0
    source_row_count: int = 0
    target_row_count: int = 0

    @property
    def has_critical(self) -> bool:
        return any(i.severity == Severity.CRITICAL for i in self.issues)


@dataclass(frozen=True)
class SchemaDiff:
    """Result of a dry run: per-table issues plus aggregate row deltas."""

    tables: Tuple[TableDiff, ...]
    source_schemas: Dict[str, TableSchema] = field(default_factory=dict)
    target_schemas: Dict[str, TableSchema] = field(default_factory=dict)
    sync_order: Tuple[str, ...] = ()

    @property
    def total_inserts(self) -> int:
        return sum(t.inserts for t in self.tables)

    @property
    def total_updates(self) -> int:
        return sum(t.updates for t in self.tables)

    @property
    def schema_issues(self) -> List[ValidationIssue]:
        return [issue for t in self.tables for issue in t.issues]

    @property
    def can_proceed(self) -> bool:
        return not self.issues_by_severity(Severity.CRITICAL)

    def issues_by_severity(self, severity: Severity) -> List[ValidationIssue]:
        return [i for i in self.schema_issues if i.severity == severity]

    def issues_for(self, table_name: str) -> List[ValidationIssue]:
        return [i for i in self.schema_issues if i.table_name == table_name]

    def summary(self) -> Dict[str, Any]:
        return {
            'tables': len(self.tables),
            'total_inserts': self.total_inserts,
            'total_updates': self.total_updates,
            'critical': len(self.issues_by_severity(Severity.CRITICAL)),
            'warning': len(self.issues_by_severity(Severity.WARNING)),
            'info': len(self.issues_by_severity(Severity.INFO)),
            'can_proceed': self.can_proceed,
            'sync_order': list(self.sync_order),
        }


# =============================================================================
# Jobs
# =============================================================================

@dataclass(frozen=True)
class TableConfig:
    table_name: str
    enabled: bool = True
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'enabled': self.enabled,
            'conflict_strategy': self.conflict_strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableConfig":
        return cls(
            table_name=data['table_name'],
            enabled=data.get('enabled', True),
            conflict_strategy=ConflictStrategy(data.get('conflict_strategy', 'source_wins')),
        )


@dataclass(frozen=True, order=True)
class Checkpoint:
    """
    Durable resume point.

    Ordering compares (current_table_index, rows_done_for_table); a running
    job's successive checkpoints are strictly increasing.
    """

    current_table_index: int
    rows_done_for_table: int = 0
    last_processed_key: Optional[List[Any]] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_table_index': self.current_table_index,
            'last_processed_key': self.last_processed_key,
            'rows_done_for_table': self.rows_done_for_table,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Checkpoint"]:
        if not data:
            return None
        return cls(
            current_table_index=int(data.get('current_table_index', 0)),
            rows_done_for_table=int(data.get('rows_done_for_table', 0)),
            last_processed_key=data.get('last_processed_key'),
        )


@dataclass
class SyncProgress:
    total_tables: int = 0
    completed_tables: int = 0
    current_table: Optional[str] = None
    current_table_rows: int = 0
    processed_rows: int = 0
    inserted_rows: int = 0
    updated_rows: int = 0
    skipped_rows: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncProgress":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class SyncJob:
    id: str
    user_id: str
    source_connection_id: str
    target_connection_id: str
    direction: SyncDirection
    tables_config: Tuple[TableConfig, ...]
    status: JobStatus = JobStatus.PENDING
    checkpoint: Optional[Checkpoint] = None
    progress: SyncProgress = field(default_factory=SyncProgress)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    requested_action: Optional[RequestedAction] = None
    created_at: Optional[datetime] = None

    @property
    def enabled_tables(self) -> List[TableConfig]:
        return [t for t in self.tables_config if t.enabled]


@dataclass(frozen=True)
class Conflict:
    table_name: str
    row_key: List[Any]
    source_row: Dict[str, Any]
    target_row: Dict[str, Any]
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'row_key': self.row_key,
            'source_row': self.source_row,
            'target_row': self.target_row,
            'detected_at': self.detected_at.isoformat(),
        }


# =============================================================================
# Batch sizing
# =============================================================================

@dataclass(frozen=True)
class BatchResult:
    table_name: str
    batch_size: int
    row_count: int
    avg_row_size_bytes: int
    duration_ms: float
    success: bool = True
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BatchRecommendation:
    batch_size: int
    confidence: Confidence
    reason: str
    estimated_time_ms: float
    estimated_memory_mb: float
