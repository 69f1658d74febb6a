"""
Diff Engine Module

Compares the source and target copies of the tables in a sync job and
reports what a sync would do, without writing anything.

Two parts:
1. Schema comparison (compare_schemas): a pure function over two sets of
   TableSchema snapshots producing severity-graded ValidationIssues
2. Row deltas (DiffEngine): source keys are streamed in keyset batches and
   looked up in the target (batched anti-join):
   - inserts = source keys not in target
   - updates = overlapping keys, optionally narrowed by row hash or by a
     newer updated_at on the source

Issue ids are assigned in emission order (issue-1, issue-2, ...), so the same
inputs always yield the same diff.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

from psycopg2 import sql

from pg_sync.config import VALID_CHANGE_DETECTION
from pg_sync.data_transfer import count_rows, fetch_key_values, find_existing_keys, read_key_batch
from pg_sync.models import (
    ColumnDefinition,
    ForeignKeyReference,
    IssueKind,
    SchemaDiff,
    Severity,
    TableDiff,
    TableSchema,
    ValidationIssue,
)
from pg_sync.schema_inspector import SchemaInspector, find_circular_dependencies, get_sync_order
from pg_sync.type_compat import is_widening, types_equal

logger = logging.getLogger(__name__)


class _IssueCollector:
    """Assigns sequential issue ids and groups issues by table."""

    def __init__(self):
        self._counter = 0
        self.by_table: Dict[str, List[ValidationIssue]] = {}

    def add(
        self,
        table_name: str,
        kind: IssueKind,
        severity: Severity,
        message: str,
        recommendation: str = '',
        column_name: Optional[str] = None,
        constraint_name: Optional[str] = None,
    ) -> ValidationIssue:
        self._counter += 1
        issue = ValidationIssue(
            id=f"issue-{self._counter}",
            table_name=table_name,
            kind=kind,
            severity=severity,
            message=message,
            recommendation=recommendation,
            column_name=column_name,
            constraint_name=constraint_name,
        )
        self.by_table.setdefault(table_name, []).append(issue)
        return issue


def _normalize_default(default: Optional[str]) -> Optional[str]:
    if default is None:
        return None
    return ' '.join(default.split())


def _describe_fk(fk: ForeignKeyReference) -> str:
    return (
        f"({', '.join(fk.columns)}) -> {fk.referenced_table}"
        f"({', '.join(fk.referenced_columns)})"
    )


def _compare_columns(
    issues: _IssueCollector,
    table_name: str,
    source_col: ColumnDefinition,
    target_col: ColumnDefinition,
) -> None:
    if not types_equal(source_col.type, target_col.type):
        widening = is_widening(target_col.type, source_col.type)
        issues.add(
            table_name,
            IssueKind.TYPE_MISMATCH,
            Severity.CRITICAL,
            f"Column {table_name}.{source_col.name} is {source_col.type} in source "
            f"but {target_col.type} in target",
            (
                f"Widen target column to {source_col.type}"
                if widening
                else f"Review conversion of target column to {source_col.type}; values may not fit"
            ),
            column_name=source_col.name,
        )

    if source_col.nullable != target_col.nullable:
        issues.add(
            table_name,
            IssueKind.NULLABLE_MISMATCH,
            Severity.WARNING,
            f"Column {table_name}.{source_col.name} is "
            f"{'nullable' if source_col.nullable else 'NOT NULL'} in source but "
            f"{'nullable' if target_col.nullable else 'NOT NULL'} in target",
            (
                "Drop the NOT NULL constraint on the target column"
                if source_col.nullable
                else "Set NOT NULL on the target column after checking for NULL values"
            ),
            column_name=source_col.name,
        )

    if _normalize_default(source_col.default) != _normalize_default(target_col.default):
        issues.add(
            table_name,
            IssueKind.DEFAULT_MISMATCH,
            Severity.WARNING,
            f"Column {table_name}.{source_col.name} default differs: "
            f"source {source_col.default or 'none'}, target {target_col.default or 'none'}",
            "Align the target column default with the source",
            column_name=source_col.name,
        )


def _compare_table(
    issues: _IssueCollector,
    source: TableSchema,
    target: TableSchema,
) -> None:
    name = source.name
    target_columns = {c.name: c for c in target.columns}
    source_columns = {c.name: c for c in source.columns}

    for column in source.columns:
        target_col = target_columns.get(column.name)
        if target_col is None:
            issues.add(
                name,
                IssueKind.COLUMN_MISSING_IN_TARGET,
                Severity.CRITICAL,
                f"Column {name}.{column.name} ({column.type}) is missing in target",
                f"Add column {column.name} {column.type} to target table {name}",
                column_name=column.name,
            )
        else:
            _compare_columns(issues, name, column, target_col)

    for column in target.columns:
        if column.name not in source_columns:
            issues.add(
                name,
                IssueKind.COLUMN_EXTRA_IN_TARGET,
                Severity.CRITICAL,
                f"Column {name}.{column.name} ({column.type}) exists in target but not in source",
                f"Drop column {column.name} from target table {name}, or add it to source",
                column_name=column.name,
            )

    source_pk = source.primary_key
    target_pk = target.primary_key
    if not source_pk:
        issues.add(
            name,
            IssueKind.PRIMARY_KEY_MISSING_IN_SOURCE,
            Severity.CRITICAL,
            f"Table {name} has no primary key in source; rows cannot be synced by key",
            f"Add a primary key to source table {name}",
        )
    elif not target_pk:
        issues.add(
            name,
            IssueKind.PRIMARY_KEY_MISSING_IN_TARGET,
            Severity.CRITICAL,
            f"Table {name} has no primary key in target (source key: {', '.join(source_pk)})",
            f"Add primary key ({', '.join(source_pk)}) to target table {name}",
        )
    elif source_pk != target_pk:
        issues.add(
            name,
            IssueKind.PRIMARY_KEY_MISMATCH,
            Severity.CRITICAL,
            f"Primary key of {name} differs: source ({', '.join(source_pk)}), "
            f"target ({', '.join(target_pk)})",
            f"Replace target primary key with ({', '.join(source_pk)})",
        )

    for fk in sorted(source.foreign_keys, key=lambda f: f.constraint_name):
        if not any(fk.same_shape(other) for other in target.foreign_keys):
            issues.add(
                name,
                IssueKind.FOREIGN_KEY_MISSING_IN_TARGET,
                Severity.WARNING,
                f"Foreign key {fk.constraint_name} {_describe_fk(fk)} is missing in target",
                f"Add foreign key {fk.constraint_name} to target table {name}",
                constraint_name=fk.constraint_name,
            )

    for fk in sorted(target.foreign_keys, key=lambda f: f.constraint_name):
        if not any(fk.same_shape(other) for other in source.foreign_keys):
            issues.add(
                name,
                IssueKind.FOREIGN_KEY_EXTRA_IN_TARGET,
                Severity.WARNING,
                f"Foreign key {fk.constraint_name} {_describe_fk(fk)} exists in target but not in source",
                f"Drop foreign key {fk.constraint_name} from target, or add it to source",
                constraint_name=fk.constraint_name,
            )


def compare_schemas(
    source_tables: Dict[str, TableSchema],
    target_tables: Dict[str, TableSchema],
    table_names: Sequence[str],
) -> Tuple[Dict[str, List[ValidationIssue]], List[str]]:
    """
    Compare schema snapshots for the requested tables.

    Args:
        source_tables: Source snapshots keyed by table name
        target_tables: Target snapshots keyed by table name
        table_names: Tables in sync scope, in job order

    Returns:
        Tuple of (issues keyed by table name, dependency-safe sync order)
    """
    issues = _IssueCollector()

    for name in table_names:
        source = source_tables.get(name)
        target = target_tables.get(name)

        if source and target:
            _compare_table(issues, source, target)
        elif source:
            issues.add(
                name,
                IssueKind.TABLE_MISSING_IN_TARGET,
                Severity.INFO,
                f"Table {name} does not exist in target and will be created",
                f"Create table {name} in target before syncing",
            )
        elif target:
            issues.add(
                name,
                IssueKind.TABLE_MISSING_IN_SOURCE,
                Severity.WARNING,
                f"Table {name} exists only in target; it is not present in sync scope and will be skipped",
                f"Remove {name} from the job or create it in source",
            )
        else:
            issues.add(
                name,
                IssueKind.TABLE_MISSING,
                Severity.WARNING,
                f"Table {name} was not found in source or target and will be skipped",
                f"Check the table name {name}",
            )

    in_scope = [source_tables[n] for n in table_names if n in source_tables]
    for cycle in find_circular_dependencies(in_scope):
        issues.add(
            cycle[0],
            IssueKind.CIRCULAR_DEPENDENCY,
            Severity.INFO,
            f"Circular foreign key dependency: {' -> '.join(cycle)}",
            "Rows in these tables may violate foreign keys until all of them are synced",
        )

    return issues.by_table, get_sync_order(in_scope)


class DiffEngine:
    """
    Dry-run comparison of source and target.

    Uses batched comparison so tables of any size are handled without
    loading all keys into memory at once.
    """

    def __init__(
        self,
        inspector: Optional[SchemaInspector] = None,
        change_detection: str = 'keys',
        key_batch_size: int = 10000,
    ):
        """
        Initialize the diff engine.

        Args:
            inspector: SchemaInspector for both sides (default: public schema)
            change_detection: How updates are counted: 'keys' (every
                overlapping key), 'hash' (overlapping keys whose row hash
                differs) or 'updated_at' (overlapping keys newer in source)
            key_batch_size: Number of keys compared per round trip
        """
        if change_detection not in VALID_CHANGE_DETECTION:
            raise ValueError(f"Unknown change detection mode: {change_detection}")
        self.inspector = inspector or SchemaInspector()
        self.change_detection = change_detection
        self.key_batch_size = key_batch_size

    @property
    def schema_name(self) -> str:
        return self.inspector.schema_name

    def calculate_diff(self, source_conn, target_conn, table_names: Sequence[str]) -> SchemaDiff:
        """
        Compare source and target for the given tables.

        Read-only on both sides.

        Args:
            source_conn: Open psycopg2 connection to the source
            target_conn: Open psycopg2 connection to the target
            table_names: Tables in sync scope, in job order

        Returns:
            SchemaDiff with per-table issues and row deltas

        Raises:
            DatabaseConnectionError: If either side cannot be inspected
        """
        logger.info(f"Calculating diff for {len(table_names)} table(s)")

        source_tables = {t.name: t for t in self.inspector.inspect(source_conn)}
        target_tables = {t.name: t for t in self.inspector.inspect(target_conn)}

        issues_by_table, sync_order = compare_schemas(source_tables, target_tables, table_names)

        table_diffs = []
        for name in table_names:
            source = source_tables.get(name)
            target = target_tables.get(name)
            inserts = updates = source_count = target_count = 0

            if source and target and source.primary_key and source.primary_key == target.primary_key:
                inserts, updates, source_count, target_count = self._count_row_deltas(
                    source_conn, target_conn, source, target
                )
            elif source and not target:
                source_count = count_rows(source_conn, self.schema_name, name)
                inserts = source_count

            table_diffs.append(TableDiff(
                table_name=name,
                issues=tuple(issues_by_table.get(name, [])),
                inserts=inserts,
                updates=updates,
                source_row_count=source_count,
                target_row_count=target_count,
            ))

        diff = SchemaDiff(
            tables=tuple(table_diffs),
            source_schemas={n: source_tables[n] for n in table_names if n in source_tables},
            target_schemas={n: target_tables[n] for n in table_names if n in target_tables},
            sync_order=tuple(sync_order),
        )

        summary = diff.summary()
        logger.info(
            f"Diff complete: {summary['total_inserts']:,} inserts, {summary['total_updates']:,} updates, "
            f"{summary['critical']} critical / {summary['warning']} warning / {summary['info']} info issue(s)"
        )
        return diff

    def calculate_schema_diff(self, source_conn, target_conn, table_names: Optional[Sequence[str]] = None) -> SchemaDiff:
        """
        Compare schemas only; row deltas are left at zero.

        Args:
            source_conn: Open psycopg2 connection to the source
            target_conn: Open psycopg2 connection to the target
            table_names: Tables to compare (default: every source table)

        Returns:
            SchemaDiff without row counts
        """
        source_tables = {t.name: t for t in self.inspector.inspect(source_conn)}
        target_tables = {t.name: t for t in self.inspector.inspect(target_conn)}
        if table_names is None:
            table_names = sorted(source_tables)

        issues_by_table, sync_order = compare_schemas(source_tables, target_tables, table_names)
        return SchemaDiff(
            tables=tuple(
                TableDiff(table_name=name, issues=tuple(issues_by_table.get(name, [])))
                for name in table_names
            ),
            source_schemas={n: source_tables[n] for n in table_names if n in source_tables},
            target_schemas={n: target_tables[n] for n in table_names if n in target_tables},
            sync_order=tuple(sync_order),
        )

    def _count_row_deltas(
        self,
        source_conn,
        target_conn,
        source: TableSchema,
        target: TableSchema,
    ) -> Tuple[int, int, int, int]:
        """
        Stream source keys and look them up in target.

        Returns:
            Tuple of (inserts, updates, source_row_count, target_row_count)
        """
        pk_columns = source.primary_key
        key_types = [source.get_column(c).type for c in pk_columns]
        inserts = updates = source_count = 0
        last_key = None
        batches_processed = 0

        while True:
            keys = read_key_batch(
                source_conn, self.schema_name, source.name,
                pk_columns, key_types, last_key, self.key_batch_size,
            )
            if not keys:
                break

            batches_processed += 1
            source_count += len(keys)

            existing = find_existing_keys(
                target_conn, self.schema_name, source.name, pk_columns, key_types, keys
            )
            inserts += len(keys) - len(existing)
            if existing:
                updates += self._count_updates(
                    source_conn, target_conn, source, target, key_types,
                    [k for k in keys if k in existing],
                )

            last_key = list(keys[-1])

            if batches_processed % 10 == 0:
                logger.info(
                    f"{source.name}: compared {source_count:,} keys "
                    f"({inserts:,} inserts, {updates:,} updates so far)"
                )

            if len(keys) < self.key_batch_size:
                break

        target_count = count_rows(target_conn, self.schema_name, target.name)
        return inserts, updates, source_count, target_count

    def _count_updates(
        self,
        source_conn,
        target_conn,
        source: TableSchema,
        target: TableSchema,
        key_types: List[str],
        existing_keys: List[Tuple],
    ) -> int:
        pk_columns = source.primary_key

        if self.change_detection == 'hash':
            shared = [c for c in source.column_names if target.get_column(c) is not None]
            value_sql = sql.SQL('md5(ROW({})::text)').format(
                sql.SQL(', ').join([sql.Identifier(c) for c in shared])
            )
        elif self.change_detection == 'updated_at' and \
                source.get_column('updated_at') and target.get_column('updated_at'):
            value_sql = sql.Identifier('updated_at')
        else:
            return len(existing_keys)

        source_values = fetch_key_values(
            source_conn, self.schema_name, source.name, pk_columns, key_types, existing_keys, value_sql
        )
        target_values = fetch_key_values(
            target_conn, self.schema_name, target.name, pk_columns, key_types, existing_keys, value_sql
        )

        if self.change_detection == 'hash':
            return sum(1 for k in existing_keys if source_values.get(k) != target_values.get(k))

        changed = 0
        for key in existing_keys:
            source_ts = source_values.get(key)
            target_ts = target_values.get(key)
            if source_ts is not None and (target_ts is None or source_ts > target_ts):
                changed += 1
        return changed
