"""
Conflict Resolution Module

Decides, for a two-way sync, what happens to each source row given the
target's current copy of the same key.

A row is in conflict when both copies exist, their contents differ and the
target copy is newer than the source copy (by the timestamp column), or when
there is no timestamp column to tell which side changed last.

Merge policy (ConflictStrategy.MERGE) is row-level last-write-wins by the
timestamp column, ties going to the source:
- each column takes the newer side's value
- a NULL on the newer side falls back to the older side's value
- primary key columns always come from the source
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from pg_sync.models import Conflict, ConflictStrategy

logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_COLUMN = 'updated_at'


@dataclass
class WritePlan:
    """Outcome of classifying one source batch against the target."""

    rows_to_write: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    conflicts: List[Conflict] = field(default_factory=list)


def row_key(row: Dict[str, Any], pk_columns: Sequence[str]) -> Tuple:
    return tuple(row[c] for c in pk_columns)


def rows_differ(source_row: Dict[str, Any], target_row: Dict[str, Any]) -> bool:
    """Compare the columns present in the source row."""
    return any(target_row.get(col) != value for col, value in source_row.items())


def is_conflict(
    source_row: Dict[str, Any],
    target_row: Dict[str, Any],
    timestamp_column: Optional[str] = DEFAULT_TIMESTAMP_COLUMN,
) -> bool:
    if not rows_differ(source_row, target_row):
        return False
    if not timestamp_column:
        return True

    source_ts = source_row.get(timestamp_column)
    target_ts = target_row.get(timestamp_column)
    if target_ts is None:
        return False
    if source_ts is None:
        return True
    return target_ts > source_ts


def merge_rows(
    source_row: Dict[str, Any],
    target_row: Dict[str, Any],
    pk_columns: Sequence[str],
    timestamp_column: Optional[str] = DEFAULT_TIMESTAMP_COLUMN,
) -> Dict[str, Any]:
    """
    Merge two copies of a row.

    Args:
        source_row: Source copy
        target_row: Target copy
        pk_columns: Key columns (always taken from the source)
        timestamp_column: Column deciding which copy is newer; without it the
            source is treated as newer

    Returns:
        Merged row covering the source row's columns
    """
    source_ts = source_row.get(timestamp_column) if timestamp_column else None
    target_ts = target_row.get(timestamp_column) if timestamp_column else None
    target_newer = (
        source_ts is not None and target_ts is not None and target_ts > source_ts
    ) or (source_ts is None and target_ts is not None)

    newer, older = (target_row, source_row) if target_newer else (source_row, target_row)

    merged = {}
    for column in source_row:
        if column in pk_columns:
            merged[column] = source_row[column]
            continue
        value = newer.get(column)
        merged[column] = value if value is not None else older.get(column)
    return merged


def plan_batch_writes(
    table_name: str,
    source_rows: List[Dict[str, Any]],
    target_rows: Dict[Tuple, Dict[str, Any]],
    pk_columns: Sequence[str],
    strategy: ConflictStrategy,
    timestamp_column: Optional[str] = DEFAULT_TIMESTAMP_COLUMN,
) -> WritePlan:
    """
    Classify a source batch against the target rows with the same keys.

    Args:
        table_name: Table being synced
        source_rows: Rows read from the source
        target_rows: Target rows keyed by primary key tuple
        pk_columns: Primary key columns
        strategy: How to settle conflicting rows
        timestamp_column: Column used to decide which copy changed last

    Returns:
        WritePlan with rows to upsert, skipped count and deferred conflicts
    """
    plan = WritePlan()
    now = datetime.now(timezone.utc)

    for source_row in source_rows:
        key = row_key(source_row, pk_columns)
        target_row = target_rows.get(key)

        if target_row is None:
            plan.rows_to_write.append(source_row)
            continue

        if not rows_differ(source_row, target_row):
            plan.skipped += 1
            continue

        if not is_conflict(source_row, target_row, timestamp_column):
            plan.rows_to_write.append(source_row)
            continue

        if strategy == ConflictStrategy.SOURCE_WINS:
            plan.rows_to_write.append(source_row)
        elif strategy == ConflictStrategy.TARGET_WINS:
            plan.skipped += 1
        elif strategy == ConflictStrategy.MERGE:
            plan.rows_to_write.append(merge_rows(source_row, target_row, pk_columns, timestamp_column))
        else:
            plan.conflicts.append(Conflict(
                table_name=table_name,
                row_key=list(key),
                source_row=source_row,
                target_row=target_row,
                detected_at=now,
            ))

    if plan.conflicts:
        logger.info(f"{table_name}: deferred {len(plan.conflicts)} conflicting row(s) for manual review")

    return plan
