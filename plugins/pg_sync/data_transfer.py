"""
Data Transfer Module

This module moves rows from a source table to the matching target table one
batch at a time:
- Keyset pagination over the primary key (composite keys use row-value
  comparison), so a batch never rescans earlier rows and a checkpointed key
  is enough to resume
- Upserts with INSERT ... ON CONFLICT DO UPDATE, counting inserts vs updates
  through the xmax system column
- One target transaction per batch; a failed batch is rolled back as a whole

Key values are bound with an explicit cast to the key column's type so that
checkpointed keys (stored as JSON strings) compare correctly against uuid,
timestamp or numeric keys.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import logging

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json

from pg_sync.conflict_resolver import DEFAULT_TIMESTAMP_COLUMN, plan_batch_writes, row_key
from pg_sync.errors import BatchWriteError, DatabaseConnectionError
from pg_sync.models import Conflict, ConflictStrategy, SyncDirection, TableSchema
from pg_sync.type_compat import split_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TablePlan:
    """What to read and write for one table, derived from both schema snapshots."""

    table_name: str
    columns: Tuple[str, ...]
    pk_columns: Tuple[str, ...]
    key_types: Tuple[str, ...]
    json_columns: Tuple[str, ...] = ()
    timestamp_column: Optional[str] = None
    avg_row_size_bytes: Optional[int] = None


@dataclass
class RowBatch:
    rows: List[Dict[str, Any]]
    last_key: Optional[List[Any]] = None


@dataclass
class BatchOutcome:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: List[Conflict] = field(default_factory=list)


def json_safe_key(values: Sequence[Any]) -> List[Any]:
    """Render key values so they survive a JSON round trip through the job store."""
    result = []
    for value in values:
        if value is None or isinstance(value, (bool, int, str)):
            result.append(value)
        elif isinstance(value, (datetime, date, time)):
            result.append(value.isoformat())
        else:
            # uuid, Decimal, float: text form casts back losslessly
            result.append(str(value))
    return result


def typed_placeholders(key_types: Sequence[str]) -> sql.Composed:
    """Build ``(%s::type1, %s::type2)`` for a key tuple."""
    return sql.SQL('({})').format(
        sql.SQL(', ').join([
            sql.SQL('{}::{}').format(sql.Placeholder(), sql.SQL(t))
            for t in key_types
        ])
    )


def key_columns_sql(pk_columns: Sequence[str]) -> sql.Composed:
    return sql.SQL('({})').format(sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns]))


def read_key_batch(
    conn,
    schema_name: str,
    table_name: str,
    pk_columns: Sequence[str],
    key_types: Sequence[str],
    after_key: Optional[Sequence[Any]],
    limit: int,
) -> List[Tuple]:
    """
    Read the next batch of primary keys in key order.

    Args:
        conn: Open psycopg2 connection
        schema_name: Schema name
        table_name: Table name
        pk_columns: Primary key columns
        key_types: Canonical types of the key columns
        after_key: Last key of the previous batch (None for the first batch)
        limit: Maximum keys to return

    Returns:
        List of key tuples
    """
    order_by = sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns])
    params: List[Any] = []

    if after_key is not None:
        where = sql.SQL('WHERE {} > {}').format(key_columns_sql(pk_columns), typed_placeholders(key_types))
        params.extend(after_key)
    else:
        where = sql.SQL('')

    query = sql.SQL("""
        SELECT {cols}
        FROM {schema}.{table}
        {where}
        ORDER BY {order_by}
        LIMIT {limit}
    """).format(
        cols=order_by,
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        where=where,
        order_by=order_by,
        limit=sql.Literal(int(limit)),
    )

    with conn.cursor() as cursor:
        cursor.execute(query, params)
        return [tuple(row) for row in cursor.fetchall()]


def find_existing_keys(
    conn,
    schema_name: str,
    table_name: str,
    pk_columns: Sequence[str],
    key_types: Sequence[str],
    keys: List[Tuple],
) -> Set[Tuple]:
    """Return the subset of ``keys`` present in the table."""
    if not keys:
        return set()

    query = sql.SQL("""
        SELECT {pk_cols}
        FROM {schema}.{table}
        WHERE {pk_tuple} IN (VALUES {values})
    """).format(
        pk_cols=sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns]),
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        pk_tuple=key_columns_sql(pk_columns),
        values=sql.SQL(', ').join([typed_placeholders(key_types)] * len(keys)),
    )

    params: List[Any] = []
    for key in keys:
        params.extend(key)

    with conn.cursor() as cursor:
        cursor.execute(query, params)
        return {tuple(row) for row in cursor.fetchall()}


def fetch_key_values(
    conn,
    schema_name: str,
    table_name: str,
    pk_columns: Sequence[str],
    key_types: Sequence[str],
    keys: List[Tuple],
    value_sql: sql.Composable,
) -> Dict[Tuple, Any]:
    """Fetch one computed value (a row hash, a timestamp) per key."""
    if not keys:
        return {}

    query = sql.SQL("""
        SELECT {pk_cols}, {value}
        FROM {schema}.{table}
        WHERE {pk_tuple} IN (VALUES {values})
    """).format(
        pk_cols=sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns]),
        value=value_sql,
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        pk_tuple=key_columns_sql(pk_columns),
        values=sql.SQL(', ').join([typed_placeholders(key_types)] * len(keys)),
    )

    params: List[Any] = []
    for key in keys:
        params.extend(key)

    width = len(pk_columns)
    with conn.cursor() as cursor:
        cursor.execute(query, params)
        return {tuple(row[:width]): row[width] for row in cursor.fetchall()}


def count_rows(conn, schema_name: str, table_name: str) -> int:
    with conn.cursor() as cursor:
        cursor.execute(
            sql.SQL("SELECT COUNT(*) FROM {}.{}").format(
                sql.Identifier(schema_name),
                sql.Identifier(table_name),
            )
        )
        result = cursor.fetchone()
        return result[0] if result else 0


def upsert_rows(
    cursor,
    schema_name: str,
    table_name: str,
    columns: Sequence[str],
    pk_columns: Sequence[str],
    rows: List[Tuple[Any, ...]],
) -> Tuple[int, int]:
    """
    Upsert rows using INSERT...ON CONFLICT DO UPDATE.

    The xmax system column tells inserts from updates:
    - xmax = 0 means the row was inserted
    - xmax > 0 means the row was updated

    Runs on the caller's cursor; committing is the caller's job.

    Args:
        cursor: Cursor of the target connection
        schema_name: Target schema name
        table_name: Target table name
        columns: Column names, in row tuple order
        pk_columns: Primary key column names
        rows: Row tuples to upsert

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return 0, 0

    missing_pks = set(pk_columns) - set(columns)
    if missing_pks:
        raise ValueError(f"PK columns not in column list: {missing_pks}")

    all_cols = sql.SQL(', ').join([sql.Identifier(c) for c in columns])
    pk_cols = sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns])
    non_pk_columns = [c for c in columns if c not in pk_columns]

    row_placeholder = sql.SQL('({})').format(
        sql.SQL(', ').join([sql.Placeholder()] * len(columns))
    )

    if non_pk_columns:
        conflict_action = sql.SQL('DO UPDATE SET {}').format(
            sql.SQL(', ').join([
                sql.SQL('{} = EXCLUDED.{}').format(sql.Identifier(c), sql.Identifier(c))
                for c in non_pk_columns
            ])
        )
    else:
        # All columns are PK
        conflict_action = sql.SQL('DO NOTHING')

    query = sql.SQL("""
        INSERT INTO {schema}.{table} ({columns})
        VALUES {values}
        ON CONFLICT ({pk}) {action}
        RETURNING (xmax = 0) AS inserted
    """).format(
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        columns=all_cols,
        values=sql.SQL(', ').join([row_placeholder] * len(rows)),
        pk=pk_cols,
        action=conflict_action,
    )

    params: List[Any] = []
    for row in rows:
        params.extend(row)

    cursor.execute(query, params)
    results = cursor.fetchall()

    inserted_count = sum(1 for r in results if r[0])
    updated_count = len(results) - inserted_count
    return inserted_count, updated_count


class TableTransfer:
    """
    Batched reads from a source table and transactional writes to a target table.

    The source connection is switched to read-only autocommit so that reading
    never holds a transaction open between batches.
    """

    def __init__(self, source_conn, target_conn, schema_name: str = 'public'):
        """
        Initialize the transfer.

        Args:
            source_conn: Open psycopg2 connection to the source database
            target_conn: Open psycopg2 connection to the target database
            schema_name: Schema holding the synced tables on both sides
        """
        self.source_conn = source_conn
        self.target_conn = target_conn
        self.schema_name = schema_name
        try:
            # set_session is rejected inside a transaction; catalog reads may have opened one
            self.source_conn.rollback()
            self.source_conn.set_session(readonly=True, autocommit=True)
        except psycopg2.Error as e:
            raise DatabaseConnectionError(f"Could not configure source session: {e}") from e

    def prepare_table(self, source: TableSchema, target: TableSchema) -> TablePlan:
        """
        Work out the column list and key for a table present on both sides.

        Raises:
            ValueError: If the table has no primary key on the source
        """
        pk_columns = source.primary_key
        if not pk_columns:
            raise ValueError(f"Table {source.name} has no primary key; keyed transfer is impossible")

        target_columns = set(target.column_names)
        columns = [c for c in source.column_names if c in target_columns]
        key_types = [source.get_column(c).type for c in pk_columns]
        json_columns = [
            c.name for c in source.columns
            if c.name in target_columns and split_type(c.type)[0] in ('json', 'jsonb')
            and not split_type(c.type)[3]
        ]
        timestamp_column = (
            DEFAULT_TIMESTAMP_COLUMN
            if DEFAULT_TIMESTAMP_COLUMN in columns
            else None
        )

        return TablePlan(
            table_name=source.name,
            columns=tuple(columns),
            pk_columns=tuple(pk_columns),
            key_types=tuple(key_types),
            json_columns=tuple(json_columns),
            timestamp_column=timestamp_column,
            avg_row_size_bytes=source.avg_row_size_bytes,
        )

    def read_batch(self, plan: TablePlan, after_key: Optional[Sequence[Any]], limit: int) -> RowBatch:
        """
        Read the next batch of full rows after ``after_key`` in key order.

        Raises:
            DatabaseConnectionError: If the source read fails
        """
        cols = sql.SQL(', ').join([sql.Identifier(c) for c in plan.columns])
        order_by = sql.SQL(', ').join([sql.Identifier(c) for c in plan.pk_columns])
        params: List[Any] = []

        if after_key is not None:
            where = sql.SQL('WHERE {} > {}').format(
                key_columns_sql(plan.pk_columns), typed_placeholders(plan.key_types)
            )
            params.extend(after_key)
        else:
            where = sql.SQL('')

        query = sql.SQL("""
            SELECT {cols}
            FROM {schema}.{table}
            {where}
            ORDER BY {order_by}
            LIMIT {limit}
        """).format(
            cols=cols,
            schema=sql.Identifier(self.schema_name),
            table=sql.Identifier(plan.table_name),
            where=where,
            order_by=order_by,
            limit=sql.Literal(int(limit)),
        )

        try:
            with self.source_conn.cursor() as cursor:
                cursor.execute(query, params)
                records = cursor.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Error reading batch from {plan.table_name}: {e}")
            raise DatabaseConnectionError(f"Read from {plan.table_name} failed: {e}") from e

        rows = [dict(zip(plan.columns, record)) for record in records]
        last_key = json_safe_key(row_key(rows[-1], plan.pk_columns)) if rows else None
        return RowBatch(rows=rows, last_key=last_key)

    def apply_batch(
        self,
        plan: TablePlan,
        batch: RowBatch,
        direction: SyncDirection = SyncDirection.ONE_WAY,
        strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS,
    ) -> BatchOutcome:
        """
        Write one batch to the target in a single transaction.

        One-way syncs upsert every source row. Two-way syncs first lock the
        target rows with the same keys and let the conflict strategy decide
        which rows are written, skipped or deferred.

        Raises:
            BatchWriteError: If the write fails (the transaction is rolled back)
        """
        outcome = BatchOutcome()
        if not batch.rows:
            return outcome

        try:
            with self.target_conn.cursor() as cursor:
                rows_to_write = batch.rows
                if direction == SyncDirection.TWO_WAY:
                    target_rows = self._lock_target_rows(cursor, plan, batch.rows)
                    write_plan = plan_batch_writes(
                        plan.table_name,
                        batch.rows,
                        target_rows,
                        plan.pk_columns,
                        strategy,
                        plan.timestamp_column,
                    )
                    rows_to_write = write_plan.rows_to_write
                    outcome.skipped = write_plan.skipped
                    outcome.conflicts = write_plan.conflicts

                outcome.inserted, outcome.updated = upsert_rows(
                    cursor,
                    self.schema_name,
                    plan.table_name,
                    plan.columns,
                    plan.pk_columns,
                    [self._row_values(plan, row) for row in rows_to_write],
                )
            self.target_conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Error writing batch to {plan.table_name}: {e}")
            self.target_conn.rollback()
            raise BatchWriteError(plan.table_name, str(e)) from e

        return outcome

    def _lock_target_rows(self, cursor, plan: TablePlan, rows: List[Dict[str, Any]]) -> Dict[Tuple, Dict[str, Any]]:
        keys = [row_key(row, plan.pk_columns) for row in rows]
        query = sql.SQL("""
            SELECT {cols}
            FROM {schema}.{table}
            WHERE {pk_tuple} IN (VALUES {values})
            FOR UPDATE
        """).format(
            cols=sql.SQL(', ').join([sql.Identifier(c) for c in plan.columns]),
            schema=sql.Identifier(self.schema_name),
            table=sql.Identifier(plan.table_name),
            pk_tuple=key_columns_sql(plan.pk_columns),
            values=sql.SQL(', ').join([typed_placeholders(plan.key_types)] * len(keys)),
        )
        params: List[Any] = []
        for key in keys:
            params.extend(key)

        cursor.execute(query, params)
        result = {}
        for record in cursor.fetchall():
            row = dict(zip(plan.columns, record))
            result[row_key(row, plan.pk_columns)] = row
        return result

    @staticmethod
    def _row_values(plan: TablePlan, row: Dict[str, Any]) -> Tuple[Any, ...]:
        values = []
        for column in plan.columns:
            value = row.get(column)
            if column in plan.json_columns and value is not None:
                value = Json(value)
            values.append(value)
        return tuple(values)
