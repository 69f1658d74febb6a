"""
PostgreSQL Schema Inspection Module

This module reads table metadata (columns, primary keys, foreign keys and
size statistics) from one schema of a PostgreSQL database and returns
immutable TableSchema snapshots. It also derives a dependency-safe table
order from the foreign key graph.
"""

from typing import Dict, List, Optional, Set, Tuple
import logging

import psycopg2

from pg_sync.errors import DatabaseConnectionError
from pg_sync.models import ColumnDefinition, ForeignKeyReference, TableSchema
from pg_sync.type_compat import format_column_type
from pg_sync.utils import matches_any_pattern

logger = logging.getLogger(__name__)


# Schemas owned by PostgreSQL itself or by the hosting platform
SYSTEM_SCHEMAS = frozenset({
    'pg_catalog',
    'information_schema',
    'pg_toast',
    'auth',
    'storage',
    'realtime',
    'supabase_functions',
    'supabase_migrations',
    'extensions',
    'graphql',
    'graphql_public',
    'vault',
    'pgsodium',
    'pgsodium_masks',
    'net',
    'cron',
})

# Framework bookkeeping tables and our own job tables
INTERNAL_TABLE_PATTERNS = [
    'pg_*',
    '_prisma_*',
    'drizzle_*',
    'schema_migrations',
    '_pg_sync_*',
]

FK_DELETE_RULES = {
    'a': 'NO ACTION',
    'r': 'RESTRICT',
    'c': 'CASCADE',
    'n': 'SET NULL',
    'd': 'SET DEFAULT',
}

TABLES_QUERY = """
SELECT
    c.relname AS table_name,
    GREATEST(c.reltuples, 0)::bigint AS approximate_row_count,
    pg_total_relation_size(c.oid) AS total_bytes
FROM pg_class c
INNER JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = %s
  AND c.relkind IN ('r', 'p')
  AND NOT c.relispartition
ORDER BY c.relname
"""

COLUMNS_QUERY = """
SELECT
    table_name,
    column_name,
    data_type,
    udt_name,
    is_nullable,
    column_default,
    character_maximum_length,
    numeric_precision,
    numeric_scale
FROM information_schema.columns
WHERE table_schema = %s
ORDER BY table_name, ordinal_position
"""

PRIMARY_KEYS_QUERY = """
SELECT
    tc.table_name,
    tc.constraint_name,
    kcu.column_name
FROM information_schema.table_constraints tc
INNER JOIN information_schema.key_column_usage kcu
    ON tc.constraint_name = kcu.constraint_name
   AND tc.table_schema = kcu.table_schema
   AND tc.table_name = kcu.table_name
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND tc.table_schema = %s
ORDER BY tc.table_name, kcu.ordinal_position
"""

FOREIGN_KEYS_QUERY = """
SELECT
    cl.relname AS table_name,
    con.conname AS constraint_name,
    array_agg(a.attname::text ORDER BY k.ord) AS columns,
    rcl.relname AS referenced_table,
    array_agg(ra.attname::text ORDER BY k.ord) AS referenced_columns,
    con.confdeltype AS delete_rule
FROM pg_constraint con
INNER JOIN pg_class cl ON cl.oid = con.conrelid
INNER JOIN pg_namespace n ON n.oid = cl.relnamespace
INNER JOIN pg_class rcl ON rcl.oid = con.confrelid
CROSS JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(attnum, refattnum, ord)
INNER JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
INNER JOIN pg_attribute ra ON ra.attrelid = con.confrelid AND ra.attnum = k.refattnum
WHERE con.contype = 'f'
  AND n.nspname = %s
GROUP BY cl.relname, con.conname, rcl.relname, con.confdeltype
ORDER BY cl.relname, con.conname
"""


class SchemaInspector:
    """Read table snapshots from one PostgreSQL schema."""

    def __init__(self, schema_name: str = 'public', exclude_patterns: Optional[List[str]] = None):
        """
        Initialize the schema inspector.

        Args:
            schema_name: Schema to inspect
            exclude_patterns: Extra table name wildcards to skip

        Raises:
            ValueError: If schema_name is a system or platform-managed schema
        """
        if schema_name in SYSTEM_SCHEMAS or schema_name.startswith('pg_'):
            raise ValueError(f"Schema '{schema_name}' is a system schema and cannot be synced")
        self.schema_name = schema_name
        self.exclude_patterns = INTERNAL_TABLE_PATTERNS + list(exclude_patterns or [])

    def inspect(self, conn) -> List[TableSchema]:
        """
        Read all user tables of the schema.

        Read-only; the connection is neither committed nor closed.

        Args:
            conn: Open psycopg2 connection

        Returns:
            TableSchema list ordered by table name

        Raises:
            DatabaseConnectionError: If any catalog query fails
        """
        try:
            with conn.cursor() as cursor:
                cursor.execute(TABLES_QUERY, (self.schema_name,))
                table_rows = cursor.fetchall()

                cursor.execute(COLUMNS_QUERY, (self.schema_name,))
                column_rows = cursor.fetchall()

                cursor.execute(PRIMARY_KEYS_QUERY, (self.schema_name,))
                pk_rows = cursor.fetchall()

                cursor.execute(FOREIGN_KEYS_QUERY, (self.schema_name,))
                fk_rows = cursor.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Schema inspection of '{self.schema_name}' failed: {e}")
            raise DatabaseConnectionError(f"Schema inspection failed: {e}") from e

        primary_keys: Dict[str, Tuple[str, List[str]]] = {}
        for table_name, constraint_name, column_name in pk_rows:
            entry = primary_keys.setdefault(table_name, (constraint_name, []))
            entry[1].append(column_name)

        columns: Dict[str, List[ColumnDefinition]] = {}
        for row in column_rows:
            (table_name, column_name, data_type, udt_name, is_nullable, column_default,
             char_length, numeric_precision, numeric_scale) = row
            pk_columns = primary_keys.get(table_name, (None, []))[1]
            columns.setdefault(table_name, []).append(ColumnDefinition(
                name=column_name,
                type=format_column_type(udt_name, data_type, char_length, numeric_precision, numeric_scale),
                nullable=is_nullable == 'YES',
                is_primary_key=column_name in pk_columns,
                default=column_default,
            ))

        foreign_keys: Dict[str, List[ForeignKeyReference]] = {}
        for table_name, constraint_name, fk_columns, ref_table, ref_columns, delete_rule in fk_rows:
            foreign_keys.setdefault(table_name, []).append(ForeignKeyReference(
                constraint_name=constraint_name,
                columns=tuple(fk_columns),
                referenced_table=ref_table,
                referenced_columns=tuple(ref_columns),
                on_delete=FK_DELETE_RULES.get(delete_rule, 'NO ACTION'),
            ))

        tables = []
        for table_name, row_count, total_bytes in table_rows:
            if matches_any_pattern(table_name, self.exclude_patterns):
                logger.debug(f"Excluding table {table_name}")
                continue
            pk_name, pk_columns = primary_keys.get(table_name, (None, []))
            tables.append(TableSchema(
                name=table_name,
                columns=tuple(columns.get(table_name, [])),
                foreign_keys=tuple(foreign_keys.get(table_name, [])),
                approximate_row_count=int(row_count or 0),
                approximate_size_bytes=int(total_bytes or 0),
                primary_key_name=pk_name,
                primary_key_order=tuple(pk_columns),
            ))

        logger.info(f"Found {len(tables)} tables in schema '{self.schema_name}'")
        return tables


def find_circular_dependencies(tables: List[TableSchema]) -> List[List[str]]:
    """
    Find foreign key cycles among the given tables.

    Self-references are ignored (a row can reference another row of the same
    table without blocking table-level ordering).

    Returns:
        Each cycle as a list of table names, starting and ending at the same table
    """
    names = {t.name for t in tables}
    graph = {
        t.name: sorted({fk.referenced_table for fk in t.foreign_keys
                        if fk.referenced_table in names and fk.referenced_table != t.name})
        for t in tables
    }

    cycles: List[List[str]] = []
    seen_cycles: Set[frozenset] = set()
    visited: Set[str] = set()

    def visit(node: str, path: List[str]) -> None:
        if node in path:
            cycle = path[path.index(node):] + [node]
            key = frozenset(cycle)
            if key not in seen_cycles:
                seen_cycles.add(key)
                cycles.append(cycle)
            return
        if node in visited:
            return
        path.append(node)
        for dep in graph.get(node, []):
            visit(dep, path)
        path.pop()
        visited.add(node)

    for name in sorted(graph):
        visit(name, [])

    return cycles


def get_sync_order(tables: List[TableSchema]) -> List[str]:
    """
    Order tables so referenced tables come before the tables that reference them.

    Tables caught in a cycle cannot be ordered; they are appended by name.
    """
    names = {t.name for t in tables}
    deps = {
        t.name: {fk.referenced_table for fk in t.foreign_keys
                 if fk.referenced_table in names and fk.referenced_table != t.name}
        for t in tables
    }

    ordered: List[str] = []
    remaining = dict(deps)
    while remaining:
        ready = sorted(name for name, d in remaining.items() if not (d - set(ordered)))
        if not ready:
            ordered.extend(sorted(remaining))
            break
        ordered.extend(ready)
        for name in ready:
            del remaining[name]

    return ordered
