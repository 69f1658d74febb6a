"""
Migration Script Generation Module

This module turns the issues of a SchemaDiff into remediation DDL for the
target database. Every statement is idempotent (IF [NOT] EXISTS forms or a
guarded DO block) so a partially applied script can simply be run again.

Scripts are split by risk:
- safe: additive or lossless changes, included in combined_sql
- breaking: drops, narrowing type changes, new NOT NULL constraints; routed
  to manual_review_required and never part of combined_sql
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging

from pg_sync.models import (
    ColumnDefinition,
    ForeignKeyReference,
    IssueKind,
    SchemaDiff,
    TableSchema,
    ValidationIssue,
)
from pg_sync.type_compat import default_for_type, is_widening
from pg_sync.utils import quote_identifier, quote_sql_literal

logger = logging.getLogger(__name__)

SERIAL_TYPES = {
    'smallint': 'smallserial',
    'integer': 'serial',
    'bigint': 'bigserial',
}


@dataclass(frozen=True)
class MigrationScript:
    table_name: str
    issue_id: str
    description: str
    sql: str
    rollback_sql: Optional[str] = None
    breaking: bool = False
    additive: bool = True


@dataclass(frozen=True)
class MigrationPlan:
    """Ordered remediation scripts for one diff."""

    scripts: Tuple[MigrationScript, ...] = ()

    @property
    def safe_scripts(self) -> List[MigrationScript]:
        return [s for s in self.scripts if not s.breaking]

    @property
    def manual_review_required(self) -> List[MigrationScript]:
        return [s for s in self.scripts if s.breaking]

    @property
    def risk_level(self) -> str:
        if any(s.breaking for s in self.scripts):
            return 'high'
        if all(s.additive for s in self.scripts):
            return 'low'
        return 'medium'

    @property
    def combined_sql(self) -> str:
        """Safe scripts as one executable script."""
        return self._render(
            self.safe_scripts,
            f"-- Schema migration: {len(self.safe_scripts)} statement(s), risk level {self.risk_level}",
        )

    @property
    def manual_review_sql(self) -> str:
        return self._render(
            self.manual_review_required,
            f"-- Manual review required: {len(self.manual_review_required)} statement(s)",
        )

    @property
    def rollback_sql(self) -> str:
        """Inverse of combined_sql, newest change first."""
        parts = ["-- Rollback of schema migration"]
        for script in reversed(self.safe_scripts):
            if script.rollback_sql:
                parts.append(f"-- Undo: {script.description}\n{script.rollback_sql}")
        return '\n\n'.join(parts) + '\n'

    @staticmethod
    def _render(scripts: List[MigrationScript], header: str) -> str:
        parts = [header]
        for script in scripts:
            parts.append(f"-- {script.description}\n{script.sql}")
        return '\n\n'.join(parts) + '\n'

    def to_dict(self) -> Dict[str, object]:
        return {
            'scripts': [s.sql for s in self.scripts],
            'safe_scripts': [s.sql for s in self.safe_scripts],
            'manual_review_required': [s.sql for s in self.manual_review_required],
            'combined_sql': self.combined_sql,
            'rollback_sql': self.rollback_sql,
            'risk_level': self.risk_level,
        }


class MigrationGenerator:
    """Generate remediation DDL from schema diff issues."""

    def __init__(self, schema_name: str = 'public'):
        """
        Initialize the migration generator.

        Args:
            schema_name: Target schema; tables are left unqualified for 'public'
        """
        self.schema_name = schema_name
        self._handlers: Dict[IssueKind, Callable[[ValidationIssue, SchemaDiff], Optional[MigrationScript]]] = {
            IssueKind.TABLE_MISSING_IN_TARGET: self._create_table,
            IssueKind.COLUMN_MISSING_IN_TARGET: self._add_column,
            IssueKind.COLUMN_EXTRA_IN_TARGET: self._drop_column,
            IssueKind.TYPE_MISMATCH: self._alter_column_type,
            IssueKind.NULLABLE_MISMATCH: self._alter_nullable,
            IssueKind.DEFAULT_MISMATCH: self._alter_default,
            IssueKind.PRIMARY_KEY_MISSING_IN_TARGET: self._add_primary_key,
            IssueKind.PRIMARY_KEY_MISMATCH: self._replace_primary_key,
            IssueKind.FOREIGN_KEY_MISSING_IN_TARGET: self._add_foreign_key,
            IssueKind.FOREIGN_KEY_EXTRA_IN_TARGET: self._drop_foreign_key,
        }

    def generate(self, diff: SchemaDiff) -> MigrationPlan:
        """
        Build a migration plan for every actionable issue in the diff.

        Issues that describe the source side (missing source key, tables
        absent from source) or are purely informational produce no script.

        Args:
            diff: Result of DiffEngine.calculate_diff

        Returns:
            MigrationPlan with scripts in issue order
        """
        scripts = []
        for issue in diff.schema_issues:
            handler = self._handlers.get(issue.kind)
            if handler is None:
                continue
            script = handler(issue, diff)
            if script is not None:
                scripts.append(script)

        plan = MigrationPlan(scripts=tuple(scripts))
        logger.info(
            f"Generated {len(plan.scripts)} migration script(s): "
            f"{len(plan.safe_scripts)} safe, {len(plan.manual_review_required)} for manual review "
            f"(risk {plan.risk_level})"
        )
        return plan

    # -------------------------------------------------------------------------
    # Naming helpers
    # -------------------------------------------------------------------------

    def _table_ref(self, table_name: str) -> str:
        if self.schema_name == 'public':
            return quote_identifier(table_name)
        return f"{quote_identifier(self.schema_name)}.{quote_identifier(table_name)}"

    def _regclass(self, table_name: str) -> str:
        qualified = f"{quote_identifier(self.schema_name)}.{quote_identifier(table_name)}"
        return f"{quote_sql_literal(qualified)}::regclass"

    def _column_definition(self, column: ColumnDefinition, include_not_null: bool = True) -> str:
        col_type = column.type
        default = column.default
        if default and default.startswith('nextval(') and col_type in SERIAL_TYPES:
            # Sequence names do not carry over; let serial create its own
            col_type = SERIAL_TYPES[col_type]
            default = None

        parts = [quote_identifier(column.name), col_type]
        if include_not_null and not column.nullable:
            parts.append('NOT NULL')
        if default is not None:
            parts.append(f"DEFAULT {default}")
        return ' '.join(parts)

    @staticmethod
    def _column_of(schemas: Dict[str, TableSchema], issue: ValidationIssue) -> Optional[ColumnDefinition]:
        table = schemas.get(issue.table_name)
        if table is None or issue.column_name is None:
            return None
        return table.get_column(issue.column_name)

    # -------------------------------------------------------------------------
    # Tables and columns
    # -------------------------------------------------------------------------

    def _create_table(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source = diff.source_schemas.get(issue.table_name)
        if source is None:
            return None

        lines = [f"    {self._column_definition(c)}" for c in source.columns]
        if source.primary_key:
            pk_cols = ', '.join(quote_identifier(c) for c in source.primary_key)
            lines.append(f"    PRIMARY KEY ({pk_cols})")

        table = self._table_ref(source.name)
        statement = f"CREATE TABLE IF NOT EXISTS {table} (\n" + ',\n'.join(lines) + "\n);"

        return MigrationScript(
            table_name=source.name,
            issue_id=issue.id,
            description=f"Create table {source.name}",
            sql=statement,
            rollback_sql=f"DROP TABLE IF EXISTS {table} CASCADE;",
        )

    def _add_column(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        column = self._column_of(diff.source_schemas, issue)
        if column is None:
            return None

        table = self._table_ref(issue.table_name)
        col = quote_identifier(column.name)
        rollback = f"ALTER TABLE {table} DROP COLUMN IF EXISTS {col};"
        needs_backfill = not column.nullable and column.default is None

        if not needs_backfill:
            return MigrationScript(
                table_name=issue.table_name,
                issue_id=issue.id,
                description=f"Add column {issue.table_name}.{column.name}",
                sql=f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {self._column_definition(column)};",
                rollback_sql=rollback,
            )

        fill_value = default_for_type(column.type)
        if fill_value is None:
            return MigrationScript(
                table_name=issue.table_name,
                issue_id=issue.id,
                description=(
                    f"Add NOT NULL column {issue.table_name}.{column.name} "
                    f"(no default for {column.type}; existing rows need values)"
                ),
                sql=f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {self._column_definition(column)};",
                rollback_sql=rollback,
                breaking=True,
            )

        statement = (
            "DO $$\n"
            "BEGIN\n"
            "    IF NOT EXISTS (\n"
            "        SELECT 1 FROM information_schema.columns\n"
            f"        WHERE table_schema = {quote_sql_literal(self.schema_name)}\n"
            f"          AND table_name = {quote_sql_literal(issue.table_name)}\n"
            f"          AND column_name = {quote_sql_literal(column.name)}\n"
            "    ) THEN\n"
            f"        ALTER TABLE {table} ADD COLUMN {self._column_definition(column, include_not_null=False)};\n"
            f"        UPDATE {table} SET {col} = {fill_value} WHERE {col} IS NULL;\n"
            f"        ALTER TABLE {table} ALTER COLUMN {col} SET NOT NULL;\n"
            "    END IF;\n"
            "END $$;"
        )
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Add NOT NULL column {issue.table_name}.{column.name} (back-filled with {fill_value})",
            sql=statement,
            rollback_sql=rollback,
        )

    def _drop_column(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        column = self._column_of(diff.target_schemas, issue)
        if column is None:
            return None

        table = self._table_ref(issue.table_name)
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Drop column {issue.table_name}.{column.name} (data in this column is lost)",
            sql=f"ALTER TABLE {table} DROP COLUMN IF EXISTS {quote_identifier(column.name)};",
            rollback_sql=f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {self._column_definition(column)};",
            breaking=True,
            additive=False,
        )

    def _alter_column_type(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source_col = self._column_of(diff.source_schemas, issue)
        target_col = self._column_of(diff.target_schemas, issue)
        if source_col is None or target_col is None:
            return None

        table = self._table_ref(issue.table_name)
        col = quote_identifier(source_col.name)
        widening = is_widening(target_col.type, source_col.type)

        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=(
                f"Change {issue.table_name}.{source_col.name} from {target_col.type} to {source_col.type}"
                + ('' if widening else ' (may lose data)')
            ),
            sql=f"ALTER TABLE {table} ALTER COLUMN {col} TYPE {source_col.type} USING {col}::{source_col.type};",
            rollback_sql=f"ALTER TABLE {table} ALTER COLUMN {col} TYPE {target_col.type} USING {col}::{target_col.type};",
            breaking=not widening,
            additive=False,
        )

    def _alter_nullable(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source_col = self._column_of(diff.source_schemas, issue)
        if source_col is None:
            return None

        table = self._table_ref(issue.table_name)
        col = quote_identifier(source_col.name)
        drop = f"ALTER TABLE {table} ALTER COLUMN {col} DROP NOT NULL;"
        set_ = f"ALTER TABLE {table} ALTER COLUMN {col} SET NOT NULL;"

        if source_col.nullable:
            return MigrationScript(
                table_name=issue.table_name,
                issue_id=issue.id,
                description=f"Allow NULL in {issue.table_name}.{source_col.name}",
                sql=drop,
                rollback_sql=set_,
                additive=False,
            )
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Require NOT NULL in {issue.table_name}.{source_col.name} (fails if NULLs exist)",
            sql=set_,
            rollback_sql=drop,
            breaking=True,
            additive=False,
        )

    def _alter_default(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source_col = self._column_of(diff.source_schemas, issue)
        target_col = self._column_of(diff.target_schemas, issue)
        if source_col is None or target_col is None:
            return None

        table = self._table_ref(issue.table_name)
        col = quote_identifier(source_col.name)

        def default_sql(default: Optional[str]) -> str:
            if default is None:
                return f"ALTER TABLE {table} ALTER COLUMN {col} DROP DEFAULT;"
            return f"ALTER TABLE {table} ALTER COLUMN {col} SET DEFAULT {default};"

        sequence_backed = bool(source_col.default and source_col.default.startswith('nextval('))
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=(
                f"Set default of {issue.table_name}.{source_col.name} to {source_col.default or 'none'}"
                + (' (sequence must exist in target)' if sequence_backed else '')
            ),
            sql=default_sql(source_col.default),
            rollback_sql=default_sql(target_col.default),
            breaking=sequence_backed,
            additive=False,
        )

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def _pk_name(self, table: TableSchema) -> str:
        return table.primary_key_name or f"{table.name}_pkey"

    def _add_primary_key(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source = diff.source_schemas.get(issue.table_name)
        if source is None or not source.primary_key:
            return None

        table = self._table_ref(issue.table_name)
        pk_name = quote_identifier(self._pk_name(source))
        pk_cols = ', '.join(quote_identifier(c) for c in source.primary_key)

        statement = (
            "DO $$\n"
            "BEGIN\n"
            "    IF NOT EXISTS (\n"
            "        SELECT 1 FROM pg_constraint\n"
            f"        WHERE conrelid = {self._regclass(issue.table_name)} AND contype = 'p'\n"
            "    ) THEN\n"
            f"        ALTER TABLE {table} ADD CONSTRAINT {pk_name} PRIMARY KEY ({pk_cols});\n"
            "    END IF;\n"
            "END $$;"
        )
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Add primary key ({', '.join(source.primary_key)}) to {issue.table_name}",
            sql=statement,
            rollback_sql=f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {pk_name};",
        )

    def _replace_primary_key(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        source = diff.source_schemas.get(issue.table_name)
        target = diff.target_schemas.get(issue.table_name)
        if source is None or target is None:
            return None

        table = self._table_ref(issue.table_name)
        old_name = quote_identifier(self._pk_name(target))
        new_name = quote_identifier(self._pk_name(source))
        pk_cols = ', '.join(quote_identifier(c) for c in source.primary_key)
        expected = ', '.join(quote_sql_literal(c) for c in source.primary_key)

        statement = (
            "DO $$\n"
            "BEGIN\n"
            "    IF (\n"
            "        SELECT array_agg(a.attname::text ORDER BY k.ord)\n"
            "        FROM pg_constraint c\n"
            "        CROSS JOIN LATERAL unnest(c.conkey) WITH ORDINALITY AS k(attnum, ord)\n"
            "        JOIN pg_attribute a ON a.attrelid = c.conrelid AND a.attnum = k.attnum\n"
            f"        WHERE c.conrelid = {self._regclass(issue.table_name)} AND c.contype = 'p'\n"
            f"    ) IS DISTINCT FROM ARRAY[{expected}] THEN\n"
            f"        ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {old_name};\n"
            f"        ALTER TABLE {table} ADD CONSTRAINT {new_name} PRIMARY KEY ({pk_cols});\n"
            "    END IF;\n"
            "END $$;"
        )
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=(
                f"Replace primary key of {issue.table_name}: ({', '.join(target.primary_key)}) "
                f"-> ({', '.join(source.primary_key)})"
            ),
            sql=statement,
            breaking=True,
            additive=False,
        )

    def _find_fk(self, schemas: Dict[str, TableSchema], issue: ValidationIssue) -> Optional[ForeignKeyReference]:
        table = schemas.get(issue.table_name)
        if table is None:
            return None
        for fk in table.foreign_keys:
            if fk.constraint_name == issue.constraint_name:
                return fk
        return None

    def _add_foreign_key(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        fk = self._find_fk(diff.source_schemas, issue)
        if fk is None:
            return None

        table = self._table_ref(issue.table_name)
        name = quote_identifier(fk.constraint_name)
        cols = ', '.join(quote_identifier(c) for c in fk.columns)
        ref_cols = ', '.join(quote_identifier(c) for c in fk.referenced_columns)

        statement = (
            "DO $$\n"
            "BEGIN\n"
            "    IF NOT EXISTS (\n"
            "        SELECT 1 FROM pg_constraint\n"
            f"        WHERE conrelid = {self._regclass(issue.table_name)}\n"
            f"          AND conname = {quote_sql_literal(fk.constraint_name)}\n"
            "    ) THEN\n"
            f"        ALTER TABLE {table} ADD CONSTRAINT {name}\n"
            f"            FOREIGN KEY ({cols}) REFERENCES {self._table_ref(fk.referenced_table)} ({ref_cols})\n"
            f"            ON DELETE {fk.on_delete};\n"
            "    END IF;\n"
            "END $$;"
        )
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Add foreign key {fk.constraint_name} on {issue.table_name}",
            sql=statement,
            rollback_sql=f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {name};",
        )

    def _drop_foreign_key(self, issue: ValidationIssue, diff: SchemaDiff) -> Optional[MigrationScript]:
        fk = self._find_fk(diff.target_schemas, issue)
        if fk is None:
            return None

        table = self._table_ref(issue.table_name)
        return MigrationScript(
            table_name=issue.table_name,
            issue_id=issue.id,
            description=f"Drop foreign key {fk.constraint_name} from {issue.table_name}",
            sql=f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {quote_identifier(fk.constraint_name)};",
            breaking=True,
            additive=False,
        )
