"""
Tests for Diff Engine Module

These tests validate schema comparison (issue kinds, severities, ordering)
and row delta counting with the database reads mocked out.
"""

from datetime import datetime

import pytest
from unittest.mock import Mock, patch

from pg_sync.diff_engine import DiffEngine, compare_schemas
from pg_sync.migration_generator import MigrationGenerator
from pg_sync.models import (
    ColumnDefinition,
    ForeignKeyReference,
    IssueKind,
    Severity,
    TableSchema,
)


def col(name, type_='integer', nullable=True, pk=False, default=None):
    return ColumnDefinition(name=name, type=type_, nullable=nullable, is_primary_key=pk, default=default)


def users_table(extra_columns=(), pk=True, fks=()):
    columns = [
        col('id', 'integer', nullable=False, pk=pk),
        col('email', 'varchar(255)', nullable=False),
    ] + list(extra_columns)
    return TableSchema(
        name='users',
        columns=tuple(columns),
        foreign_keys=tuple(fks),
        primary_key_name='users_pkey' if pk else None,
        primary_key_order=('id',) if pk else (),
    )


def simple_table(name, fks=()):
    return TableSchema(
        name=name,
        columns=(col('id', 'integer', nullable=False, pk=True), col('parent_id')),
        foreign_keys=tuple(fks),
        primary_key_order=('id',),
    )


def fk(name, column, ref_table):
    return ForeignKeyReference(
        constraint_name=name,
        columns=(column,),
        referenced_table=ref_table,
        referenced_columns=('id',),
    )


def issues_of(issues_by_table, table='users'):
    return issues_by_table.get(table, [])


class TestCompareColumns:
    """Test column-level comparison."""

    def test_identical_schemas_have_no_issues(self):
        issues, order = compare_schemas({'users': users_table()}, {'users': users_table()}, ['users'])
        assert issues == {}
        assert order == ['users']

    def test_missing_column_in_target_is_critical(self):
        source = users_table([col('last_login', 'timestamp')])
        target = users_table()

        issues, _ = compare_schemas({'users': source}, {'users': target}, ['users'])
        result = issues_of(issues)

        assert len(result) == 1
        assert result[0].kind == IssueKind.COLUMN_MISSING_IN_TARGET
        assert result[0].severity == Severity.CRITICAL
        assert result[0].column_name == 'last_login'
        assert result[0].id == 'issue-1'

    def test_extra_column_in_target_is_critical(self):
        source = users_table()
        target = users_table([col('legacy_flag', 'boolean')])

        result = issues_of(compare_schemas({'users': source}, {'users': target}, ['users'])[0])

        assert [i.kind for i in result] == [IssueKind.COLUMN_EXTRA_IN_TARGET]
        assert result[0].severity == Severity.CRITICAL

    def test_type_mismatch_widening_recommendation(self):
        source = users_table([col('score', 'bigint')])
        target = users_table([col('score', 'integer')])

        result = issues_of(compare_schemas({'users': source}, {'users': target}, ['users'])[0])

        assert len(result) == 1
        assert result[0].kind == IssueKind.TYPE_MISMATCH
        assert result[0].severity == Severity.CRITICAL
        assert result[0].recommendation == 'Widen target column to bigint'

    def test_type_mismatch_narrowing_recommendation(self):
        source = users_table([col('score', 'integer')])
        target = users_table([col('score', 'bigint')])

        result = issues_of(compare_schemas({'users': source}, {'users': target}, ['users'])[0])

        assert result[0].kind == IssueKind.TYPE_MISMATCH
        assert 'values may not fit' in result[0].recommendation

    def test_type_aliases_are_equal(self):
        source = users_table([col('name', 'character varying(100)')])
        target = users_table([col('name', 'varchar(100)')])

        issues, _ = compare_schemas({'users': source}, {'users': target}, ['users'])
        assert issues == {}

    def test_nullable_mismatch_is_warning(self):
        source = users_table([col('nickname', 'text', nullable=True)])
        target = users_table([col('nickname', 'text', nullable=False)])

        result = issues_of(compare_schemas({'users': source}, {'users': target}, ['users'])[0])

        assert [i.kind for i in result] == [IssueKind.NULLABLE_MISMATCH]
        assert result[0].severity == Severity.WARNING

    def test_default_mismatch_is_warning(self):
        source = users_table([col('active', 'boolean', default='true')])
        target = users_table([col('active', 'boolean', default='false')])

        result = issues_of(compare_schemas({'users': source}, {'users': target}, ['users'])[0])

        assert [i.kind for i in result] == [IssueKind.DEFAULT_MISMATCH]
        assert result[0].severity == Severity.WARNING

    def test_default_whitespace_ignored(self):
        source = users_table([col('created_at', 'timestamp', default='now()')])
        target = users_table([col('created_at', 'timestamp', default=' now() ')])

        issues, _ = compare_schemas({'users': source}, {'users': target}, ['users'])
        assert issues == {}


class TestComparePrimaryAndForeignKeys:
    """Test key comparison."""

    def test_missing_source_pk_is_critical(self):
        issues, _ = compare_schemas(
            {'users': users_table(pk=False)}, {'users': users_table()}, ['users']
        )
        result = issues_of(issues)
        assert [i.kind for i in result] == [IssueKind.PRIMARY_KEY_MISSING_IN_SOURCE]
        assert result[0].severity == Severity.CRITICAL

    def test_missing_target_pk_is_critical(self):
        issues, _ = compare_schemas(
            {'users': users_table()}, {'users': users_table(pk=False)}, ['users']
        )
        result = issues_of(issues)
        assert [i.kind for i in result] == [IssueKind.PRIMARY_KEY_MISSING_IN_TARGET]

    def test_pk_mismatch(self):
        target = TableSchema(
            name='users',
            columns=users_table().columns,
            primary_key_order=('email',),
        )
        result = issues_of(compare_schemas({'users': users_table()}, {'users': target}, ['users'])[0])
        assert [i.kind for i in result] == [IssueKind.PRIMARY_KEY_MISMATCH]

    def test_missing_foreign_key_carries_constraint_name(self):
        source = {
            'orgs': simple_table('orgs'),
            'users': users_table([col('org_id')], fks=[fk('users_org_fk', 'org_id', 'orgs')]),
        }
        target = {
            'orgs': simple_table('orgs'),
            'users': users_table([col('org_id')]),
        }

        result = issues_of(compare_schemas(source, target, ['orgs', 'users'])[0])

        assert len(result) == 1
        assert result[0].kind == IssueKind.FOREIGN_KEY_MISSING_IN_TARGET
        assert result[0].severity == Severity.WARNING
        assert result[0].constraint_name == 'users_org_fk'

    def test_foreign_keys_compared_by_shape(self):
        source = {'users': users_table([col('org_id')], fks=[fk('fk_a', 'org_id', 'orgs')])}
        target = {'users': users_table([col('org_id')], fks=[fk('fk_b', 'org_id', 'orgs')])}

        issues, _ = compare_schemas(source, target, ['users'])
        assert issues == {}

    def test_extra_foreign_key_in_target(self):
        source = {'users': users_table([col('org_id')])}
        target = {'users': users_table([col('org_id')], fks=[fk('old_fk', 'org_id', 'orgs')])}

        result = issues_of(compare_schemas(source, target, ['users'])[0])
        assert [i.kind for i in result] == [IssueKind.FOREIGN_KEY_EXTRA_IN_TARGET]
        assert result[0].constraint_name == 'old_fk'


class TestCompareTables:
    """Test table presence, ordering and id assignment."""

    def test_table_missing_in_target_is_info(self):
        issues, order = compare_schemas({'users': users_table()}, {}, ['users'])
        result = issues_of(issues)
        assert [i.kind for i in result] == [IssueKind.TABLE_MISSING_IN_TARGET]
        assert result[0].severity == Severity.INFO
        assert order == ['users']

    def test_table_missing_in_source_is_warning(self):
        issues, order = compare_schemas({}, {'users': users_table()}, ['users'])
        result = issues_of(issues)
        assert [i.kind for i in result] == [IssueKind.TABLE_MISSING_IN_SOURCE]
        assert result[0].severity == Severity.WARNING
        assert order == []

    def test_table_missing_everywhere_is_warning(self):
        result = issues_of(compare_schemas({}, {}, ['ghost'])[0], 'ghost')
        assert [i.kind for i in result] == [IssueKind.TABLE_MISSING]
        assert result[0].severity == Severity.WARNING

    def test_sync_order_parents_first(self):
        tables = {
            'comments': simple_table('comments', [fk('c_post', 'parent_id', 'posts')]),
            'posts': simple_table('posts', [fk('p_user', 'parent_id', 'users')]),
            'users': simple_table('users'),
        }
        _, order = compare_schemas(tables, tables, ['comments', 'posts', 'users'])
        assert order == ['users', 'posts', 'comments']

    def test_circular_dependency_is_info(self):
        tables = {
            'a': simple_table('a', [fk('a_b', 'parent_id', 'b')]),
            'b': simple_table('b', [fk('b_a', 'parent_id', 'a')]),
        }
        issues, order = compare_schemas(tables, tables, ['a', 'b'])

        cycle_issues = [i for lst in issues.values() for i in lst]
        assert len(cycle_issues) == 1
        assert cycle_issues[0].kind == IssueKind.CIRCULAR_DEPENDENCY
        assert cycle_issues[0].severity == Severity.INFO
        assert sorted(order) == ['a', 'b']

    def test_self_reference_is_not_a_cycle(self):
        tables = {'tree': simple_table('tree', [fk('tree_parent', 'parent_id', 'tree')])}
        issues, order = compare_schemas(tables, tables, ['tree'])
        assert issues == {}
        assert order == ['tree']

    def test_issue_ids_are_sequential(self):
        source = {
            'users': users_table([col('a'), col('b')]),
            'orders': simple_table('orders'),
        }
        target = {'users': users_table()}

        issues, _ = compare_schemas(source, target, ['users', 'orders'])
        ids = [i.id for name in ('users', 'orders') for i in issues[name]]
        assert ids == ['issue-1', 'issue-2', 'issue-3']


class FakeKeyStore:
    """In-memory stand-in for keyset reads over integer primary keys."""

    def __init__(self, source_keys, target_keys):
        self.source_conn = Mock(name='source_conn')
        self.target_conn = Mock(name='target_conn')
        self.keys = {
            id(self.source_conn): sorted(source_keys),
            id(self.target_conn): sorted(target_keys),
        }
        self.read_calls = 0

    def read_key_batch(self, conn, schema_name, table_name, pk_columns, key_types, after_key, limit):
        self.read_calls += 1
        keys = self.keys[id(conn)]
        after = after_key[0] if after_key is not None else None
        remaining = [k for k in keys if after is None or k > after]
        return [(k,) for k in remaining[:limit]]

    def find_existing_keys(self, conn, schema_name, table_name, pk_columns, key_types, keys):
        present = set(self.keys[id(conn)])
        return {k for k in keys if k[0] in present}

    def count_rows(self, conn, schema_name, table_name):
        return len(self.keys[id(conn)])


class TestDiffEngine:
    """Test DiffEngine.calculate_diff with mocked reads."""

    @pytest.fixture
    def store(self):
        # 10,000 source rows, 9,000 target rows, 500 keys in common
        source_keys = range(1, 10001)
        target_keys = list(range(9501, 10001)) + list(range(20001, 28501))
        return FakeKeyStore(source_keys, target_keys)

    @pytest.fixture
    def inspector(self):
        inspector = Mock()
        inspector.schema_name = 'public'
        return inspector

    @pytest.fixture
    def patched_reads(self, store):
        with patch('pg_sync.diff_engine.read_key_batch', side_effect=store.read_key_batch), \
             patch('pg_sync.diff_engine.find_existing_keys', side_effect=store.find_existing_keys), \
             patch('pg_sync.diff_engine.count_rows', side_effect=store.count_rows):
            yield store

    def _inspect_by_conn(self, store, source_tables, target_tables):
        def inspect(conn):
            return source_tables if conn is store.source_conn else target_tables
        return inspect

    def test_row_delta_scenario(self, patched_reads, inspector):
        store = patched_reads
        inspector.inspect.side_effect = self._inspect_by_conn(store, [users_table()], [users_table()])
        engine = DiffEngine(inspector=inspector)

        diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_inserts == 9500
        assert diff.total_updates == 500
        assert diff.schema_issues == []
        assert diff.can_proceed
        assert diff.tables[0].source_row_count == 10000
        assert diff.tables[0].target_row_count == 9000

    def test_row_delta_in_multiple_key_batches(self, patched_reads, inspector):
        store = patched_reads
        inspector.inspect.side_effect = self._inspect_by_conn(store, [users_table()], [users_table()])
        engine = DiffEngine(inspector=inspector, key_batch_size=3000)

        diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_inserts == 9500
        assert diff.total_updates == 500
        # 3000 + 3000 + 3000 + 1000, the short batch ends the scan
        assert store.read_calls == 4

    def test_missing_column_scenario(self, patched_reads, inspector):
        store = patched_reads
        source = users_table([col('last_login', 'timestamp', nullable=True)])
        inspector.inspect.side_effect = self._inspect_by_conn(store, [source], [users_table()])
        engine = DiffEngine(inspector=inspector)

        diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        critical = diff.issues_by_severity(Severity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].table_name == 'users'
        assert critical[0].column_name == 'last_login'
        assert not diff.can_proceed

        plan = MigrationGenerator().generate(diff)
        assert [s.sql for s in plan.safe_scripts] == [
            'ALTER TABLE users ADD COLUMN IF NOT EXISTS last_login timestamp;'
        ]
        assert plan.risk_level == 'low'

    def test_deterministic(self, patched_reads, inspector):
        store = patched_reads
        source = users_table([col('last_login', 'timestamp'), col('bio', 'text')])
        target = users_table([col('legacy', 'text')])
        inspector.inspect.side_effect = self._inspect_by_conn(store, [source], [target])
        engine = DiffEngine(inspector=inspector)

        first = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])
        second = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert first == second
        assert [i.id for i in first.schema_issues] == ['issue-1', 'issue-2', 'issue-3']

    def test_table_missing_in_target_counts_all_source_rows(self, patched_reads, inspector):
        store = patched_reads
        inspector.inspect.side_effect = self._inspect_by_conn(store, [users_table()], [])
        engine = DiffEngine(inspector=inspector)

        diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_inserts == 10000
        assert diff.total_updates == 0
        assert diff.can_proceed

    def test_pk_mismatch_skips_row_counts(self, patched_reads, inspector):
        store = patched_reads
        target = TableSchema(name='users', columns=users_table().columns, primary_key_order=('email',))
        inspector.inspect.side_effect = self._inspect_by_conn(store, [users_table()], [target])
        engine = DiffEngine(inspector=inspector)

        diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_inserts == 0
        assert store.read_calls == 0

    def test_unknown_change_detection_rejected(self):
        with pytest.raises(ValueError):
            DiffEngine(inspector=Mock(), change_detection='magic')

    def test_schema_only_diff(self, inspector):
        source_conn, target_conn = Mock(), Mock()
        source = [users_table([col('last_login', 'timestamp')]), simple_table('orders')]
        inspector.inspect.side_effect = lambda conn: source if conn is source_conn else [users_table()]
        engine = DiffEngine(inspector=inspector)

        diff = engine.calculate_schema_diff(source_conn, target_conn)

        assert [t.table_name for t in diff.tables] == ['orders', 'users']
        assert diff.total_inserts == 0
        kinds = sorted(i.kind.value for i in diff.schema_issues)
        assert kinds == ['column_missing_in_target', 'table_missing_in_target']


class TestChangeDetection:
    """Test update counting modes."""

    @pytest.fixture
    def store(self):
        return FakeKeyStore(range(1, 4), range(1, 4))

    @pytest.fixture
    def tables(self):
        return [users_table([col('updated_at', 'timestamp')])]

    def _engine(self, store, tables, mode):
        inspector = Mock()
        inspector.schema_name = 'public'
        inspector.inspect.side_effect = lambda conn: tables
        return DiffEngine(inspector=inspector, change_detection=mode)

    def test_keys_mode_counts_every_overlap(self, store, tables):
        engine = self._engine(store, tables, 'keys')
        with patch('pg_sync.diff_engine.read_key_batch', side_effect=store.read_key_batch), \
             patch('pg_sync.diff_engine.find_existing_keys', side_effect=store.find_existing_keys), \
             patch('pg_sync.diff_engine.count_rows', side_effect=store.count_rows), \
             patch('pg_sync.diff_engine.fetch_key_values') as mock_fetch:
            diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_updates == 3
        mock_fetch.assert_not_called()

    def test_hash_mode_counts_changed_rows(self, store, tables):
        engine = self._engine(store, tables, 'hash')
        source_hashes = {(1,): 'a', (2,): 'b', (3,): 'c'}
        target_hashes = {(1,): 'a', (2,): 'x', (3,): 'c'}

        with patch('pg_sync.diff_engine.read_key_batch', side_effect=store.read_key_batch), \
             patch('pg_sync.diff_engine.find_existing_keys', side_effect=store.find_existing_keys), \
             patch('pg_sync.diff_engine.count_rows', side_effect=store.count_rows), \
             patch('pg_sync.diff_engine.fetch_key_values', side_effect=[source_hashes, target_hashes]):
            diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_updates == 1
        assert diff.total_inserts == 0

    def test_updated_at_mode_counts_newer_source_rows(self, store, tables):
        engine = self._engine(store, tables, 'updated_at')
        old, new = datetime(2024, 1, 1), datetime(2024, 6, 1)
        source_ts = {(1,): new, (2,): old, (3,): new}
        target_ts = {(1,): old, (2,): old, (3,): None}

        with patch('pg_sync.diff_engine.read_key_batch', side_effect=store.read_key_batch), \
             patch('pg_sync.diff_engine.find_existing_keys', side_effect=store.find_existing_keys), \
             patch('pg_sync.diff_engine.count_rows', side_effect=store.count_rows), \
             patch('pg_sync.diff_engine.fetch_key_values', side_effect=[source_ts, target_ts]):
            diff = engine.calculate_diff(store.source_conn, store.target_conn, ['users'])

        assert diff.total_updates == 2
