"""
Tests for Data Transfer Module

These tests validate:
- Table planning (column intersection, key types, JSON columns)
- Keyset batch reads and checkpoint-safe last keys
- Upsert insert/update counting and batch transactions
"""

import uuid
from datetime import datetime
from decimal import Decimal

import psycopg2
import pytest
from unittest.mock import MagicMock
from psycopg2.extras import Json

from pg_sync.data_transfer import (
    RowBatch,
    TableTransfer,
    count_rows,
    find_existing_keys,
    json_safe_key,
    read_key_batch,
    upsert_rows,
)
from pg_sync.errors import BatchWriteError, DatabaseConnectionError
from pg_sync.models import (
    ColumnDefinition,
    ConflictStrategy,
    SyncDirection,
    TableSchema,
)


def make_conn():
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    return conn, cursor


def transactional_conn():
    """Connection mock that, like psycopg2, rejects set_session inside an open transaction."""
    conn, cursor = make_conn()
    state = {'in_transaction': False}

    def execute(*args, **kwargs):
        state['in_transaction'] = True

    def end_transaction():
        state['in_transaction'] = False

    def set_session(**kwargs):
        if state['in_transaction']:
            raise psycopg2.ProgrammingError('set_session cannot be used inside a transaction')

    cursor.execute.side_effect = execute
    conn.commit.side_effect = end_transaction
    conn.rollback.side_effect = end_transaction
    conn.set_session.side_effect = set_session
    return conn, cursor


def users_schema(extra=()):
    return TableSchema(
        name='users',
        columns=(
            ColumnDefinition('id', 'integer', nullable=False, is_primary_key=True),
            ColumnDefinition('name', 'text'),
            ColumnDefinition('prefs', 'jsonb'),
            ColumnDefinition('updated_at', 'timestamp'),
        ) + tuple(extra),
        primary_key_order=('id',),
        approximate_row_count=100,
        approximate_size_bytes=51200,
    )


@pytest.fixture
def connections():
    source, source_cursor = make_conn()
    target, target_cursor = make_conn()
    return source, source_cursor, target, target_cursor


@pytest.fixture
def transfer(connections):
    source, _, target, _ = connections
    return TableTransfer(source, target)


class TestJsonSafeKey:
    """Test rendering of checkpoint keys."""

    def test_plain_values_unchanged(self):
        assert json_safe_key([1, 'a', None, True]) == [1, 'a', None, True]

    def test_temporal_values_use_isoformat(self):
        assert json_safe_key([datetime(2024, 5, 1, 8, 30)]) == ['2024-05-01T08:30:00']

    def test_other_values_use_text_form(self):
        key = uuid.UUID('12345678-1234-5678-1234-567812345678')
        assert json_safe_key([key, Decimal('1.50')]) == ['12345678-1234-5678-1234-567812345678', '1.50']


class TestKeyQueries:
    """Test the key reading helpers used by the diff engine."""

    def test_read_key_batch_first_page(self):
        conn, cursor = make_conn()
        cursor.fetchall.return_value = [(1,), (2,)]

        keys = read_key_batch(conn, 'public', 'users', ['id'], ['integer'], None, 100)

        assert keys == [(1,), (2,)]
        assert cursor.execute.call_args[0][1] == []

    def test_read_key_batch_after_key(self):
        conn, cursor = make_conn()
        cursor.fetchall.return_value = []

        read_key_batch(conn, 'public', 'pairs', ['a', 'b'], ['integer', 'text'], [5, 'x'], 100)

        assert cursor.execute.call_args[0][1] == [5, 'x']

    def test_find_existing_keys_empty_input_skips_query(self):
        conn, cursor = make_conn()
        assert find_existing_keys(conn, 'public', 'users', ['id'], ['integer'], []) == set()
        cursor.execute.assert_not_called()

    def test_find_existing_keys_flattens_params(self):
        conn, cursor = make_conn()
        cursor.fetchall.return_value = [(1,), (3,)]

        found = find_existing_keys(conn, 'public', 'users', ['id'], ['integer'], [(1,), (2,), (3,)])

        assert found == {(1,), (3,)}
        assert cursor.execute.call_args[0][1] == [1, 2, 3]

    def test_count_rows(self):
        conn, cursor = make_conn()
        cursor.fetchone.return_value = (42,)
        assert count_rows(conn, 'public', 'users') == 42

    def test_count_rows_no_result(self):
        conn, cursor = make_conn()
        cursor.fetchone.return_value = None
        assert count_rows(conn, 'public', 'users') == 0


class TestUpsertRows:
    """Test upsert counting through xmax."""

    def test_counts_inserts_and_updates(self):
        cursor = MagicMock()
        cursor.fetchall.return_value = [(True,), (True,), (False,)]

        inserted, updated = upsert_rows(
            cursor, 'public', 'users', ['id', 'name'], ['id'], [(1, 'a'), (2, 'b'), (3, 'c')],
        )

        assert (inserted, updated) == (2, 1)
        assert cursor.execute.call_args[0][1] == [1, 'a', 2, 'b', 3, 'c']

    def test_empty_rows_skip_query(self):
        cursor = MagicMock()
        assert upsert_rows(cursor, 'public', 'users', ['id'], ['id'], []) == (0, 0)
        cursor.execute.assert_not_called()

    def test_missing_pk_column_rejected(self):
        with pytest.raises(ValueError, match='PK columns not in column list'):
            upsert_rows(MagicMock(), 'public', 'users', ['name'], ['id'], [('a',)])


class TestTableTransfer:
    """Test planning, reading and writing one table."""

    def test_source_session_is_read_only(self, connections, transfer):
        source = connections[0]
        source.set_session.assert_called_once_with(readonly=True, autocommit=True)

    def test_source_session_failure(self):
        source, _ = make_conn()
        source.set_session.side_effect = psycopg2.OperationalError('closed')

        with pytest.raises(DatabaseConnectionError):
            TableTransfer(source, MagicMock())

    def test_source_session_after_catalog_read(self):
        source, source_cursor = transactional_conn()
        with source.cursor() as cursor:
            cursor.execute('SELECT 1')

        TableTransfer(source, MagicMock())

        calls = [name for name, _, _ in source.method_calls]
        assert calls.index('rollback') < calls.index('set_session')
        source.set_session.assert_called_once_with(readonly=True, autocommit=True)

    def test_prepare_table(self, transfer):
        target = users_schema()
        source = users_schema(extra=(ColumnDefinition('source_only', 'text'),))

        plan = transfer.prepare_table(source, target)

        assert plan.columns == ('id', 'name', 'prefs', 'updated_at')
        assert plan.pk_columns == ('id',)
        assert plan.key_types == ('integer',)
        assert plan.json_columns == ('prefs',)
        assert plan.timestamp_column == 'updated_at'
        assert plan.avg_row_size_bytes == 512

    def test_prepare_table_without_primary_key(self, transfer):
        schema = TableSchema(name='logs', columns=(ColumnDefinition('msg', 'text'),))
        with pytest.raises(ValueError, match='no primary key'):
            transfer.prepare_table(schema, schema)

    def test_read_batch_returns_dicts_and_last_key(self, connections, transfer):
        _, source_cursor, _, _ = connections
        stamp = datetime(2024, 1, 1)
        source_cursor.fetchall.return_value = [
            (1, 'a', None, stamp),
            (2, 'b', {'x': 1}, stamp),
        ]
        plan = transfer.prepare_table(users_schema(), users_schema())

        batch = transfer.read_batch(plan, None, 2)

        assert batch.rows[1] == {'id': 2, 'name': 'b', 'prefs': {'x': 1}, 'updated_at': stamp}
        assert batch.last_key == [2]

    def test_read_batch_empty(self, connections, transfer):
        _, source_cursor, _, _ = connections
        source_cursor.fetchall.return_value = []
        plan = transfer.prepare_table(users_schema(), users_schema())

        batch = transfer.read_batch(plan, [10], 100)

        assert batch.rows == []
        assert batch.last_key is None
        assert source_cursor.execute.call_args[0][1] == [10]

    def test_read_batch_error(self, connections, transfer):
        _, source_cursor, _, _ = connections
        source_cursor.execute.side_effect = psycopg2.OperationalError('server closed the connection')
        plan = transfer.prepare_table(users_schema(), users_schema())

        with pytest.raises(DatabaseConnectionError):
            transfer.read_batch(plan, None, 10)

    def test_apply_batch_one_way_commits(self, connections, transfer):
        _, _, target, target_cursor = connections
        target_cursor.fetchall.return_value = [(True,), (False,)]
        plan = transfer.prepare_table(users_schema(), users_schema())
        batch = RowBatch(rows=[
            {'id': 1, 'name': 'a', 'prefs': {'k': 'v'}, 'updated_at': None},
            {'id': 2, 'name': 'b', 'prefs': None, 'updated_at': None},
        ])

        outcome = transfer.apply_batch(plan, batch)

        assert (outcome.inserted, outcome.updated) == (1, 1)
        target.commit.assert_called_once()
        params = target_cursor.execute.call_args[0][1]
        assert isinstance(params[2], Json)
        assert params[6] is None

    def test_apply_empty_batch_does_nothing(self, connections, transfer):
        _, _, target, target_cursor = connections
        plan = transfer.prepare_table(users_schema(), users_schema())

        outcome = transfer.apply_batch(plan, RowBatch(rows=[]))

        assert outcome.inserted == 0
        target_cursor.execute.assert_not_called()
        target.commit.assert_not_called()

    def test_apply_batch_failure_rolls_back(self, connections, transfer):
        _, _, target, target_cursor = connections
        target_cursor.execute.side_effect = psycopg2.IntegrityError('violates foreign key constraint')
        plan = transfer.prepare_table(users_schema(), users_schema())

        with pytest.raises(BatchWriteError) as exc_info:
            transfer.apply_batch(plan, RowBatch(rows=[{'id': 1, 'name': 'a', 'prefs': None, 'updated_at': None}]))

        assert exc_info.value.table_name == 'users'
        target.rollback.assert_called_once()
        target.commit.assert_not_called()

    def test_apply_batch_two_way_defers_manual_conflicts(self, connections, transfer):
        _, _, target, target_cursor = connections
        old, new = datetime(2024, 1, 1), datetime(2024, 6, 1)
        # First fetchall: locked target rows; second: upsert RETURNING
        target_cursor.fetchall.side_effect = [
            [(1, 'target edit', None, new), (2, 'same', None, old)],
            [(True,)],
        ]
        plan = transfer.prepare_table(users_schema(), users_schema())
        batch = RowBatch(rows=[
            {'id': 1, 'name': 'source edit', 'prefs': None, 'updated_at': old},
            {'id': 2, 'name': 'same', 'prefs': None, 'updated_at': old},
            {'id': 3, 'name': 'new row', 'prefs': None, 'updated_at': old},
        ])

        outcome = transfer.apply_batch(plan, batch, SyncDirection.TWO_WAY, ConflictStrategy.MANUAL)

        assert outcome.inserted == 1
        assert outcome.skipped == 1
        assert len(outcome.conflicts) == 1
        assert outcome.conflicts[0].row_key == [1]
        assert target_cursor.execute.call_count == 2
        assert target_cursor.execute.call_args[0][1] == [3, 'new row', None, old]
        target.commit.assert_called_once()
