"""
Tests for Migration Executor Module

These tests validate sequential execution, per-statement results,
continuation after a failure and the production confirmation gate.
"""

import psycopg2
import pytest
from unittest.mock import MagicMock

from pg_sync.connections import ConnectionInfo, ConnectionProvider
from pg_sync.errors import ProductionConfirmationRequired, StatementExecutionError
from pg_sync.migration_executor import ExecutionReport, MigrationExecutor, StatementResult


class StaticProvider(ConnectionProvider):
    def __init__(self, conn, environment='development'):
        self.conn = conn
        self.environment = environment

    def get(self, connection_id, user_id):
        return ConnectionInfo(
            connection_id=connection_id,
            display_name='Analytics',
            environment=self.environment,
            opener=lambda: self.conn,
        )


@pytest.fixture
def conn():
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.rowcount = -1
    return conn


def cursor_of(conn):
    return conn.cursor.return_value.__enter__.return_value


class TestMigrationExecutor:
    """Test statement execution."""

    def test_splits_script_and_runs_in_order(self, conn):
        executor = MigrationExecutor(StaticProvider(conn))
        script = (
            "-- Schema migration\n"
            "ALTER TABLE users ADD COLUMN IF NOT EXISTS last_login timestamp;\n"
            "DO $$ BEGIN PERFORM 1; END $$;\n"
        )

        report = executor.execute('target', 'user-1', script)

        assert conn.autocommit is True
        executed = [c[0][0] for c in cursor_of(conn).execute.call_args_list]
        assert executed == [
            "ALTER TABLE users ADD COLUMN IF NOT EXISTS last_login timestamp",
            "DO $$ BEGIN PERFORM 1; END $$",
        ]
        assert report.success
        assert report.succeeded == 2
        assert report.results[0].rows_affected == 0
        conn.close.assert_called_once()

    def test_continues_after_failed_statement(self, conn):
        cursor_of(conn).execute.side_effect = [
            None,
            psycopg2.ProgrammingError('relation "ghost" does not exist'),
            None,
        ]
        executor = MigrationExecutor(StaticProvider(conn))

        report = executor.execute('target', 'user-1', ['SELECT 1', 'ALTER TABLE ghost ADD c int', 'SELECT 3'])

        assert [r.success for r in report.results] == [True, False, True]
        assert report.failed == 1
        assert report.results[1].error == 'relation "ghost" does not exist'
        assert report.results[1].index == 1
        conn.close.assert_called_once()

    def test_error_messages_are_sanitized(self, conn):
        cursor_of(conn).execute.side_effect = psycopg2.OperationalError(
            'could not connect to server at host=10.0.0.5 password=hunter2'
        )
        executor = MigrationExecutor(StaticProvider(conn))

        report = executor.execute('target', 'user-1', ['SELECT 1'])

        assert 'hunter2' not in report.results[0].error
        assert '10.0.0.5' not in report.results[0].error

    def test_empty_script_opens_nothing(self):
        opener = MagicMock()
        provider = MagicMock()
        provider.get.return_value = ConnectionInfo('target', 'Analytics', 'development', opener)

        report = MigrationExecutor(provider).execute('target', 'user-1', '-- nothing to do\n')

        assert report.results == []
        assert report.success
        opener.assert_not_called()

    def test_production_requires_confirmation(self, conn):
        executor = MigrationExecutor(StaticProvider(conn, environment='production'))

        with pytest.raises(ProductionConfirmationRequired):
            executor.execute('target', 'user-1', ['SELECT 1'])

        cursor_of(conn).execute.assert_not_called()

    def test_production_with_confirmation(self, conn):
        executor = MigrationExecutor(StaticProvider(conn, environment='production'))

        report = executor.execute('target', 'user-1', ['SELECT 1'], confirmation_token='Analytics')

        assert report.success


class TestExecutionReport:
    """Test report helpers."""

    def test_raise_for_failures(self):
        report = ExecutionReport('target', [
            StatementResult(0, 'SELECT 1', True),
            StatementResult(1, 'BAD', False, error='syntax error'),
        ])

        with pytest.raises(StatementExecutionError) as exc_info:
            report.raise_for_failures()

        assert exc_info.value.statement == 'BAD'
        assert 'first failure at statement 2: syntax error' in str(exc_info.value)

    def test_no_failures_does_not_raise(self):
        ExecutionReport('target', [StatementResult(0, 'SELECT 1', True)]).raise_for_failures()

    def test_to_dict(self):
        report = ExecutionReport('target', [StatementResult(0, 'SELECT 1', True, rows_affected=2)])
        result = report.to_dict()
        assert result['total'] == 1
        assert result['succeeded'] == 1
        assert result['results'][0]['rows_affected'] == 2
