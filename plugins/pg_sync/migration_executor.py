"""
Migration Executor Module

Runs generated migration SQL against a target database one statement at a
time. Each statement commits on its own (autocommit), so a failing statement
does not undo the ones before it; execution carries on with the rest and the
caller gets a per-statement result list.

The production confirmation gate is checked before anything runs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
import logging
import time

import psycopg2

from pg_sync.connections import ConnectionProvider, require_confirmation
from pg_sync.errors import StatementExecutionError, sanitize_error_message
from pg_sync.statement_splitter import split_statements
from pg_sync.utils import truncate_string

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementResult:
    index: int
    statement: str
    success: bool
    rows_affected: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'statement': self.statement,
            'success': self.success,
            'rows_affected': self.rows_affected,
            'error': self.error,
            'duration_ms': round(self.duration_ms, 1),
        }


@dataclass
class ExecutionReport:
    connection_id: str
    results: List[StatementResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def raise_for_failures(self) -> None:
        """
        Raise for the first failed statement, if any.

        Raises:
            StatementExecutionError: If at least one statement failed
        """
        for result in self.results:
            if not result.success:
                raise StatementExecutionError(
                    result.statement,
                    f"{self.failed} of {len(self.results)} statement(s) failed; "
                    f"first failure at statement {result.index + 1}: {result.error}",
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'total': len(self.results),
            'succeeded': self.succeeded,
            'failed': self.failed,
            'results': [r.to_dict() for r in self.results],
        }


class MigrationExecutor:
    """Execute migration statements sequentially against one connection."""

    def __init__(self, connection_provider: ConnectionProvider):
        self.connection_provider = connection_provider

    def execute(
        self,
        connection_id: str,
        user_id: str,
        sql_or_statements: Union[str, Sequence[str]],
        confirmation_token: Optional[str] = None,
    ) -> ExecutionReport:
        """
        Run a migration script.

        Args:
            connection_id: Target connection
            user_id: Requesting user
            sql_or_statements: A full script (split here) or pre-split statements
            confirmation_token: Target display name, required for production targets

        Returns:
            ExecutionReport with one StatementResult per statement

        Raises:
            ProductionConfirmationRequired: If the target is production and the
                token does not match (nothing is executed)
            DatabaseConnectionError: If the target cannot be reached
        """
        info = self.connection_provider.get(connection_id, user_id)
        require_confirmation(info, confirmation_token)

        if isinstance(sql_or_statements, str):
            statements = split_statements(sql_or_statements)
        else:
            statements = [s for s in sql_or_statements if s and s.strip()]

        report = ExecutionReport(connection_id=connection_id)
        if not statements:
            logger.info(f"No statements to execute on {connection_id}")
            return report

        logger.info(f"Executing {len(statements)} migration statement(s) on {connection_id}")

        conn = None
        try:
            conn = info.open_handle()
            conn.autocommit = True

            for index, statement in enumerate(statements):
                report.results.append(self._execute_one(conn, index, statement))
        finally:
            if conn:
                conn.close()

        logger.info(
            f"Migration on {connection_id} finished: {report.succeeded} succeeded, {report.failed} failed"
        )
        return report

    @staticmethod
    def _execute_one(conn, index: int, statement: str) -> StatementResult:
        start = time.perf_counter()
        try:
            with conn.cursor() as cursor:
                cursor.execute(statement)
                rows_affected = max(cursor.rowcount, 0)
        except psycopg2.Error as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(f"Statement {index + 1} failed: {e}\n{truncate_string(statement, 200)}")
            return StatementResult(
                index=index,
                statement=statement,
                success=False,
                error=sanitize_error_message(str(e)),
                duration_ms=duration_ms,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Statement {index + 1} ok in {duration_ms:.1f}ms: {truncate_string(statement, 80)}")
        return StatementResult(
            index=index,
            statement=statement,
            success=True,
            rows_affected=rows_affected,
            duration_ms=duration_ms,
        )
