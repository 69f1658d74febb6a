"""
Airflow Task Entry Points

Thin functions the DAGs call. Each builds its collaborators from settings
(Airflow connections for databases, a PostgresJobStore for job state) and
returns plain dicts so results can travel through XCom.
"""

from typing import Any, Dict, List, Optional
import logging

from pg_sync.config import SyncSettings
from pg_sync.connections import AirflowConnectionProvider, ConnectionProvider
from pg_sync.diff_engine import DiffEngine
from pg_sync.errors import SchemaIncompatibility, SyncError
from pg_sync.job_store import JobStore, PostgresJobStore
from pg_sync.migration_executor import MigrationExecutor
from pg_sync.migration_generator import MigrationGenerator
from pg_sync.models import JobStatus, Severity
from pg_sync.orchestrator import SyncOrchestrator
from pg_sync.schema_inspector import SchemaInspector
from pg_sync.statement_splitter import split_statements

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Optional[SyncSettings] = None,
    job_store: Optional[JobStore] = None,
    connection_provider: Optional[ConnectionProvider] = None,
) -> SyncOrchestrator:
    """
    Wire an orchestrator for use inside an Airflow task.

    Args:
        settings: Tunables (default: SyncSettings.from_env())
        job_store: Job persistence (default: PostgresJobStore on settings.job_store_conn_id)
        connection_provider: Connection lookup (default: Airflow connections)

    Returns:
        SyncOrchestrator
    """
    settings = settings or SyncSettings.from_env()
    if job_store is None:
        job_store = PostgresJobStore(settings.job_store_conn_id)
        job_store.ensure_tables_exist()

    return SyncOrchestrator(
        job_store=job_store,
        connection_provider=connection_provider or AirflowConnectionProvider(),
        settings=settings,
    )


def validate_sync_job(job_id: str, user_id: str, orchestrator: Optional[SyncOrchestrator] = None) -> Dict[str, Any]:
    """
    Dry-run a job and fail on critical schema issues.

    Returns:
        Diff summary dict

    Raises:
        SchemaIncompatibility: If validation is enabled and critical issues exist
    """
    orchestrator = orchestrator or build_orchestrator()
    diff = orchestrator.dry_run(job_id, user_id)
    summary = diff.summary()

    logger.info(
        f"Dry run for job {job_id}: {summary['total_inserts']:,} insert(s), "
        f"{summary['total_updates']:,} update(s) across {summary['tables']} table(s)"
    )
    for issue in diff.schema_issues:
        logger.info(f"  [{issue.severity.value}] {issue.message}")

    critical = diff.issues_by_severity(Severity.CRITICAL)
    if critical and orchestrator.settings.validate_before_start:
        raise SchemaIncompatibility(critical)

    return summary


def run_sync_job(job_id: str, user_id: str, orchestrator: Optional[SyncOrchestrator] = None) -> Dict[str, Any]:
    """
    Run a job to completion, pause or failure.

    A paused job is a successful outcome for the task; it resumes in a later
    DAG run.

    Raises:
        SyncError: If the job ends failed
    """
    orchestrator = orchestrator or build_orchestrator()
    job = orchestrator.start(job_id, user_id)

    result = {
        'job_id': job.id,
        'status': job.status.value,
        'progress': job.progress.to_dict(),
    }
    if job.status == JobStatus.FAILED:
        raise SyncError(f"Sync job {job.id} failed", public_message='Sync job failed')

    logger.info(f"Sync job {job.id} finished with status {job.status.value}")
    return result


def generate_migration_plan(
    source_conn_id: str,
    target_conn_id: str,
    user_id: str,
    tables: Optional[List[str]] = None,
    settings: Optional[SyncSettings] = None,
    connection_provider: Optional[ConnectionProvider] = None,
) -> Dict[str, Any]:
    """
    Compare schemas and generate remediation DDL for the target.

    Args:
        source_conn_id: Source connection
        target_conn_id: Target connection
        user_id: Requesting user
        tables: Tables to compare (default: every source table)
        settings: Tunables (default: SyncSettings.from_env())
        connection_provider: Connection lookup (default: Airflow connections)

    Returns:
        Dict with the plan (safe statements, manual review SQL, rollback SQL,
        risk level) and the diff summary
    """
    settings = settings or SyncSettings.from_env()
    provider = connection_provider or AirflowConnectionProvider()
    engine = DiffEngine(
        inspector=SchemaInspector(settings.schema_name, settings.exclude_tables),
        change_detection=settings.change_detection,
    )

    source_conn = target_conn = None
    try:
        source_conn = provider.get(source_conn_id, user_id).open_handle()
        target_conn = provider.get(target_conn_id, user_id).open_handle()
        diff = engine.calculate_schema_diff(source_conn, target_conn, tables or None)
    finally:
        if source_conn:
            source_conn.close()
        if target_conn:
            target_conn.close()

    plan = MigrationGenerator(settings.schema_name).generate(diff)
    statements = split_statements(plan.combined_sql)

    logger.info(
        f"Migration plan for {target_conn_id}: {len(statements)} safe statement(s), "
        f"{len(plan.manual_review_required)} requiring manual review, risk level {plan.risk_level}"
    )
    if plan.manual_review_required:
        logger.warning(f"Statements requiring manual review:\n{plan.manual_review_sql}")

    return {
        'target_conn_id': target_conn_id,
        'statements': statements,
        'combined_sql': plan.combined_sql,
        'manual_review_sql': plan.manual_review_sql,
        'rollback_sql': plan.rollback_sql,
        'risk_level': plan.risk_level,
        'diff_summary': diff.summary(),
    }


def apply_migration_plan(
    plan: Dict[str, Any],
    user_id: str,
    confirmation_token: Optional[str] = None,
    execute: bool = False,
    connection_provider: Optional[ConnectionProvider] = None,
) -> Dict[str, Any]:
    """
    Execute the safe statements of a plan produced by generate_migration_plan.

    With ``execute`` false nothing runs; the statements are only logged.

    Raises:
        ProductionConfirmationRequired: For an unconfirmed production target
        StatementExecutionError: If any statement failed (after all were attempted)
    """
    statements = plan.get('statements', [])
    target_conn_id = plan['target_conn_id']

    if not execute:
        logger.info(f"Dry run: {len(statements)} statement(s) would be executed on {target_conn_id}")
        for statement in statements:
            logger.info(statement)
        return {'executed': False, 'total': len(statements)}

    executor = MigrationExecutor(connection_provider or AirflowConnectionProvider())
    report = executor.execute(target_conn_id, user_id, statements, confirmation_token)
    for result in report.results:
        if not result.success:
            logger.error(f"Statement {result.index + 1} failed: {result.error}")

    report.raise_for_failures()
    return {'executed': True, **report.to_dict()}
