"""
PostgreSQL Schema Migration DAG

Brings a target schema in line with a source schema before syncing data.

1. generate_migration_plan: compares schemas and generates idempotent DDL;
   breaking changes (drops, narrowing type changes, new NOT NULL
   constraints) are logged for manual review and never executed
2. apply_safe_statements: runs the safe statements one at a time; with
   execute=false the statements are only logged

Production targets require confirmation_token to equal the target
connection's display name.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict
import logging

from pg_sync import runner

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 1,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="postgres_source",
            type="string",
            description="Source PostgreSQL connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="Target PostgreSQL connection ID"
        ),
        "tables": Param(
            default=[],
            type="array",
            description="Tables to compare (if empty, all source tables)"
        ),
        "user_id": Param(
            default="",
            type="string",
            description="Requesting user (must own any owner-scoped connection)"
        ),
        "confirmation_token": Param(
            default="",
            type="string",
            description="Target display name; required to change a production database"
        ),
        "execute": Param(
            default=False,
            type="boolean",
            description="Execute the safe statements (otherwise only log them)"
        ),
    },
    tags=["migration", "schema", "postgres"],
)
def pg_schema_migration():
    """
    Generate and apply schema remediation DDL.
    """

    @task
    def generate_migration_plan(**context) -> Dict[str, Any]:
        """
        Compare schemas and build the migration plan.

        Returns:
            Plan dict (statements, manual review SQL, rollback SQL, risk level)
        """
        params = context["params"]
        plan = runner.generate_migration_plan(
            source_conn_id=params["source_conn_id"],
            target_conn_id=params["target_conn_id"],
            user_id=params["user_id"],
            tables=params["tables"] or None,
        )
        logger.info(f"Rollback script:\n{plan['rollback_sql']}")
        return plan

    @task
    def apply_safe_statements(plan: Dict[str, Any], **context) -> Dict[str, Any]:
        """
        Execute the plan's safe statements against the target.

        Returns:
            Execution report
        """
        params = context["params"]
        return runner.apply_migration_plan(
            plan,
            user_id=params["user_id"],
            confirmation_token=params["confirmation_token"] or None,
            execute=params["execute"],
        )

    apply_safe_statements(generate_migration_plan())


# Instantiate the DAG
pg_schema_migration()
