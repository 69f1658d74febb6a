"""
PostgreSQL Sync Job DAG

Runs one sync job created through SyncOrchestrator.create_job. Each DAG run
executes a single job; concurrent runs execute different jobs.

1. validate_schema: dry run against both databases; fails on critical
   schema issues (unless SYNC_VALIDATE_BEFORE_START=false)
2. run_sync: transfers rows batch by batch, checkpointing after each batch

A job paused mid-run ends the DAG run successfully; trigger a new run with
the same job_id to resume it. A failed job fails run_sync. Retrying a failed
job resumes from its last checkpoint.

Job state lives in the _pg_sync_jobs tables of the SYNC_JOB_STORE_CONN_ID
connection.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict
import logging
import os

from pg_sync.runner import build_orchestrator, run_sync_job, validate_sync_job

MAX_ACTIVE_RUNS = int(os.environ.get('SYNC_MAX_ACTIVE_RUNS', '8'))

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Triggered per job via API
    catchup=False,
    max_active_runs=MAX_ACTIVE_RUNS,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        # No automatic retries: a user-stopped job must stay stopped
        "retries": 0,
        "execution_timeout": timedelta(hours=12),
    },
    params={
        "job_id": Param(
            default="",
            type="string",
            description="Sync job ID to run"
        ),
        "user_id": Param(
            default="",
            type="string",
            description="Owner of the sync job"
        ),
    },
    tags=["sync", "postgres", "etl"],
)
def pg_sync_job():
    """
    Validate and run one PostgreSQL sync job.
    """

    @task
    def validate_schema(**context) -> Dict[str, Any]:
        """
        Dry-run the job and report inserts, updates and schema issues.

        Returns:
            Diff summary
        """
        params = context["params"]
        if not params["job_id"] or not params["user_id"]:
            raise ValueError("job_id and user_id params are required")

        return validate_sync_job(params["job_id"], params["user_id"], build_orchestrator())

    @task
    def run_sync(**context) -> Dict[str, Any]:
        """
        Run the job until it completes, pauses or fails.

        Returns:
            Final job status and progress
        """
        params = context["params"]
        result = run_sync_job(params["job_id"], params["user_id"], build_orchestrator())

        progress = result["progress"]
        logger.info(
            f"Job {result['job_id']} {result['status']}: "
            f"{progress['completed_tables']}/{progress['total_tables']} tables, "
            f"{progress['processed_rows']:,} rows processed"
        )
        return result

    validate_schema() >> run_sync()


# Instantiate the DAG
pg_sync_job()
