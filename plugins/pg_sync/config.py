"""
Sync Configuration

Settings are read from environment variables. A ``.env`` file in the working
directory (or the path in ``PG_SYNC_ENV_FILE``) is loaded first so local runs
and Airflow workers can share one configuration; variables already present in
the environment win over the file.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

VALID_CHANGE_DETECTION = ('keys', 'hash', 'updated_at')


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None or val == '':
        return default
    return val.lower() in ('true', '1', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {val!r}")
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        logger.warning(f"Ignoring invalid number for {name}: {val!r}")
        return default


def _env_list(name: str) -> List[str]:
    val = os.environ.get(name, '')
    return [item.strip() for item in val.split(',') if item.strip()]


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for schema inspection, batch sizing and job control."""

    schema_name: str = 'public'
    min_batch_size: int = 50
    max_batch_size: int = 5000
    initial_batch_size: int = 100
    target_batch_time_ms: int = 2000
    max_memory_mb: int = 256
    max_concurrent_jobs: int = 3
    max_batch_retries: int = 3
    retry_delay_seconds: float = 1.0
    validate_before_start: bool = True
    change_detection: str = 'keys'
    exclude_tables: List[str] = field(default_factory=list)
    job_store_conn_id: str = 'pg_sync_metadata'

    def __post_init__(self):
        if self.min_batch_size < 1:
            raise ValueError("min_batch_size must be at least 1")
        if self.max_batch_size < self.min_batch_size:
            raise ValueError("max_batch_size must be >= min_batch_size")
        if self.change_detection not in VALID_CHANGE_DETECTION:
            raise ValueError(
                f"change_detection must be one of {', '.join(VALID_CHANGE_DETECTION)}, "
                f"got {self.change_detection!r}"
            )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "SyncSettings":
        """
        Build settings from the environment.

        Args:
            env_file: Optional explicit .env path (defaults to PG_SYNC_ENV_FILE or ./.env)

        Returns:
            SyncSettings with environment overrides applied
        """
        load_dotenv(env_file or os.environ.get('PG_SYNC_ENV_FILE') or None, override=False)

        return cls(
            schema_name=os.environ.get('SYNC_SCHEMA', 'public'),
            min_batch_size=_env_int('SYNC_MIN_BATCH_SIZE', 50),
            max_batch_size=_env_int('SYNC_MAX_BATCH_SIZE', 5000),
            initial_batch_size=_env_int('SYNC_INITIAL_BATCH_SIZE', 100),
            target_batch_time_ms=_env_int('SYNC_TARGET_BATCH_TIME_MS', 2000),
            max_memory_mb=_env_int('SYNC_MAX_MEMORY_MB', 256),
            max_concurrent_jobs=_env_int('SYNC_MAX_CONCURRENT_JOBS', 3),
            max_batch_retries=_env_int('SYNC_MAX_BATCH_RETRIES', 3),
            retry_delay_seconds=_env_float('SYNC_RETRY_DELAY_SECONDS', 1.0),
            validate_before_start=_env_bool('SYNC_VALIDATE_BEFORE_START', True),
            change_detection=os.environ.get('SYNC_CHANGE_DETECTION', 'keys').lower(),
            exclude_tables=_env_list('SYNC_EXCLUDE_TABLES'),
            job_store_conn_id=os.environ.get('SYNC_JOB_STORE_CONN_ID', 'pg_sync_metadata'),
        )

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "SyncSettings":
        """Apply non-empty DAG params on top of these settings."""
        if not overrides:
            return self
        known = {
            k: v for k, v in overrides.items()
            if k in self.__dataclass_fields__ and v is not None and v != ''
        }
        return replace(self, **known)
