"""
Error Taxonomy

Every error raised across the sync pipeline derives from SyncError. Each
carries a ``public_message`` that is safe to show in job logs (no hosts,
credentials or raw driver output); the full detail stays in str(error)
and goes to the Python log only.
"""

import re
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from pg_sync.models import ValidationIssue


_SENSITIVE_PATTERNS = [
    (re.compile(r'postgres(?:ql)?://[^\s]+', re.IGNORECASE), 'postgresql://***'),
    (re.compile(r'password\s*=\s*\S+', re.IGNORECASE), 'password=***'),
    (re.compile(r'host\s*=\s*\S+', re.IGNORECASE), 'host=***'),
    (re.compile(r'user\s*=\s*\S+', re.IGNORECASE), 'user=***'),
    (re.compile(r'"[^"]*\.(?:supabase\.co|rds\.amazonaws\.com)"'), '"***"'),
    (re.compile(r'\b\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?\b'), '***'),
]


def sanitize_error_message(message: str, max_length: int = 500) -> str:
    """
    Strip connection details from a driver error message.

    Args:
        message: Raw error message
        max_length: Truncate the result to this many characters

    Returns:
        Message safe to persist in a user-visible job log
    """
    result = message or ''
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    result = result.strip().splitlines()[0] if result.strip() else 'Unknown error'
    if len(result) > max_length:
        result = result[:max_length - 3] + '...'
    return result


class SyncError(Exception):
    """Base class for sync pipeline errors."""

    default_public_message = 'Sync operation failed'

    def __init__(self, message: str, public_message: Optional[str] = None):
        super().__init__(message)
        self.public_message = public_message or sanitize_error_message(message) or self.default_public_message


class DatabaseConnectionError(SyncError, ConnectionError):
    """A database could not be reached or a catalog read failed. Never retried."""

    default_public_message = 'Could not connect to database'


class SchemaIncompatibility(SyncError):
    """Critical schema issues block the transfer."""

    def __init__(self, issues: List["ValidationIssue"]):
        self.issues = list(issues)
        tables = sorted({i.table_name for i in self.issues})
        message = (
            f"{len(self.issues)} critical schema issue(s) in table(s): {', '.join(tables)}"
        )
        super().__init__(message, public_message=message)


class BatchWriteError(SyncError):
    """A batch write failed and was rolled back. Retryable."""

    def __init__(self, table_name: str, message: str):
        self.table_name = table_name
        super().__init__(
            f"Batch write to {table_name} failed: {message}",
            public_message=f"Batch write to {table_name} failed: {sanitize_error_message(message)}",
        )


class StatementExecutionError(SyncError):
    """A single migration statement failed."""

    def __init__(self, statement: str, message: str):
        self.statement = statement
        super().__init__(message)


class JobNotFound(SyncError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Sync job {job_id} not found", public_message='Sync job not found')


class InvalidJobTransition(SyncError):
    """Requested lifecycle operation is not valid from the job's current status."""

    def __init__(self, job_id: str, current_status: str, operation: str):
        self.job_id = job_id
        self.current_status = current_status
        self.operation = operation
        message = f"Cannot {operation} job {job_id} while it is {current_status}"
        super().__init__(message, public_message=f"Cannot {operation} a {current_status} job")


class ConcurrencyLimitExceeded(SyncError):
    def __init__(self, user_id: str, limit: int):
        self.user_id = user_id
        self.limit = limit
        message = f"Maximum of {limit} concurrent sync jobs reached"
        super().__init__(f"{message} for user {user_id}", public_message=message)


class ProductionConfirmationRequired(SyncError):
    """Writes to a production target need the target's display name as confirmation."""

    def __init__(self, connection_id: str, display_name: str):
        self.connection_id = connection_id
        self.display_name = display_name
        message = (
            f"Target '{display_name}' is a production database; "
            f"pass its name as confirmation to continue"
        )
        super().__init__(message, public_message=message)
