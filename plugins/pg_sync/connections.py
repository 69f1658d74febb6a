"""
Database Connection Provider Module

Resolves a connection id into an openable PostgreSQL handle plus the
metadata the safety checks need (display name, environment).

Connections live in Airflow's connection store, which encrypts credentials
at rest. Sync-specific metadata is kept in the connection's ``extra`` JSON:

    {
        "display_name": "Production (EU)",
        "environment": "production",
        "owner": "user-123"
    }

``owner`` scopes a connection to one user; connections without an owner are
shared.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional
import logging

import psycopg2
from airflow.exceptions import AirflowNotFoundException
from airflow.hooks.base import BaseHook
from airflow.providers.postgres.hooks.postgres import PostgresHook

from pg_sync.errors import DatabaseConnectionError, ProductionConfirmationRequired

logger = logging.getLogger(__name__)

PRODUCTION_ENVIRONMENTS = ('production', 'prod')


@dataclass(frozen=True)
class ConnectionInfo:
    connection_id: str
    display_name: str
    environment: str
    opener: Callable[[], Any]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in PRODUCTION_ENVIRONMENTS

    def open_handle(self):
        """Open a new psycopg2 connection; the caller closes it."""
        return self.opener()


class ConnectionProvider:
    """Interface: resolve a connection id for a user."""

    def get(self, connection_id: str, user_id: str) -> ConnectionInfo:
        raise NotImplementedError


def require_confirmation(info: ConnectionInfo, confirmation_token: Optional[str]) -> None:
    """
    Enforce the production write gate.

    Raises:
        ProductionConfirmationRequired: If the connection is production and the
            token does not equal its display name
    """
    if info.is_production and confirmation_token != info.display_name:
        logger.warning(f"Blocked write to production connection {info.connection_id} without confirmation")
        raise ProductionConfirmationRequired(info.connection_id, info.display_name)


class AirflowConnectionProvider(ConnectionProvider):
    """Resolve connections from Airflow's connection store via PostgresHook."""

    def get(self, connection_id: str, user_id: str) -> ConnectionInfo:
        """
        Look up a connection.

        Args:
            connection_id: Airflow connection ID
            user_id: Requesting user (must match the connection's owner, if set)

        Returns:
            ConnectionInfo

        Raises:
            DatabaseConnectionError: If the connection does not exist or belongs to another user
        """
        try:
            conn = BaseHook.get_connection(connection_id)
        except AirflowNotFoundException as e:
            raise DatabaseConnectionError(
                f"Connection {connection_id} not found", public_message='Connection not found'
            ) from e

        extra = conn.extra_dejson or {}
        owner = extra.get('owner')
        if owner and owner != user_id:
            logger.warning(f"User {user_id} requested connection {connection_id} owned by another user")
            raise DatabaseConnectionError(
                f"Connection {connection_id} is not owned by {user_id}", public_message='Connection not found'
            )

        display_name = extra.get('display_name') or conn.description or connection_id
        environment = extra.get('environment', 'development')

        def opener():
            try:
                return PostgresHook(postgres_conn_id=connection_id).get_conn()
            except psycopg2.Error as e:
                logger.error(f"Could not connect to {connection_id}: {e}")
                raise DatabaseConnectionError(f"Could not connect to {connection_id}: {e}") from e

        return ConnectionInfo(
            connection_id=connection_id,
            display_name=display_name,
            environment=environment,
            opener=opener,
        )
