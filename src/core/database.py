"""
Pooled PostgreSQL access shared by every component database.

Component databases subclass PostgresConnection, declare their DDL in
``SCHEMA`` and keep their SQL next to the component that owns it.
"""

import json
import math
from contextlib import contextmanager
from typing import Any

import psycopg2.extras
import structlog
from psycopg2 import pool

from .models import DatabaseConfig

logger = structlog.get_logger(__name__)


class PostgresConnection:
    """Base class for PostgreSQL access through a thread-safe connection pool.

    Services call these synchronous methods through ``asyncio.to_thread``,
    so each call borrows its own connection from the pool.
    """

    SCHEMA: tuple[str, ...] = ()

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool = None
        self._connect()

    def _connect(self):
        """Open the connection pool"""
        try:
            self.pool = pool.ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                host=self.config.postgres_host,
                port=self.config.postgres_port,
                database=self.config.postgres_database,
                user=self.config.postgres_user,
                password=self.config.postgres_password,
                connect_timeout=10,
            )
            logger.info(
                "PostgreSQL pool established",
                component=self.__class__.__name__,
                host=self.config.postgres_host,
                database=self.config.postgres_database,
                max_connections=self.config.max_connections,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise

    @contextmanager
    def get_cursor(self, dict_rows: bool = False):
        """Borrow a connection and yield a cursor; commit on success, roll back on error"""
        connection = self.pool.getconn()
        if dict_rows:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        else:
            cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
        except Exception as e:
            connection.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            cursor.close()
            self.pool.putconn(connection)

    def execute_query(self, query: str, params: dict[str, Any] | None = None) -> bool:
        """Execute a single statement"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params or {})
            return True
        except Exception as e:
            logger.error("Query execution failed", error=str(e), query=query)
            return False

    def fetch_all(self, query: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query and return rows as dictionaries (empty on error)"""
        try:
            with self.get_cursor(dict_rows=True) as cursor:
                cursor.execute(query, params or {})
                return [dict(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error("Query failed", error=str(e), query=query)
            return []

    def fetch_one(self, query: str, params: dict[str, Any] | None = None) -> dict | None:
        """Run a query and return the first row as a dictionary"""
        try:
            with self.get_cursor(dict_rows=True) as cursor:
                cursor.execute(query, params or {})
                row = cursor.fetchone()
                return dict(row) if row else None
        except Exception as e:
            logger.error("Query failed", error=str(e), query=query)
            return None

    def ensure_tables(self) -> bool:
        """Create this component's tables and indexes if missing"""
        try:
            with self.get_cursor() as cursor:
                for statement in self.SCHEMA:
                    cursor.execute(statement)
            logger.info("Schema ensured", component=self.__class__.__name__)
            return True
        except Exception as e:
            logger.error(
                "Failed to ensure schema", component=self.__class__.__name__, error=str(e)
            )
            return False

    def check_health(self) -> bool:
        """Check if the database answers a liveness query"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        """Close every pooled connection"""
        if self.pool:
            self.pool.closeall()
            self.pool = None
            logger.info("PostgreSQL pool closed", component=self.__class__.__name__)


def _finite(value: Any) -> Any:
    """Replace NaN and infinities with None; JSONB has no token for them"""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _finite(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_finite(item) for item in value]
    return value


def _dumps(value: Any) -> str:
    return json.dumps(_finite(value), default=str, allow_nan=False)


def as_json(value: Any) -> psycopg2.extras.Json:
    """Wrap a Python value for a JSONB parameter; datetimes and other objects become strings"""
    return psycopg2.extras.Json(value, dumps=_dumps)
