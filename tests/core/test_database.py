"""
Tests for pooled PostgreSQL connection management.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from src.core.database import PostgresConnection, as_json
from src.core.models import DatabaseConfig


@pytest.fixture
def db_config():
    return DatabaseConfig(
        postgres_host="localhost",
        postgres_port=5432,
        postgres_database="test_db",
        postgres_user="test_user",
        postgres_password="test_password",
        max_connections=3,
    )


@pytest.fixture
def mock_pool():
    with patch("src.core.database.pool.ThreadedConnectionPool") as pool_class:
        connection = MagicMock()
        pool_class.return_value.getconn.return_value = connection
        yield pool_class, connection


class TestPostgresConnection:
    """Tests for PostgresConnection base class."""

    def test_initialization_success(self, db_config, mock_pool):
        """The pool is opened with the configured bounds and credentials."""
        pool_class, _ = mock_pool

        conn = PostgresConnection(db_config)

        pool_class.assert_called_once_with(
            1,
            3,
            host="localhost",
            port=5432,
            database="test_db",
            user="test_user",
            password="test_password",
            connect_timeout=10,
        )
        assert conn.pool is pool_class.return_value

    def test_initialization_failure(self, db_config):
        """Connection errors propagate to the caller."""
        with patch(
            "src.core.database.pool.ThreadedConnectionPool", side_effect=Exception("Connection failed")
        ):
            with pytest.raises(Exception, match="Connection failed"):
                PostgresConnection(db_config)

    def test_get_cursor_commits_and_returns_connection(self, db_config, mock_pool):
        """A successful block commits and hands the connection back to the pool."""
        pool_class, connection = mock_pool
        conn = PostgresConnection(db_config)

        with conn.get_cursor() as cursor:
            assert cursor is connection.cursor.return_value

        connection.commit.assert_called_once()
        pool_class.return_value.putconn.assert_called_once_with(connection)

    def test_get_cursor_rollback_on_error(self, db_config, mock_pool):
        """A failing block rolls back instead of committing."""
        pool_class, connection = mock_pool
        connection.cursor.return_value.execute.side_effect = Exception("Query failed")
        conn = PostgresConnection(db_config)

        with pytest.raises(Exception, match="Query failed"):  # noqa: SIM117
            with conn.get_cursor() as cursor:
                cursor.execute("BAD SQL")

        connection.rollback.assert_called_once()
        connection.commit.assert_not_called()
        pool_class.return_value.putconn.assert_called_once_with(connection)

    def test_execute_query_success(self, db_config, mock_pool):
        """execute_query returns True when the statement runs."""
        _, connection = mock_pool
        conn = PostgresConnection(db_config)

        assert conn.execute_query("UPDATE t SET x = %(x)s", {"x": 1}) is True
        connection.cursor.return_value.execute.assert_called_once_with(
            "UPDATE t SET x = %(x)s", {"x": 1}
        )

    def test_execute_query_failure(self, db_config, mock_pool):
        """execute_query swallows the error into False."""
        _, connection = mock_pool
        connection.cursor.return_value.execute.side_effect = Exception("boom")
        conn = PostgresConnection(db_config)

        assert conn.execute_query("SELECT 1") is False

    def test_fetch_all_returns_dicts(self, db_config, mock_pool):
        """Rows come back as plain dictionaries."""
        _, connection = mock_pool
        connection.cursor.return_value.fetchall.return_value = [{"id": 1}, {"id": 2}]
        conn = PostgresConnection(db_config)

        assert conn.fetch_all("SELECT id FROM t") == [{"id": 1}, {"id": 2}]

    def test_fetch_one_error_returns_none(self, db_config, mock_pool):
        """A failed lookup yields None."""
        _, connection = mock_pool
        connection.cursor.return_value.execute.side_effect = Exception("boom")
        conn = PostgresConnection(db_config)

        assert conn.fetch_one("SELECT 1") is None

    def test_ensure_tables_runs_every_statement(self, db_config, mock_pool):
        """Every DDL statement of SCHEMA is executed."""
        _, connection = mock_pool

        class TwoTables(PostgresConnection):
            SCHEMA = ("CREATE TABLE a ()", "CREATE TABLE b ()")

        assert TwoTables(db_config).ensure_tables() is True
        executed = [c.args[0] for c in connection.cursor.return_value.execute.call_args_list]
        assert executed == ["CREATE TABLE a ()", "CREATE TABLE b ()"]

    def test_check_health(self, db_config, mock_pool):
        """Liveness query must return 1."""
        _, connection = mock_pool
        connection.cursor.return_value.fetchone.return_value = (1,)
        conn = PostgresConnection(db_config)

        assert conn.check_health() is True

    def test_close(self, db_config, mock_pool):
        """Closing releases every pooled connection once."""
        pool_class, _ = mock_pool
        conn = PostgresConnection(db_config)

        conn.close()
        conn.close()

        pool_class.return_value.closeall.assert_called_once()
        assert conn.pool is None


def test_as_json_serializes_datetimes():
    """Datetimes inside JSON payloads are rendered as strings."""
    from datetime import UTC, datetime

    wrapped = as_json({"at": datetime(2024, 1, 1, tzinfo=UTC)})
    assert "2024-01-01 00:00:00+00:00" in wrapped.dumps(wrapped.adapted)


def test_as_json_writes_non_finite_floats_as_null():
    """Infinite and NaN scores become null so PostgreSQL JSONB accepts the payload."""

    def reject(token):
        raise ValueError(f"non-standard JSON constant {token}")

    wrapped = as_json({"score": float("inf"), "history": [1.5, float("nan")], "pair": (float("-inf"), 2)})
    payload = json.loads(wrapped.dumps(wrapped.adapted), parse_constant=reject)

    assert payload == {"score": None, "history": [1.5, None], "pair": [None, 2]}
