"""
PostgreSQL operations for health checks and their results.
"""

from datetime import datetime

import structlog

from src.core.database import PostgresConnection, as_json

from .models import CheckStats, HealthCheckDefinition, HealthCheckResult

logger = structlog.get_logger(__name__)

_CHECK_COLUMNS = """
    id, name, type, target, interval, timeout, expected_status, method, headers, body,
    script, enabled, alert_threshold, alert_severity, workspace_id
"""

_RESULT_COLUMNS = """
    id, health_check_id, timestamp, status, response_time, status_code, response_body,
    error_message
"""


class HealthCheckDatabase(PostgresConnection):
    """Database operations for the health check scheduler"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS health_checks (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            target TEXT NOT NULL DEFAULT '',
            interval INTEGER NOT NULL DEFAULT 60,
            timeout DOUBLE PRECISION NOT NULL DEFAULT 5,
            expected_status TEXT,
            method TEXT NOT NULL DEFAULT 'GET',
            headers JSONB NOT NULL DEFAULT '{}'::jsonb,
            body TEXT,
            script TEXT,
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            alert_threshold INTEGER NOT NULL DEFAULT 3,
            alert_severity TEXT NOT NULL DEFAULT 'high',
            workspace_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS health_check_results (
            id BIGSERIAL PRIMARY KEY,
            health_check_id INTEGER NOT NULL REFERENCES health_checks (id) ON DELETE CASCADE,
            timestamp TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL,
            response_time DOUBLE PRECISION,
            status_code INTEGER,
            response_body TEXT,
            error_message TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_health_check_results_check_ts
            ON health_check_results (health_check_id, timestamp DESC)
        """,
    )

    @staticmethod
    def _params(check: HealthCheckDefinition) -> dict:
        params = check.to_db_dict()
        params["headers"] = as_json(params["headers"])
        return params

    def insert_check(self, check: HealthCheckDefinition) -> int | None:
        query = """
            INSERT INTO health_checks (
                name, type, target, interval, timeout, expected_status, method, headers,
                body, script, enabled, alert_threshold, alert_severity, workspace_id
            ) VALUES (
                %(name)s, %(type)s, %(target)s, %(interval)s, %(timeout)s, %(expected_status)s,
                %(method)s, %(headers)s, %(body)s, %(script)s, %(enabled)s,
                %(alert_threshold)s, %(alert_severity)s, %(workspace_id)s
            )
            RETURNING id
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, self._params(check))
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert health check", name=check.name, error=str(e))
            return None

    def update_check(self, check: HealthCheckDefinition) -> bool:
        query = """
            UPDATE health_checks SET
                name = %(name)s, type = %(type)s, target = %(target)s, interval = %(interval)s,
                timeout = %(timeout)s, expected_status = %(expected_status)s,
                method = %(method)s, headers = %(headers)s, body = %(body)s,
                script = %(script)s, enabled = %(enabled)s,
                alert_threshold = %(alert_threshold)s, alert_severity = %(alert_severity)s,
                workspace_id = %(workspace_id)s, updated_at = NOW()
            WHERE id = %(id)s
        """
        return self.execute_query(query, self._params(check))

    def delete_check(self, check_id: int) -> bool:
        return self.execute_query("DELETE FROM health_checks WHERE id = %(id)s", {"id": check_id})

    def get_check(self, check_id: int) -> HealthCheckDefinition | None:
        row = self.fetch_one(
            f"SELECT {_CHECK_COLUMNS} FROM health_checks WHERE id = %(id)s", {"id": check_id}
        )
        return HealthCheckDefinition.from_row(row) if row else None

    def list_checks(self, enabled_only: bool = False) -> list[HealthCheckDefinition]:
        query = f"SELECT {_CHECK_COLUMNS} FROM health_checks"
        if enabled_only:
            query += " WHERE enabled"
        query += " ORDER BY id"
        return [HealthCheckDefinition.from_row(row) for row in self.fetch_all(query)]

    def insert_result(self, result: HealthCheckResult) -> int | None:
        query = """
            INSERT INTO health_check_results (
                health_check_id, timestamp, status, response_time, status_code,
                response_body, error_message
            ) VALUES (
                %(check_id)s, %(timestamp)s, %(status)s, %(response_time)s, %(status_code)s,
                %(response_body)s, %(error)s
            )
            RETURNING id
        """
        params = {
            "check_id": result.check_id,
            "timestamp": result.timestamp,
            "status": result.status.value,
            "response_time": result.response_time_ms,
            "status_code": result.status_code,
            "response_body": result.response_body,
            "error": result.error,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert health check result", check_id=result.check_id, error=str(e))
            return None

    def recent_results(self, check_id: int, limit: int) -> list[HealthCheckResult]:
        """Most recent results, newest first"""
        rows = self.fetch_all(
            f"""
            SELECT {_RESULT_COLUMNS} FROM health_check_results
            WHERE health_check_id = %(id)s
            ORDER BY timestamp DESC, id DESC
            LIMIT %(limit)s
            """,
            {"id": check_id, "limit": limit},
        )
        return [HealthCheckResult.from_row(row) for row in rows]

    def result_stats(self, check_id: int, since: datetime) -> CheckStats:
        row = self.fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'success') AS successes,
                COUNT(*) FILTER (WHERE status = 'failure') AS failures,
                COUNT(*) FILTER (WHERE status = 'timeout') AS timeouts,
                COALESCE(AVG(response_time), 0) AS avg_response_time_ms
            FROM health_check_results
            WHERE health_check_id = %(id)s AND timestamp >= %(since)s
            """,
            {"id": check_id, "since": since},
        )
        if not row:
            return CheckStats()
        return CheckStats(
            total=int(row["total"]),
            successes=int(row["successes"]),
            failures=int(row["failures"]),
            timeouts=int(row["timeouts"]),
            avg_response_time_ms=float(row["avg_response_time_ms"]),
        )
