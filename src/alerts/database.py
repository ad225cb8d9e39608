"""
PostgreSQL operations for alert definitions and alert history.
"""

from datetime import datetime

import structlog

from src.core.database import PostgresConnection, as_json

from .models import AlertDefinition, AlertHistory

logger = structlog.get_logger(__name__)

_ALERT_COLUMNS = """
    id, name, description, metric_name, condition, threshold, duration, severity,
    enabled, notification_channels, notify_users, dimensions, client_id, webhook_url,
    time_interval, last_triggered_at
"""

_HISTORY_COLUMNS = """
    id, alert_id, triggered_at, value, message, acknowledged_at, acknowledged_by,
    resolved_at, resolved_by, notes
"""


class AlertDatabase(PostgresConnection):
    """Database operations for the alert engine"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            metric_name TEXT NOT NULL,
            condition TEXT NOT NULL,
            threshold DOUBLE PRECISION NOT NULL,
            duration INTEGER NOT NULL DEFAULT 0,
            severity TEXT NOT NULL DEFAULT 'medium',
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            notification_channels JSONB NOT NULL DEFAULT '[]'::jsonb,
            notify_users JSONB NOT NULL DEFAULT '[]'::jsonb,
            dimensions JSONB NOT NULL DEFAULT '{}'::jsonb,
            client_id TEXT,
            webhook_url TEXT,
            time_interval TEXT NOT NULL DEFAULT 'minute',
            last_triggered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS alert_history (
            id BIGSERIAL PRIMARY KEY,
            alert_id INTEGER NOT NULL REFERENCES alerts (id) ON DELETE CASCADE,
            triggered_at TIMESTAMPTZ NOT NULL,
            value DOUBLE PRECISION NOT NULL,
            message TEXT NOT NULL,
            acknowledged_at TIMESTAMPTZ,
            acknowledged_by TEXT,
            resolved_at TIMESTAMPTZ,
            resolved_by TEXT,
            notes TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_alert_history_alert_triggered
            ON alert_history (alert_id, triggered_at)
        """,
    )

    @staticmethod
    def _params(alert: AlertDefinition) -> dict:
        params = alert.to_db_dict()
        for key in ("notification_channels", "notify_users", "dimensions"):
            params[key] = as_json(params[key])
        return params

    def insert_alert(self, alert: AlertDefinition) -> int | None:
        query = """
            INSERT INTO alerts (
                name, description, metric_name, condition, threshold, duration, severity,
                enabled, notification_channels, notify_users, dimensions, client_id,
                webhook_url, time_interval
            ) VALUES (
                %(name)s, %(description)s, %(metric_name)s, %(condition)s, %(threshold)s,
                %(duration)s, %(severity)s, %(enabled)s, %(notification_channels)s,
                %(notify_users)s, %(dimensions)s, %(client_id)s, %(webhook_url)s,
                %(time_interval)s
            )
            RETURNING id
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, self._params(alert))
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert alert", name=alert.name, error=str(e))
            return None

    def update_alert(self, alert: AlertDefinition) -> bool:
        query = """
            UPDATE alerts SET
                name = %(name)s, description = %(description)s, metric_name = %(metric_name)s,
                condition = %(condition)s, threshold = %(threshold)s, duration = %(duration)s,
                severity = %(severity)s, enabled = %(enabled)s,
                notification_channels = %(notification_channels)s,
                notify_users = %(notify_users)s, dimensions = %(dimensions)s,
                client_id = %(client_id)s, webhook_url = %(webhook_url)s,
                time_interval = %(time_interval)s, updated_at = NOW()
            WHERE id = %(id)s
        """
        return self.execute_query(query, self._params(alert))

    def delete_alert(self, alert_id: int) -> bool:
        return self.execute_query("DELETE FROM alerts WHERE id = %(id)s", {"id": alert_id})

    def get_alert(self, alert_id: int) -> AlertDefinition | None:
        row = self.fetch_one(f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE id = %(id)s", {"id": alert_id})
        return AlertDefinition.from_row(row) if row else None

    def list_alerts(
        self, enabled_only: bool = False, metric_name: str | None = None
    ) -> list[AlertDefinition]:
        query = f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE TRUE"
        params: dict = {}
        if enabled_only:
            query += " AND enabled"
        if metric_name is not None:
            query += " AND metric_name = %(metric_name)s"
            params["metric_name"] = metric_name
        query += " ORDER BY id"
        return [AlertDefinition.from_row(row) for row in self.fetch_all(query, params)]

    def mark_triggered(self, alert_id: int, triggered_at: datetime) -> bool:
        return self.execute_query(
            "UPDATE alerts SET last_triggered_at = %(ts)s WHERE id = %(id)s",
            {"id": alert_id, "ts": triggered_at},
        )

    # ========================================
    # History
    # ========================================

    def has_unresolved_since(self, alert_id: int, since: datetime) -> bool:
        row = self.fetch_one(
            """
            SELECT 1 AS found FROM alert_history
            WHERE alert_id = %(alert_id)s
              AND triggered_at >= %(since)s
              AND resolved_at IS NULL
            LIMIT 1
            """,
            {"alert_id": alert_id, "since": since},
        )
        return row is not None

    def insert_history(self, history: AlertHistory) -> int | None:
        query = """
            INSERT INTO alert_history (alert_id, triggered_at, value, message)
            VALUES (%(alert_id)s, %(triggered_at)s, %(value)s, %(message)s)
            RETURNING id
        """
        params = {
            "alert_id": history.alert_id,
            "triggered_at": history.triggered_at,
            "value": history.value,
            "message": history.message,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert alert history", alert_id=history.alert_id, error=str(e))
            return None

    def get_history(self, history_id: int) -> AlertHistory | None:
        row = self.fetch_one(
            f"SELECT {_HISTORY_COLUMNS} FROM alert_history WHERE id = %(id)s", {"id": history_id}
        )
        return AlertHistory.from_row(row) if row else None

    def list_history(
        self, alert_id: int | None = None, unresolved_only: bool = False, limit: int = 100
    ) -> list[AlertHistory]:
        query = f"SELECT {_HISTORY_COLUMNS} FROM alert_history WHERE TRUE"
        params: dict = {"limit": limit}
        if alert_id is not None:
            query += " AND alert_id = %(alert_id)s"
            params["alert_id"] = alert_id
        if unresolved_only:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY triggered_at DESC LIMIT %(limit)s"
        return [AlertHistory.from_row(row) for row in self.fetch_all(query, params)]

    def acknowledge_history(
        self, history_id: int, actor: str, at: datetime, notes: str | None = None
    ) -> bool:
        return self.execute_query(
            """
            UPDATE alert_history SET
                acknowledged_at = %(at)s,
                acknowledged_by = %(actor)s,
                notes = COALESCE(%(notes)s, notes)
            WHERE id = %(id)s AND acknowledged_at IS NULL
            """,
            {"id": history_id, "actor": actor, "at": at, "notes": notes},
        )

    def resolve_history(
        self, history_id: int, actor: str, at: datetime, notes: str | None = None
    ) -> bool:
        return self.execute_query(
            """
            UPDATE alert_history SET
                resolved_at = %(at)s,
                resolved_by = %(actor)s,
                acknowledged_at = COALESCE(acknowledged_at, %(at)s),
                acknowledged_by = COALESCE(acknowledged_by, %(actor)s),
                notes = COALESCE(%(notes)s, notes)
            WHERE id = %(id)s AND resolved_at IS NULL
            """,
            {"id": history_id, "actor": actor, "at": at, "notes": notes},
        )
