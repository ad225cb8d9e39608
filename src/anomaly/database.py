"""
PostgreSQL operations for anomaly detection.

Handles:
- Detection config CRUD
- Inserting, deduplicating and listing anomalies
"""

from datetime import datetime

import structlog

from src.core.database import PostgresConnection, as_json

from .models import Anomaly, AnomalyDetectionConfig, AnomalyStatus

logger = structlog.get_logger(__name__)

_CONFIG_COLUMNS = """
    id, name, metric_name, client_id, dimensions, algorithm, sensitivity,
    training_period, enabled, last_trained_at
"""

_ANOMALY_COLUMNS = """
    id, config_id, metric_name, client_id, timestamp, value, expected_value,
    deviation, score, severity, status, linked_event_ids
"""


class AnomalyDatabase(PostgresConnection):
    """Database operations for anomaly detection"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS anomaly_detection_configs (
            id SERIAL PRIMARY KEY,
            name TEXT,
            metric_name TEXT NOT NULL,
            client_id TEXT,
            dimensions JSONB NOT NULL DEFAULT '{}'::jsonb,
            algorithm TEXT NOT NULL DEFAULT 'mad',
            sensitivity DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            training_period INTEGER NOT NULL DEFAULT 14,
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            last_trained_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS anomalies (
            id BIGSERIAL PRIMARY KEY,
            config_id INTEGER NOT NULL,
            metric_name TEXT NOT NULL,
            client_id TEXT,
            timestamp TIMESTAMPTZ NOT NULL,
            value DOUBLE PRECISION NOT NULL,
            expected_value DOUBLE PRECISION,
            deviation DOUBLE PRECISION,
            score DOUBLE PRECISION,
            severity TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            linked_event_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_anomalies_config_metric_ts
            ON anomalies (config_id, metric_name, timestamp)
        """,
    )

    # ========================================
    # Configs
    # ========================================

    def insert_config(self, config: AnomalyDetectionConfig) -> int | None:
        query = """
            INSERT INTO anomaly_detection_configs (
                name, metric_name, client_id, dimensions, algorithm,
                sensitivity, training_period, enabled
            ) VALUES (
                %(name)s, %(metric_name)s, %(client_id)s, %(dimensions)s, %(algorithm)s,
                %(sensitivity)s, %(training_period)s, %(enabled)s
            )
            RETURNING id
        """
        params = config.to_db_dict()
        params["dimensions"] = as_json(params["dimensions"])
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert anomaly config", metric=config.metric_name, error=str(e))
            return None

    def update_config(self, config: AnomalyDetectionConfig) -> bool:
        query = """
            UPDATE anomaly_detection_configs SET
                name = %(name)s, metric_name = %(metric_name)s, client_id = %(client_id)s,
                dimensions = %(dimensions)s, algorithm = %(algorithm)s,
                sensitivity = %(sensitivity)s, training_period = %(training_period)s,
                enabled = %(enabled)s, updated_at = NOW()
            WHERE id = %(id)s
        """
        params = config.to_db_dict()
        params["dimensions"] = as_json(params["dimensions"])
        return self.execute_query(query, params)

    def delete_config(self, config_id: int) -> bool:
        return self.execute_query(
            "DELETE FROM anomaly_detection_configs WHERE id = %(id)s", {"id": config_id}
        )

    def get_config(self, config_id: int) -> AnomalyDetectionConfig | None:
        row = self.fetch_one(
            f"SELECT {_CONFIG_COLUMNS} FROM anomaly_detection_configs WHERE id = %(id)s",
            {"id": config_id},
        )
        return AnomalyDetectionConfig.from_row(row) if row else None

    def list_configs(self, enabled_only: bool = False) -> list[AnomalyDetectionConfig]:
        query = f"SELECT {_CONFIG_COLUMNS} FROM anomaly_detection_configs"
        if enabled_only:
            query += " WHERE enabled"
        query += " ORDER BY id"
        return [AnomalyDetectionConfig.from_row(row) for row in self.fetch_all(query)]

    def mark_trained(self, config_id: int, trained_at: datetime) -> bool:
        return self.execute_query(
            """
            UPDATE anomaly_detection_configs
            SET last_trained_at = %(trained_at)s, updated_at = NOW()
            WHERE id = %(id)s
            """,
            {"id": config_id, "trained_at": trained_at},
        )

    # ========================================
    # Anomalies
    # ========================================

    def has_recent_anomaly(
        self, config_id: int, metric_name: str, subject: str | None, since: datetime
    ) -> bool:
        row = self.fetch_one(
            """
            SELECT 1 AS found FROM anomalies
            WHERE config_id = %(config_id)s
              AND metric_name = %(metric_name)s
              AND client_id IS NOT DISTINCT FROM %(subject)s
              AND timestamp >= %(since)s
            LIMIT 1
            """,
            {"config_id": config_id, "metric_name": metric_name, "subject": subject, "since": since},
        )
        return row is not None

    def insert_anomaly(self, anomaly: Anomaly) -> int | None:
        query = """
            INSERT INTO anomalies (
                config_id, metric_name, client_id, timestamp, value, expected_value,
                deviation, score, severity, status, linked_event_ids
            ) VALUES (
                %(config_id)s, %(metric_name)s, %(client_id)s, %(timestamp)s, %(value)s,
                %(expected_value)s, %(deviation)s, %(score)s, %(severity)s, %(status)s,
                %(linked_event_ids)s
            )
            RETURNING id
        """
        params = anomaly.to_db_dict()
        params["linked_event_ids"] = as_json(params["linked_event_ids"])
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                anomaly_id = cursor.fetchone()[0]
            logger.debug(
                "Anomaly inserted",
                anomaly_id=anomaly_id,
                metric=anomaly.metric_name,
                severity=anomaly.severity,
            )
            return anomaly_id
        except Exception as e:
            logger.error("Failed to insert anomaly", metric=anomaly.metric_name, error=str(e))
            return None

    def get_anomaly(self, anomaly_id: int) -> Anomaly | None:
        row = self.fetch_one(
            f"SELECT {_ANOMALY_COLUMNS} FROM anomalies WHERE id = %(id)s", {"id": anomaly_id}
        )
        return Anomaly.from_row(row) if row else None

    def update_anomaly_status(self, anomaly_id: int, status: AnomalyStatus) -> bool:
        return self.execute_query(
            "UPDATE anomalies SET status = %(status)s, updated_at = NOW() WHERE id = %(id)s",
            {"id": anomaly_id, "status": AnomalyStatus(status).value},
        )

    def list_anomalies(
        self,
        status: AnomalyStatus | None = None,
        since: datetime | None = None,
        metric_names: list[str] | None = None,
        severities: list[str] | None = None,
        subject: str | None = None,
        limit: int = 100,
    ) -> list[Anomaly]:
        query = f"SELECT {_ANOMALY_COLUMNS} FROM anomalies WHERE TRUE"
        params: dict = {"limit": limit}
        if status is not None:
            query += " AND status = %(status)s"
            params["status"] = AnomalyStatus(status).value
        if since is not None:
            query += " AND timestamp >= %(since)s"
            params["since"] = since
        if metric_names:
            query += " AND metric_name = ANY(%(metric_names)s)"
            params["metric_names"] = list(metric_names)
        if severities:
            query += " AND severity = ANY(%(severities)s)"
            params["severities"] = list(severities)
        if subject is not None:
            query += " AND client_id = %(subject)s"
            params["subject"] = subject
        query += " ORDER BY timestamp DESC LIMIT %(limit)s"
        return [Anomaly.from_row(row) for row in self.fetch_all(query, params)]
