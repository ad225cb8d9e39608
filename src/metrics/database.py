"""
PostgreSQL operations for metric points and token usage counters.
"""

from datetime import date, datetime

import pandas as pd
import structlog

from src.core.database import PostgresConnection, as_json

from .models import MetricPoint, TokenUsageStats, UsageCounter

logger = structlog.get_logger(__name__)


class MetricDatabase(PostgresConnection):
    """Append-only metric points plus atomic daily usage counters"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS metrics (
            id BIGSERIAL PRIMARY KEY,
            metric_name TEXT NOT NULL,
            metric_type TEXT NOT NULL DEFAULT 'gauge',
            value DOUBLE PRECISION NOT NULL,
            timestamp TIMESTAMPTZ NOT NULL,
            time_interval TEXT NOT NULL,
            dimensions JSONB NOT NULL DEFAULT '{}'::jsonb,
            client_id TEXT,
            source TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_metrics_name_interval_ts
            ON metrics (metric_name, time_interval, timestamp)
        """,
        """
        CREATE TABLE IF NOT EXISTS token_usage_stats (
            client_id TEXT NOT NULL,
            date DATE NOT NULL,
            token_requests INTEGER NOT NULL DEFAULT 0,
            token_denials INTEGER NOT NULL DEFAULT 0,
            api_requests INTEGER NOT NULL DEFAULT 0,
            unique_ips INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (client_id, date)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS token_usage_ips (
            client_id TEXT NOT NULL,
            date DATE NOT NULL,
            ip_address TEXT NOT NULL,
            PRIMARY KEY (client_id, date, ip_address)
        )
        """,
    )

    def insert_point(self, point: MetricPoint) -> int | None:
        """Insert a metric point, returning its id"""
        query = """
            INSERT INTO metrics (
                metric_name, metric_type, value, timestamp,
                time_interval, dimensions, client_id, source
            ) VALUES (
                %(metric_name)s, %(metric_type)s, %(value)s, %(timestamp)s,
                %(time_interval)s, %(dimensions)s, %(client_id)s, %(source)s
            )
            RETURNING id
        """
        params = point.to_db_dict()
        params["dimensions"] = as_json(params["dimensions"])
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert metric", metric=point.metric_name, error=str(e))
            return None

    def fetch_points(
        self,
        metric_name: str,
        bucket: str,
        start: datetime,
        end: datetime,
        subject: str | None = None,
        dimensions: dict[str, str] | None = None,
    ) -> pd.DataFrame:
        """Raw points in ``[start, end]`` as a DataFrame with columns ['timestamp', 'value']"""
        query = """
            SELECT timestamp, value
            FROM metrics
            WHERE metric_name = %(metric_name)s
              AND time_interval = %(bucket)s
              AND timestamp BETWEEN %(start)s AND %(end)s
        """
        params = {"metric_name": metric_name, "bucket": bucket, "start": start, "end": end}
        if subject is not None:
            query += " AND client_id = %(subject)s"
            params["subject"] = subject
        if dimensions:
            query += " AND dimensions @> %(dimensions)s"
            params["dimensions"] = as_json(dimensions)
        query += " ORDER BY timestamp"

        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
                return pd.DataFrame(rows, columns=["timestamp", "value"])
        except Exception as e:
            logger.error("Failed to query metrics", metric=metric_name, error=str(e))
            return pd.DataFrame(columns=["timestamp", "value"])

    def increment_usage(
        self,
        client_id: str,
        day: date,
        counter: UsageCounter,
        amount: int = 1,
        ip_address: str | None = None,
    ) -> bool:
        """Atomically bump one daily counter; a first-seen address also bumps unique_ips"""
        column = UsageCounter(counter).value
        query = f"""
            WITH new_ip AS (
                INSERT INTO token_usage_ips (client_id, date, ip_address)
                SELECT %(client_id)s, %(day)s, %(ip_address)s
                WHERE %(ip_address)s IS NOT NULL
                ON CONFLICT DO NOTHING
                RETURNING 1
            )
            INSERT INTO token_usage_stats (client_id, date, {column}, unique_ips)
            VALUES (%(client_id)s, %(day)s, %(amount)s, (SELECT COUNT(*) FROM new_ip))
            ON CONFLICT (client_id, date) DO UPDATE SET
                {column} = token_usage_stats.{column} + EXCLUDED.{column},
                unique_ips = token_usage_stats.unique_ips + EXCLUDED.unique_ips
        """
        params = {
            "client_id": client_id,
            "day": day,
            "amount": amount,
            "ip_address": ip_address,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
            return True
        except Exception as e:
            logger.error(
                "Failed to increment usage counter",
                client_id=client_id,
                counter=column,
                error=str(e),
            )
            return False

    def get_token_usage(
        self,
        client_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[TokenUsageStats]:
        query = """
            SELECT client_id, date, token_requests, token_denials, api_requests, unique_ips
            FROM token_usage_stats
            WHERE TRUE
        """
        params: dict = {}
        if client_id is not None:
            query += " AND client_id = %(client_id)s"
            params["client_id"] = client_id
        if start is not None:
            query += " AND date >= %(start)s"
            params["start"] = start
        if end is not None:
            query += " AND date <= %(end)s"
            params["end"] = end
        query += " ORDER BY date, client_id"

        return [TokenUsageStats(**row) for row in self.fetch_all(query, params)]
