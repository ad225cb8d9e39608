"""
PostgreSQL storage for raw security events and access-control log entries.

Signature and correlation rules search these tables.
"""

from datetime import datetime
from typing import Any

import structlog

from src.core.database import PostgresConnection, as_json

logger = structlog.get_logger(__name__)


class EventDatabase(PostgresConnection):
    """Raw event persistence and search"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS security_events (
            id BIGSERIAL PRIMARY KEY,
            event_type TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'medium',
            client_id TEXT,
            workspace_id TEXT,
            details JSONB NOT NULL DEFAULT '{}'::jsonb,
            event_time TIMESTAMPTZ NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_security_events_time
            ON security_events (event_time)
        """,
        """
        CREATE TABLE IF NOT EXISTS ip_access_logs (
            id BIGSERIAL PRIMARY KEY,
            client_id TEXT,
            ip_address TEXT NOT NULL,
            allowed BOOLEAN NOT NULL,
            reason TEXT,
            workspace_id TEXT,
            timestamp TIMESTAMPTZ NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_ip_access_logs_time
            ON ip_access_logs (timestamp)
        """,
    )

    def insert_security_event(
        self,
        event_type: str,
        severity: str,
        event_time: datetime,
        client_id: str | None = None,
        workspace_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> int | None:
        query = """
            INSERT INTO security_events (
                event_type, severity, client_id, workspace_id, details, event_time
            ) VALUES (
                %(event_type)s, %(severity)s, %(client_id)s, %(workspace_id)s,
                %(details)s, %(event_time)s
            )
            RETURNING id
        """
        params = {
            "event_type": event_type,
            "severity": severity,
            "client_id": client_id,
            "workspace_id": workspace_id,
            "details": as_json(details or {}),
            "event_time": event_time,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert security event", event_type=event_type, error=str(e))
            return None

    def insert_access_log(
        self,
        ip_address: str,
        allowed: bool,
        timestamp: datetime,
        client_id: str | None = None,
        reason: str | None = None,
        workspace_id: str | None = None,
    ) -> int | None:
        query = """
            INSERT INTO ip_access_logs (
                client_id, ip_address, allowed, reason, workspace_id, timestamp
            ) VALUES (
                %(client_id)s, %(ip_address)s, %(allowed)s, %(reason)s,
                %(workspace_id)s, %(timestamp)s
            )
            RETURNING id
        """
        params = {
            "client_id": client_id,
            "ip_address": ip_address,
            "allowed": allowed,
            "reason": reason,
            "workspace_id": workspace_id,
            "timestamp": timestamp,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert access log", ip_address=ip_address, error=str(e))
            return None

    def find_security_events(
        self,
        start: datetime,
        end: datetime | None = None,
        event_type: str | None = None,
        severity: str | None = None,
        client_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = """
            SELECT id, event_type, severity, client_id, workspace_id, details, event_time
            FROM security_events
            WHERE event_time >= %(start)s
        """
        params: dict[str, Any] = {"start": start}
        if end is not None:
            query += " AND event_time <= %(end)s"
            params["end"] = end
        if event_type is not None:
            query += " AND event_type = %(event_type)s"
            params["event_type"] = event_type
        if severity is not None:
            query += " AND severity = %(severity)s"
            params["severity"] = severity
        if client_id is not None:
            query += " AND client_id = %(client_id)s"
            params["client_id"] = client_id
        query += " ORDER BY event_time DESC"
        if limit is not None:
            query += " LIMIT %(limit)s"
            params["limit"] = limit
        return self.fetch_all(query, params)

    def find_access_violations(
        self,
        start: datetime,
        end: datetime | None = None,
        client_id: str | None = None,
        ip_address: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        query = """
            SELECT id, client_id, ip_address, allowed, reason, workspace_id, timestamp
            FROM ip_access_logs
            WHERE NOT allowed AND timestamp >= %(start)s
        """
        params: dict[str, Any] = {"start": start}
        if end is not None:
            query += " AND timestamp <= %(end)s"
            params["end"] = end
        if client_id is not None:
            query += " AND client_id = %(client_id)s"
            params["client_id"] = client_id
        if ip_address is not None:
            query += " AND ip_address = %(ip_address)s"
            params["ip_address"] = ip_address
        query += " ORDER BY timestamp DESC"
        if limit is not None:
            query += " LIMIT %(limit)s"
            params["limit"] = limit
        return self.fetch_all(query, params)
