"""
PostgreSQL operations for breach detection rules, cases, case events and
threat indicators.
"""

from datetime import datetime
from typing import Any

import structlog

from src.core.database import PostgresConnection, as_json

from .models import (
    ACTIVE_STATUSES,
    SEVERITIES,
    SORT_COLUMNS,
    Breach,
    BreachDetectionRule,
    BreachEvent,
    BreachFilter,
    Indicator,
)

logger = structlog.get_logger(__name__)

_RULE_COLUMNS = "id, name, description, type, definition, severity, enabled, workspace_id, category"

_BREACH_COLUMNS = """
    id, title, description, detection_type, severity, status, source, detected_at,
    first_detected_at, evidence, rule_id, workspace_id, assigned_to, affected_resources,
    resolved_at, resolved_by, updated_at
"""

_SEVERITY_ORDER = "CASE severity " + " ".join(
    f"WHEN '{severity}' THEN {rank}" for rank, severity in enumerate(SEVERITIES)
) + " END"

_ACTIVE = tuple(status.value for status in ACTIVE_STATUSES)


class BreachDatabase(PostgresConnection):
    """Database operations for breach detection"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS breach_detection_rules (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            type TEXT NOT NULL,
            definition JSONB NOT NULL,
            severity TEXT NOT NULL DEFAULT 'medium',
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            workspace_id TEXT,
            category TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS security_breaches (
            id BIGSERIAL PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            detection_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            source TEXT NOT NULL,
            detected_at TIMESTAMPTZ NOT NULL,
            first_detected_at TIMESTAMPTZ,
            evidence JSONB NOT NULL DEFAULT '{}'::jsonb,
            rule_id INTEGER REFERENCES breach_detection_rules (id) ON DELETE SET NULL,
            workspace_id TEXT,
            assigned_to TEXT,
            affected_resources JSONB NOT NULL DEFAULT '[]'::jsonb,
            resolved_at TIMESTAMPTZ,
            resolved_by TEXT,
            updated_at TIMESTAMPTZ
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_security_breaches_rule_status
            ON security_breaches (rule_id, status, detected_at)
        """,
        """
        CREATE TABLE IF NOT EXISTS breach_events (
            id BIGSERIAL PRIMARY KEY,
            breach_id BIGINT NOT NULL REFERENCES security_breaches (id) ON DELETE CASCADE,
            event_type TEXT NOT NULL,
            timestamp TIMESTAMPTZ NOT NULL,
            details JSONB NOT NULL DEFAULT '{}'::jsonb,
            actor TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS security_indicators (
            id SERIAL PRIMARY KEY,
            type TEXT NOT NULL,
            value TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'medium',
            source TEXT,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (type, value)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS breach_indicators (
            breach_id BIGINT NOT NULL REFERENCES security_breaches (id) ON DELETE CASCADE,
            indicator_id INTEGER NOT NULL REFERENCES security_indicators (id) ON DELETE CASCADE,
            confidence DOUBLE PRECISION NOT NULL,
            linked_by TEXT,
            linked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (breach_id, indicator_id)
        )
        """,
    )

    # ========================================
    # Rules
    # ========================================

    @staticmethod
    def _rule_params(rule: BreachDetectionRule) -> dict:
        data = rule.to_dict()
        data["type"] = data.pop("rule_type")
        data["definition"] = as_json(data["definition"])
        data["id"] = rule.id
        return data

    def insert_rule(self, rule: BreachDetectionRule) -> int | None:
        query = """
            INSERT INTO breach_detection_rules (
                name, description, type, definition, severity, enabled, workspace_id, category
            ) VALUES (
                %(name)s, %(description)s, %(type)s, %(definition)s, %(severity)s,
                %(enabled)s, %(workspace_id)s, %(category)s
            )
            RETURNING id
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, self._rule_params(rule))
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert breach rule", name=rule.name, error=str(e))
            return None

    def update_rule(self, rule: BreachDetectionRule) -> bool:
        query = """
            UPDATE breach_detection_rules SET
                name = %(name)s, description = %(description)s, type = %(type)s,
                definition = %(definition)s, severity = %(severity)s, enabled = %(enabled)s,
                workspace_id = %(workspace_id)s, category = %(category)s, updated_at = NOW()
            WHERE id = %(id)s
        """
        return self.execute_query(query, self._rule_params(rule))

    def delete_rule(self, rule_id: int) -> bool:
        return self.execute_query(
            "DELETE FROM breach_detection_rules WHERE id = %(id)s", {"id": rule_id}
        )

    def get_rule(self, rule_id: int) -> BreachDetectionRule | None:
        row = self.fetch_one(
            f"SELECT {_RULE_COLUMNS} FROM breach_detection_rules WHERE id = %(id)s", {"id": rule_id}
        )
        return BreachDetectionRule.from_row(row) if row else None

    def list_rules(
        self, enabled_only: bool = False, workspace_id: str | None = None
    ) -> list[BreachDetectionRule]:
        query = f"SELECT {_RULE_COLUMNS} FROM breach_detection_rules WHERE TRUE"
        params: dict = {}
        if enabled_only:
            query += " AND enabled"
        if workspace_id is not None:
            # Global rules apply to every workspace
            query += " AND (workspace_id = %(workspace_id)s OR workspace_id IS NULL)"
            params["workspace_id"] = workspace_id
        query += " ORDER BY id"
        rules = []
        for row in self.fetch_all(query, params):
            try:
                rules.append(BreachDetectionRule.from_row(row))
            except ValueError as e:
                logger.warning("Skipping invalid stored rule", rule_id=row["id"], error=str(e))
        return rules

    # ========================================
    # Cases
    # ========================================

    def insert_breach(self, breach: Breach) -> int | None:
        query = """
            INSERT INTO security_breaches (
                title, description, detection_type, severity, status, source, detected_at,
                first_detected_at, evidence, rule_id, workspace_id, affected_resources,
                updated_at
            ) VALUES (
                %(title)s, %(description)s, %(detection_type)s, %(severity)s, %(status)s,
                %(source)s, %(detected_at)s, %(first_detected_at)s, %(evidence)s, %(rule_id)s,
                %(workspace_id)s, %(affected_resources)s, %(detected_at)s
            )
            RETURNING id
        """
        params = {
            "title": breach.title,
            "description": breach.description,
            "detection_type": breach.detection_type,
            "severity": breach.severity,
            "status": breach.status.value,
            "source": breach.source,
            "detected_at": breach.detected_at,
            "first_detected_at": breach.first_detected_at,
            "evidence": as_json(breach.evidence),
            "rule_id": breach.rule_id,
            "workspace_id": breach.workspace_id,
            "affected_resources": as_json(breach.affected_resources),
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert breach", title=breach.title, error=str(e))
            return None

    def get_breach(self, breach_id: int) -> Breach | None:
        row = self.fetch_one(
            f"SELECT {_BREACH_COLUMNS} FROM security_breaches WHERE id = %(id)s", {"id": breach_id}
        )
        return Breach.from_row(row) if row else None

    def update_breach_fields(self, breach_id: int, updated_at: datetime, **fields: Any) -> bool:
        """Update named columns of one case; JSON columns are wrapped automatically"""
        allowed = {"status", "assigned_to", "resolved_at", "resolved_by", "severity", "evidence"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update breach columns: {sorted(unknown)}")
        params: dict[str, Any] = {"id": breach_id, "updated_at": updated_at}
        assignments = ["updated_at = %(updated_at)s"]
        for column, value in fields.items():
            params[column] = as_json(value) if column == "evidence" else value
            assignments.append(f"{column} = %({column})s")
        return self.execute_query(
            f"UPDATE security_breaches SET {', '.join(assignments)} WHERE id = %(id)s", params
        )

    def find_rule_duplicate(self, rule_id: int, since: datetime) -> Breach | None:
        row = self.fetch_one(
            f"""
            SELECT {_BREACH_COLUMNS} FROM security_breaches
            WHERE rule_id = %(rule_id)s
              AND status IN %(active)s
              AND detected_at >= %(since)s
            ORDER BY detected_at DESC
            LIMIT 1
            """,
            {"rule_id": rule_id, "active": _ACTIVE, "since": since},
        )
        return Breach.from_row(row) if row else None

    def find_similar_open(self, title: str, source: str, since: datetime) -> Breach | None:
        row = self.fetch_one(
            f"""
            SELECT {_BREACH_COLUMNS} FROM security_breaches
            WHERE LOWER(title) = LOWER(%(title)s)
              AND source = %(source)s
              AND status IN %(active)s
              AND detected_at >= %(since)s
            ORDER BY detected_at DESC
            LIMIT 1
            """,
            {"title": title, "source": source, "active": _ACTIVE, "since": since},
        )
        return Breach.from_row(row) if row else None

    @staticmethod
    def _where(filters: BreachFilter) -> tuple[str, dict]:
        clauses = ["TRUE"]
        params: dict[str, Any] = {}
        for column in ("workspace_id", "severity", "detection_type", "source"):
            value = getattr(filters, column)
            if value is not None:
                clauses.append(f"{column} = %({column})s")
                params[column] = value
        if filters.status is not None:
            clauses.append("status = %(status)s")
            params["status"] = filters.status.value
        if filters.start is not None:
            clauses.append("detected_at >= %(start)s")
            params["start"] = filters.start
        if filters.end is not None:
            clauses.append("detected_at <= %(end)s")
            params["end"] = filters.end
        if filters.search:
            clauses.append("(title ILIKE %(search)s OR description ILIKE %(search)s)")
            params["search"] = f"%{filters.search}%"
        return " AND ".join(clauses), params

    def list_breaches(
        self,
        filters: BreachFilter,
        page: int = 1,
        limit: int = 25,
        sort_by: str = "detected_at",
        sort_order: str = "desc",
    ) -> tuple[list[Breach], int]:
        where, params = self._where(filters)
        order_column = _SEVERITY_ORDER if sort_by == "severity" else SORT_COLUMNS[sort_by]
        direction = "ASC" if sort_order == "asc" else "DESC"
        params.update(limit=limit, offset=(page - 1) * limit)
        rows = self.fetch_all(
            f"""
            SELECT {_BREACH_COLUMNS} FROM security_breaches
            WHERE {where}
            ORDER BY {order_column} {direction}, id {direction}
            LIMIT %(limit)s OFFSET %(offset)s
            """,
            params,
        )
        count = self.fetch_one(f"SELECT COUNT(*) AS total FROM security_breaches WHERE {where}", params)
        return [Breach.from_row(row) for row in rows], (count or {}).get("total", 0)

    def breach_stats(self, workspace_id: str | None = None) -> dict[str, dict[str, int]]:
        params = {"workspace_id": workspace_id}
        where = "workspace_id = %(workspace_id)s" if workspace_id is not None else "TRUE"
        stats = {}
        for column in ("status", "severity", "detection_type", "source"):
            rows = self.fetch_all(
                f"""
                SELECT {column} AS key, COUNT(*) AS count FROM security_breaches
                WHERE {where} GROUP BY {column}
                """,
                params,
            )
            stats[column] = {row["key"]: row["count"] for row in rows}
        return stats

    # ========================================
    # Case events
    # ========================================

    def insert_event(self, event: BreachEvent) -> int | None:
        query = """
            INSERT INTO breach_events (breach_id, event_type, timestamp, details, actor)
            VALUES (%(breach_id)s, %(event_type)s, %(timestamp)s, %(details)s, %(actor)s)
            RETURNING id
        """
        params = {
            "breach_id": event.breach_id,
            "event_type": event.event_type.value,
            "timestamp": event.timestamp,
            "details": as_json(event.details),
            "actor": event.actor,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert breach event", breach_id=event.breach_id, error=str(e))
            return None

    def list_events(self, breach_id: int) -> list[BreachEvent]:
        rows = self.fetch_all(
            """
            SELECT id, breach_id, event_type, timestamp, details, actor FROM breach_events
            WHERE breach_id = %(breach_id)s ORDER BY timestamp, id
            """,
            {"breach_id": breach_id},
        )
        return [BreachEvent.from_row(row) for row in rows]

    # ========================================
    # Indicators
    # ========================================

    def insert_indicator(self, indicator: Indicator) -> int | None:
        query = """
            INSERT INTO security_indicators (type, value, severity, source, description)
            VALUES (%(type)s, %(value)s, %(severity)s, %(source)s, %(description)s)
            ON CONFLICT (type, value) DO UPDATE SET
                severity = EXCLUDED.severity,
                source = COALESCE(EXCLUDED.source, security_indicators.source),
                description = COALESCE(EXCLUDED.description, security_indicators.description)
            RETURNING id
        """
        params = {
            "type": indicator.indicator_type,
            "value": indicator.value,
            "severity": indicator.severity,
            "source": indicator.source,
            "description": indicator.description,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error("Failed to insert indicator", value=indicator.value, error=str(e))
            return None

    def get_indicator(self, indicator_id: int) -> Indicator | None:
        row = self.fetch_one(
            """
            SELECT id, type, value, severity, source, description FROM security_indicators
            WHERE id = %(id)s
            """,
            {"id": indicator_id},
        )
        return Indicator.from_row(row) if row else None

    def upsert_link(
        self, breach_id: int, indicator_id: int, confidence: float, linked_by: str | None, at: datetime
    ) -> bool | None:
        """Link an indicator to a case. Returns True when created, False when the
        existing link's confidence was updated, None on error."""
        query = """
            INSERT INTO breach_indicators (breach_id, indicator_id, confidence, linked_by, linked_at)
            VALUES (%(breach_id)s, %(indicator_id)s, %(confidence)s, %(linked_by)s, %(at)s)
            ON CONFLICT (breach_id, indicator_id) DO UPDATE SET
                confidence = EXCLUDED.confidence
            RETURNING (xmax = 0) AS created
        """
        params = {
            "breach_id": breach_id,
            "indicator_id": indicator_id,
            "confidence": confidence,
            "linked_by": linked_by,
            "at": at,
        }
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params)
                return bool(cursor.fetchone()[0])
        except Exception as e:
            logger.error(
                "Failed to link indicator", breach_id=breach_id, indicator_id=indicator_id, error=str(e)
            )
            return None

    def delete_link(self, breach_id: int, indicator_id: int) -> bool:
        """Remove a link; False when no link existed"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute(
                    """
                    DELETE FROM breach_indicators
                    WHERE breach_id = %(breach_id)s AND indicator_id = %(indicator_id)s
                    """,
                    {"breach_id": breach_id, "indicator_id": indicator_id},
                )
                return cursor.rowcount > 0
        except Exception as e:
            logger.error("Failed to unlink indicator", breach_id=breach_id, error=str(e))
            return False

    def breach_indicators(self, breach_id: int) -> list[dict]:
        return self.fetch_all(
            """
            SELECT i.id, i.type, i.value, i.severity, i.source, i.description,
                   l.confidence, l.linked_by, l.linked_at
            FROM breach_indicators l
            JOIN security_indicators i ON i.id = l.indicator_id
            WHERE l.breach_id = %(breach_id)s
            ORDER BY l.confidence DESC, i.id
            """,
            {"breach_id": breach_id},
        )

    def indicator_breaches(self, indicator_id: int) -> list[dict]:
        return self.fetch_all(
            f"""
            SELECT {", ".join(f"b.{c.strip()}" for c in _BREACH_COLUMNS.split(","))},
                   l.confidence, l.linked_by, l.linked_at
            FROM breach_indicators l
            JOIN security_breaches b ON b.id = l.breach_id
            WHERE l.indicator_id = %(indicator_id)s
            ORDER BY l.confidence DESC, b.detected_at DESC
            """,
            {"indicator_id": indicator_id},
        )
