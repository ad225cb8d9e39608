"""
Tests for CaseStore creation, merging, lifecycle and indicators.
"""

from datetime import timedelta

import pytest

from src.breach.cases import CaseStore
from src.breach.models import BreachCandidate, BreachEventType, BreachFilter, BreachStatus
from src.core.errors import NotFoundError, ValidationError
from src.core.events import Topic


@pytest.fixture
def cases(breach_db, metrics, bus, clock):
    return CaseStore(breach_db, metrics=metrics, bus=bus, clock=clock)


def candidate(**overrides) -> BreachCandidate:
    data = {
        "title": "Security Event: brute_force",
        "detection_type": "security_event",
        "severity": "medium",
        "source": "oauth-security",
        "evidence": {"attempts": 12},
    }
    data.update(overrides)
    return BreachCandidate(**data)


class TestCreateOrMerge:
    @pytest.mark.asyncio
    async def test_create(self, cases, breach_db, metric_db, published, clock):
        breach = await cases.create_or_merge(candidate(affected_resources=["client-1"]))

        assert breach.id in breach_db.breaches
        assert breach.status is BreachStatus.OPEN
        assert breach.detected_at == breach.first_detected_at == clock()
        assert breach.affected_resources == ["client-1"]

        [event] = breach_db.events
        assert event.event_type is BreachEventType.DETECTION
        assert event.details["message"] == "Breach detected: Security Event: brute_force"

        [detected] = [e for e in published if e.topic is Topic.BREACH_DETECTED]
        assert detected.breach_id == breach.id

        [point] = [p for p in metric_db.points if p.metric_name == "security_breaches"]
        assert point.dimensions == {
            "type": "security_event",
            "severity": "medium",
            "source": "oauth-security",
        }

    @pytest.mark.asyncio
    async def test_similar_title_merges(self, cases, breach_db, clock):
        """Same title (any case) and source within 24 hours merges into the open case."""
        first = await cases.create_or_merge(candidate())
        clock.advance(hours=3)

        merged = await cases.create_or_merge(
            candidate(title="security event: BRUTE_FORCE", evidence={"attempts": 40})
        )

        assert merged.id == first.id
        assert len(breach_db.breaches) == 1
        update = breach_db.events[-1]
        assert update.event_type is BreachEventType.UPDATE
        assert update.details == {"message": "Similar breach detected", "evidence": {"attempts": 40}}

    @pytest.mark.asyncio
    async def test_no_merge_when_source_differs_or_stale(self, cases, breach_db, clock):
        await cases.create_or_merge(candidate())
        await cases.create_or_merge(candidate(source="security-scanner"))
        clock.advance(hours=25)
        await cases.create_or_merge(candidate())

        assert len(breach_db.breaches) == 3

    @pytest.mark.asyncio
    async def test_no_merge_into_closed_case(self, cases, breach_db):
        first = await cases.create_or_merge(candidate())
        await cases.update_status(first.id, "contained", "alice")

        second = await cases.create_or_merge(candidate())

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_merge_escalates_severity(self, cases, breach_db):
        first = await cases.create_or_merge(candidate(severity="medium"))

        merged = await cases.create_or_merge(candidate(severity="critical"))
        assert merged.severity == "critical"
        assert breach_db.breaches[first.id].severity == "critical"

        again = await cases.create_or_merge(candidate(severity="low"))
        assert again.severity == "critical"

    @pytest.mark.asyncio
    async def test_rule_candidates_merge_by_rule(self, cases, breach_db, clock):
        """Rule candidates ignore the title and use the rule's own window."""
        first = await cases.create_or_merge(candidate(rule_id=9, dedup_window=timedelta(minutes=60)))
        clock.advance(minutes=30)
        merged = await cases.create_or_merge(
            candidate(title="renamed rule", rule_id=9, dedup_window=timedelta(minutes=60))
        )
        assert merged.id == first.id

        clock.advance(minutes=31)
        fresh = await cases.create_or_merge(candidate(rule_id=9, dedup_window=timedelta(minutes=60)))
        assert fresh.id != first.id


class TestLifecycle:
    """Tests for status changes, assignment and the audit trail."""

    @pytest.mark.asyncio
    async def test_status_change_events(self, cases, clock):
        breach = await cases.create_or_merge(candidate())

        investigating = await cases.update_status(breach.id, "investigating", "alice", notes="triage")
        clock.advance(minutes=5)
        resolved = await cases.update_status(breach.id, BreachStatus.RESOLVED, "bob")

        assert investigating.status is BreachStatus.INVESTIGATING
        assert resolved.resolved_by == "bob"
        assert resolved.resolved_at == clock()

        events = await cases.get_events(breach.id)
        changes = [e for e in events if e.event_type is BreachEventType.STATUS_CHANGE]
        assert [(e.details["from"], e.details["to"], e.actor) for e in changes] == [
            ("open", "investigating", "alice"),
            ("investigating", "resolved", "bob"),
        ]
        assert changes[0].details["notes"] == "triage"

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, cases, breach_db):
        breach = await cases.create_or_merge(candidate())

        await cases.update_status(breach.id, "open", "alice")

        assert len(breach_db.events) == 1

    @pytest.mark.asyncio
    async def test_invalid_status_and_unknown_case(self, cases):
        breach = await cases.create_or_merge(candidate())

        with pytest.raises(ValidationError):
            await cases.update_status(breach.id, "closed", "alice")
        with pytest.raises(NotFoundError):
            await cases.update_status(404, "resolved", "alice")
        with pytest.raises(NotFoundError):
            await cases.get_events(404)

    @pytest.mark.asyncio
    async def test_assign(self, cases):
        breach = await cases.create_or_merge(candidate())

        assigned = await cases.assign(breach.id, "carol", "alice")
        await cases.assign(breach.id, "carol", "alice")

        assert assigned.assigned_to == "carol"
        updates = [e for e in await cases.get_events(breach.id) if e.event_type is BreachEventType.UPDATE]
        assert len(updates) == 1
        assert updates[0].details == {"message": "Assignment changed", "from": None, "to": "carol"}

    @pytest.mark.asyncio
    async def test_add_event(self, cases):
        breach = await cases.create_or_merge(candidate())

        event = await cases.add_event(breach.id, {"message": "Contacted client owner"}, actor="dave")

        assert event.id is not None
        assert event.actor == "dave"


class TestQueries:
    async def populate(self, cases, clock):
        created = []
        for title, severity, source in [
            ("Credential stuffing", "high", "oauth-security"),
            ("Scanner Finding: open bucket", "critical", "security-scanner"),
            ("IP Access Violation: 10.0.0.1", "low", "ip-access-control"),
        ]:
            created.append(await cases.create_or_merge(candidate(title=title, severity=severity, source=source)))
            clock.advance(minutes=1)
        await cases.update_status(created[0].id, "resolved", "alice")
        return created

    @pytest.mark.asyncio
    async def test_filter_sort_paginate(self, cases, clock):
        await self.populate(cases, clock)

        page = await cases.list_breaches(page=1, limit=2)
        assert page.total == 3
        assert page.pages == 2
        assert [b.title for b in page.items] == ["IP Access Violation: 10.0.0.1", "Scanner Finding: open bucket"]

        by_severity = await cases.list_breaches(sort_by="severity", sort_order="asc")
        assert [b.severity for b in by_severity.items] == ["low", "high", "critical"]

        open_only = await cases.list_breaches(BreachFilter(status=BreachStatus.OPEN))
        assert open_only.total == 2

        found = await cases.list_breaches(BreachFilter(search="bucket"))
        assert [b.source for b in found.items] == ["security-scanner"]

    @pytest.mark.asyncio
    async def test_invalid_list_arguments(self, cases):
        with pytest.raises(ValidationError):
            await cases.list_breaches(sort_by="title")
        with pytest.raises(ValidationError):
            await cases.list_breaches(sort_order="up")
        with pytest.raises(ValidationError):
            await cases.list_breaches(page=0)

    @pytest.mark.asyncio
    async def test_stats(self, cases, clock):
        await self.populate(cases, clock)

        stats = await cases.stats()

        assert stats["total"] == 3
        assert stats["by_status"] == {"resolved": 1, "open": 2}
        assert stats["by_severity"] == {"low": 1, "medium": 0, "high": 1, "critical": 1}
        assert stats["by_source"]["security-scanner"] == 1


class TestIndicators:
    """Tests for indicator storage and case links."""

    @pytest.mark.asyncio
    async def test_link_and_relink(self, cases, breach_db):
        breach = await cases.create_or_merge(candidate())
        indicator = await cases.create_indicator({"type": "ip", "value": "203.0.113.7", "severity": "high"})

        await cases.link_indicator(breach.id, indicator.id, confidence=0.6, actor="alice")
        link = await cases.link_indicator(breach.id, indicator.id, confidence=0.9, actor="alice")

        assert link.confidence == 0.9
        linked = [e for e in breach_db.events if e.event_type is BreachEventType.INDICATOR_LINKED]
        assert [e.details["relinked"] for e in linked] == [False, True]

        [row] = await cases.get_breach_indicators(breach.id)
        assert row["value"] == "203.0.113.7"
        assert row["confidence"] == 0.9
        assert [r["id"] for r in await cases.get_indicator_breaches(indicator.id)] == [breach.id]

    @pytest.mark.asyncio
    async def test_indicator_upsert(self, cases):
        first = await cases.create_indicator({"type": "domain", "value": "evil.example"})
        second = await cases.create_indicator({"type": "domain", "value": "evil.example"})
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_unlink(self, cases, breach_db):
        breach = await cases.create_or_merge(candidate())
        indicator = await cases.create_indicator({"type": "hash", "value": "d41d8cd9"})
        await cases.link_indicator(breach.id, indicator.id)

        assert await cases.unlink_indicator(breach.id, indicator.id, actor="bob") is True
        assert await cases.unlink_indicator(breach.id, indicator.id) is False
        unlinked = [e for e in breach_db.events if e.event_type is BreachEventType.INDICATOR_UNLINKED]
        assert len(unlinked) == 1

    @pytest.mark.asyncio
    async def test_link_validation(self, cases):
        breach = await cases.create_or_merge(candidate())
        indicator = await cases.create_indicator({"type": "ip", "value": "198.51.100.1"})

        with pytest.raises(ValidationError):
            await cases.link_indicator(breach.id, indicator.id, confidence=1.5)
        with pytest.raises(NotFoundError):
            await cases.link_indicator(breach.id, 999)
        with pytest.raises(NotFoundError):
            await cases.link_indicator(999, indicator.id)
        with pytest.raises(ValidationError):
            await cases.create_indicator({"type": "ip"})
