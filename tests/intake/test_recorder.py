"""
Tests for EventRecorder persistence of pushed security signals.
"""

import pytest

from src.core.events import AccessViolation, SecurityEventOccurred
from src.intake.recorder import EventRecorder


@pytest.fixture
def recorder(event_db, clock, bus):
    recorder = EventRecorder(event_db, clock=clock)
    recorder.register_listeners(bus)
    return recorder


class TestEventRecorder:
    @pytest.mark.asyncio
    async def test_security_event_stored(self, recorder, bus, event_db, clock):
        await bus.publish(
            SecurityEventOccurred(event_type="brute_force", severity="high", client_id="c1", details={"attempts": 9})
        )

        [row] = event_db.find_security_events(start=clock())
        assert row["event_type"] == "brute_force"
        assert row["details"] == {"attempts": 9}
        assert row["event_time"] == clock()

    @pytest.mark.asyncio
    async def test_pre_stored_event_not_duplicated(self, recorder, event_db):
        event_id = await recorder.on_security_event(SecurityEventOccurred(event_type="brute_force", event_id=77))

        assert event_id == 77
        assert event_db.security_events == []

    @pytest.mark.asyncio
    async def test_access_violation_stored_as_denied(self, recorder, bus, event_db, clock):
        await bus.publish(AccessViolation(client_id="c1", ip_address="203.0.113.50"))

        [row] = event_db.find_access_violations(start=clock())
        assert row["ip_address"] == "203.0.113.50"
        assert row["allowed"] is False
        assert row["reason"] == "ip_not_allowed"
