"""
Tests for the in-process event bus and typed events.
"""

import pytest

from src.core.events import (
    AccessViolation,
    EventBus,
    SecurityEventOccurred,
    TokenCreated,
    Topic,
)


class TestEvents:
    """Tests for typed event payloads."""

    def test_topic_is_bound_to_class(self):
        """Every event class carries its topic."""
        assert TokenCreated.topic is Topic.TOKEN_CREATED
        assert AccessViolation("client-1", "10.0.0.1").topic is Topic.ACCESS_VIOLATION

    def test_to_dict_includes_topic(self):
        """to_dict carries the topic name next to the payload fields."""
        event = SecurityEventOccurred(event_type="brute_force", severity="high", client_id="c1")
        data = event.to_dict()

        assert data["event_type"] == "brute_force"
        assert data["severity"] == "high"
        assert data["topic"] == "security_event"


class TestEventBus:
    """Tests for EventBus delivery."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers_in_order(self):
        """Handlers run in subscription order."""
        bus = EventBus()
        calls = []

        async def first(event):
            calls.append(("first", event.client_id))

        async def second(event):
            calls.append(("second", event.client_id))

        bus.subscribe(Topic.TOKEN_CREATED, first)
        bus.subscribe(Topic.TOKEN_CREATED, second)

        delivered = await bus.publish(TokenCreated(client_id="c1"))

        assert delivered == 2
        assert calls == [("first", "c1"), ("second", "c1")]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        """A failing handler does not stop the others."""
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def healthy(event):
            received.append(event)

        bus.subscribe(Topic.TOKEN_CREATED, broken)
        bus.subscribe(Topic.TOKEN_CREATED, healthy)

        delivered = await bus.publish(TokenCreated(client_id="c1"))

        assert delivered == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_other_topics_not_delivered(self):
        """Handlers only see their own topic."""
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(Topic.TOKEN_DENIED, handler)
        await bus.publish(TokenCreated(client_id="c1"))

        assert received == []

    def test_subscribe_is_idempotent(self):
        """Subscribing the same handler twice registers it once."""
        bus = EventBus()

        async def handler(event):
            pass

        bus.subscribe(Topic.TOKEN_USED, handler)
        bus.subscribe(Topic.TOKEN_USED, handler)
        assert bus.handler_count(Topic.TOKEN_USED) == 1

        bus.unsubscribe(Topic.TOKEN_USED, handler)
        assert bus.handler_count(Topic.TOKEN_USED) == 0
